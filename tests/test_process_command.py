"""Tests for regtest.process_command: exit-code mapping, STATUS lines, timeouts."""

import io
import os
import sys

from regtest.interpreter import Interpreter
from regtest.process_command import ProcessCommand
from regtest.runner import harness_root
from regtest.status import Status, StatusType
from regtest.timeout_handler import TimeoutHandler


class _RecordingHandler(TimeoutHandler):
    def run_actions(self, process, pid):
        self.log.write(f"handled {pid}\n")


def _command(code, **kwargs):
    out, err, log = io.StringIO(), io.StringIO(), io.StringIO()
    pc = ProcessCommand([sys.executable, "-c", code], env=dict(os.environ),
                        out=out, err=err, message_writer=log, **kwargs)
    return pc, out, err, log


# -- Exit codes ----------------------------------------------------------------

def test_output_is_copied():
    pc, out, err, log = _command("import sys; print('to out'); print('to err', file=sys.stderr)")
    status = pc.execute()
    assert status == Status.passed("exit code 0")
    assert out.getvalue() == "to out\n"
    assert err.getvalue() == "to err\n"
    assert log.getvalue().startswith("Process id: ")


def test_nonzero_exit_without_table():
    pc, *_ = _command("import sys; sys.exit(4)")
    assert pc.execute() == Status.failed("exit code 4")


def test_status_table_and_default():
    pc, *_ = _command("import sys; sys.exit(7)")
    pc.set_status_for_exit(0, Status.passed("fine"))
    pc.set_default_status(Status.error("Unexpected exit from test"))
    assert pc.execute() == Status.error("Unexpected exit from test [exit code: 7]")

    pc, *_ = _command("pass")
    pc.set_status_for_exit(0, Status.passed("fine"))
    assert pc.execute() == Status.passed("fine")


# -- STATUS lines --------------------------------------------------------------

def test_status_line_matching_exit_code_is_trusted():
    pc, *_ = _command("from regtest.status import Status; Status.failed('it broke').exit()")
    pc.env["PYTHONPATH"] = harness_root()
    status = pc.execute()
    assert status == Status.failed("it broke")


def test_status_line_with_wrong_exit_code_is_error():
    pc, *_ = _command("import sys; print('STATUS:Passed. all good', file=sys.stderr); sys.exit(1)")
    status = pc.execute()
    assert status.type is StatusType.ERROR
    assert status.reason.startswith("unexpected exit code: 1, doesn't match exit status")


def test_last_status_line_wins():
    pc, *_ = _command(
        "import sys\n"
        "print('STATUS:Failed. first', file=sys.stderr)\n"
        "print('STATUS:Passed. second', file=sys.stderr)\n"
        "sys.exit(95)\n")
    assert pc.execute() == Status.passed("second")


# -- Failures ------------------------------------------------------------------

def test_launch_failure():
    pc = ProcessCommand(["/nonexistent/program"], out=io.StringIO(), err=io.StringIO())
    status = pc.execute()
    assert status.type is StatusType.ERROR
    assert status.reason.startswith("Error invoking program `/nonexistent/program'")


def test_timeout_runs_handler_and_kills():
    log = io.StringIO()
    handler = _RecordingHandler(log, ".", Interpreter.current(), timeout=5)
    pc, out, err, _ = _command("import time; time.sleep(60)", timeout=0.3, timeout_handler=handler)
    pc.message_writer = log
    status = pc.execute()
    assert status.type is StatusType.ERROR
    assert status.reason.startswith(f"Program `{sys.executable}' timed out")
    assert "timeout set to 0.3s" in status.reason
    assert "Timeout signalled after 0.3 seconds" in log.getvalue()
    assert "handled" in log.getvalue()
