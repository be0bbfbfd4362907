"""Tests for regtest.agent: request/response handling against a stand-in server."""

import os
import socket
import subprocess
import threading
import time
from unittest.mock import MagicMock

import pytest

from regtest.agent import Agent, AgentFault, AgentTimeout
from regtest.config import AgentConfig
from regtest.interpreter import Interpreter
from regtest.protocol import (
    CompileRequest,
    DataReader,
    DataWriter,
    MainRequest,
    Op,
    ProtocolError,
    frame,
    output_frame,
    status_frame,
)
from regtest.results import Section
from regtest.status import StatusType
from regtest.timeout_handler import TimeoutHandler


class _RecordingHandler(TimeoutHandler):
    def run_actions(self, process, pid):
        self.log.write(f"handled {pid}\n")


def _agent_with_server(script, scratch="/tmp/scratch"):
    """An Agent wired by socketpair to a thread running *script(reader, writer, sock)*."""
    ours, theirs = socket.socketpair()
    process = MagicMock()
    process.pid = 4321
    process.wait.return_value = 0
    agent = Agent(scratch, Interpreter.current(), ["-X", "dev"], process, ours, AgentConfig())
    reader = DataReader(theirs.makefile("rb"))
    writer = DataWriter(theirs.makefile("wb"))
    t = threading.Thread(target=script, args=(reader, writer, theirs), daemon=True)
    t.start()
    return agent, t


def _read_main(reader):
    assert reader.read_op() == Op.DO_MAIN
    return MainRequest.read(reader)


def _run_main(agent, section, timeout=0, handler=None):
    return agent.run_main("Hello", {"test.src": "/src"}, ["/cp"], "hello", ["a"],
                          timeout, handler, section)


# -- Results -------------------------------------------------------------------

def test_hello_end_to_end():
    requests = []

    def script(reader, writer, sock):
        requests.append(_read_main(reader))
        writer.send(output_frame("", "hello\n"))
        writer.send(status_frame(StatusType.PASSED, ""))

    agent, t = _agent_with_server(script)
    section = Section("main")
    status = _run_main(agent, section)
    t.join(5)

    assert status.is_passed()
    assert status.reason == ""
    assert "hello\n" in section.messages
    assert requests == [MainRequest("Hello", {"test.src": "/src"}, ["/cp"], "hello", ["a"])]


def test_named_outputs_are_collected_and_closed():
    def script(reader, writer, sock):
        _read_main(reader)
        writer.send(output_frame("System.out", "a"))
        writer.send(frame(Op.KEEPALIVE))
        writer.send(output_frame("System.err", "oops"))
        writer.send(output_frame("System.out", "b"))
        writer.send(status_frame(StatusType.FAILED, "`main' threw exception: ValueError"))

    agent, t = _agent_with_server(script)
    section = Section("main")
    status = _run_main(agent, section)

    assert status.type is StatusType.FAILED
    assert section.output("System.out") == "ab"
    assert section.output("System.err") == "oops"


def test_compile_request():
    requests = []

    def script(reader, writer, sock):
        assert reader.read_op() == Op.DO_COMPILE
        requests.append(CompileRequest.read(reader))
        writer.send(output_frame("direct", "T.py:1: error\n"))
        writer.send(status_frame(StatusType.FAILED, "Compilation failed"))

    agent, t = _agent_with_server(script)
    section = Section("compile")
    status = agent.run_compile("T", {}, ["-d", "out", "T.py"], 0, None, section)

    assert status.type is StatusType.FAILED
    assert section.output("direct") == "T.py:1: error\n"
    assert requests[0].args == ["-d", "out", "T.py"]


# -- Protocol faults -----------------------------------------------------------

def test_unexpected_op_is_fault():
    def script(reader, writer, sock):
        _read_main(reader)
        writer.send(bytes((9,)))

    agent, t = _agent_with_server(script)
    with pytest.raises(AgentFault, match="unexpected op: 9") as info:
        _run_main(agent, Section("main"))
    assert isinstance(info.value.__cause__, ProtocolError)
    assert not isinstance(info.value, AgentTimeout)


def test_eof_before_status_is_fault():
    def script(reader, writer, sock):
        _read_main(reader)
        writer.send(output_frame("", "partial"))
        sock.shutdown(socket.SHUT_WR)

    agent, t = _agent_with_server(script)
    with pytest.raises(AgentFault, match="unexpected EOF"):
        _run_main(agent, Section("main"))


def test_partial_output_kept_on_fault():
    def script(reader, writer, sock):
        _read_main(reader)
        writer.send(output_frame("System.out", "before "))
        writer.send(output_frame("System.err", "trace"))
        writer.send(output_frame("System.out", "crash"))
        sock.shutdown(socket.SHUT_WR)

    agent, t = _agent_with_server(script)
    section = Section("main")
    with pytest.raises(AgentFault):
        _run_main(agent, section)
    assert section.output("System.out") == "before crash"
    assert section.output("System.err") == "trace"


def test_bad_status_type_is_fault():
    def script(reader, writer, sock):
        _read_main(reader)
        writer.send(status_frame(7, "?"))

    agent, t = _agent_with_server(script)
    with pytest.raises(AgentFault, match="bad status type"):
        _run_main(agent, Section("main"))


def test_unencodable_request_sends_nothing():
    received = []

    def script(reader, writer, sock):
        sock.settimeout(0.3)
        try:
            received.append(sock.recv(1))
        except socket.timeout:
            pass

    agent, t = _agent_with_server(script)
    with pytest.raises(AgentFault, match="cannot encode"):
        agent.run_main("T", {}, [], "t", ["x" * 70000], 0, None, Section("main"))
    t.join(5)
    assert received == []


# -- Timeout -------------------------------------------------------------------

def test_timeout_forces_read_to_end():
    def script(reader, writer, sock):
        _read_main(reader)
        # never answer; wait for the controller to hang up
        reader.read_op()

    agent, t = _agent_with_server(script)
    section = Section("main")
    handler = _RecordingHandler(section.message_writer, ".", Interpreter.current(), timeout=5)
    start = time.monotonic()
    with pytest.raises(AgentTimeout, match="timeout of 0.2 seconds"):
        _run_main(agent, section, timeout=0.2, handler=handler)
    elapsed = time.monotonic() - start

    assert elapsed < 3
    assert "Timeout signalled after 0.2 seconds" in section.messages
    assert "handled 4321" in section.messages
    assert "--- Timeout information end." in section.messages


def test_timeout_requires_handler():
    def script(reader, writer, sock):
        pass

    agent, t = _agent_with_server(script)
    with pytest.raises(ValueError):
        _run_main(agent, Section("main"), timeout=1, handler=None)


# -- Identity and close --------------------------------------------------------

def test_matches_uses_absolute_scratch_dir(tmp_path):
    def script(reader, writer, sock):
        pass

    agent, t = _agent_with_server(script, scratch=str(tmp_path))
    cwd = os.getcwd()
    os.chdir(tmp_path.parent)
    try:
        assert agent.matches(tmp_path.name, Interpreter.current(), ["-X", "dev"])
    finally:
        os.chdir(cwd)
    assert not agent.matches(tmp_path, Interpreter.current(), ["-X dev"])
    assert not agent.matches(tmp_path, Interpreter("/other/python"), ["-X", "dev"])
    assert agent.pid == 4321


def test_close_sends_close_and_waits():
    ops = []

    def script(reader, writer, sock):
        ops.append(reader.read_op())

    agent, t = _agent_with_server(script)
    agent.close()
    t.join(5)
    assert ops == [Op.CLOSE]
    agent.process.wait.assert_called_with(timeout=60)
    agent.process.kill.assert_not_called()


def test_close_kills_process_that_does_not_exit():
    def script(reader, writer, sock):
        reader.read_op()

    agent, t = _agent_with_server(script)
    agent.process.wait.side_effect = [subprocess.TimeoutExpired("python", 60), 0]
    agent.close()
    agent.process.kill.assert_called_once()


# -- Launch --------------------------------------------------------------------

def test_new_agent_missing_interpreter(tmp_path):
    with pytest.raises(AgentFault, match="cannot start"):
        Agent.new_agent(tmp_path, Interpreter("/nonexistent/python3"), [], dict(os.environ))


def test_new_agent_child_exits_before_connecting(tmp_path):
    start = time.monotonic()
    # -c swallows the rest of the command line, so the child exits at once
    with pytest.raises(AgentFault, match="exited with code 3"):
        Agent.new_agent(tmp_path, Interpreter.current(), ["-c", "import sys; sys.exit(3)"],
                        dict(os.environ), config=AgentConfig(accept_timeout=30))
    assert time.monotonic() - start < 20
