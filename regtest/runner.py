"""Action runner: runs one main or compile action in the requested mode."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from regtest import inprocess
from regtest.agent import AgentFault, AgentTimeout
from regtest.compiler import (
    COMPILE_FAIL,
    COMPILE_FAIL_EXPECT,
    COMPILE_PASS,
    COMPILE_PASS_UNEXPECT,
    EXIT_CMDERR,
    EXIT_ERROR,
    EXIT_OK,
    EXIT_SYSERR,
    status_for_exit_code,
)
from regtest.config import Config
from regtest.interpreter import Interpreter
from regtest.pool import AgentPool
from regtest.process_command import ProcessCommand
from regtest.results import Section, SectionOutputHandler, OutputKind
from regtest.status import (
    EXEC_FAIL,
    EXEC_FAIL_EXPECT,
    EXEC_PASS,
    EXEC_PASS_UNEXPECT,
    EXIT_CODES,
    UNEXPECT_SYS_EXIT,
    Status,
    StatusType,
)
from regtest.timeout_handler import TimeoutHandlerProvider

logger = logging.getLogger(__name__)

AGENTVM_CANT_GET_VM = "Cannot get VM for test"
AGENTVM_IO_EXCEPTION = "Agent communication error: %s; check console log for any additional details"
AGENTVM_EXCEPTION = "Agent error: %s; check console log for any additional details"


class ExecMode(Enum):
    SAMEVM = "samevm"
    OTHERVM = "othervm"
    AGENTVM = "agentvm"


@dataclass(kw_only=True)
class ActionCommand:
    """What to run, resolved from a test's action by the caller."""
    test_name: str
    scratch_dir: str | Path = "."
    interpreter: Interpreter = field(default_factory=Interpreter.current)
    vm_opts: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)
    # None means a copy of this process's environment
    env: dict[str, str] | None = None
    args: list[str] = field(default_factory=list)
    # seconds before scaling; None means the configured default, 0 means none
    timeout: float | None = None
    reverse: bool = False


@dataclass(kw_only=True)
class MainCommand(ActionCommand):
    entry: str
    class_path: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class CompileCommand(ActionCommand):
    pass


def harness_root() -> str:
    """The directory holding the regtest package, for child PYTHONPATHs."""
    return str(Path(__file__).resolve().parent.parent)


def child_env(env: dict[str, str] | None) -> dict[str, str]:
    result = dict(os.environ if env is None else env)
    existing = result.get("PYTHONPATH")
    result["PYTHONPATH"] = harness_root() + (os.pathsep + existing if existing else "")
    return result


def check_reverse(status: Status, reverse: bool) -> Status:
    """Apply a main action's expected outcome to its raw status.

    Errors are left alone, as is a test that exited the interpreter: that
    counts as a failure even when failure is expected.
    """
    if status.is_error() or status.reason.startswith(UNEXPECT_SYS_EXIT):
        return status
    return _reverse(status, reverse, EXEC_PASS, EXEC_PASS_UNEXPECT, EXEC_FAIL_EXPECT, EXEC_FAIL)


def check_compile_reverse(status: Status, reverse: bool) -> Status:
    if status.is_error():
        return status
    return _reverse(status, reverse, COMPILE_PASS, COMPILE_PASS_UNEXPECT, COMPILE_FAIL_EXPECT, COMPILE_FAIL,
                    keep_pass_reason=False)


def _reverse(status, reverse, pass_, pass_unexpected, fail_expected, fail, keep_pass_reason=True):
    ok = status.is_passed()
    type_ = status.type
    if ok and reverse:
        reason = pass_unexpected
        type_ = StatusType.FAILED
    elif ok:
        reason = status.reason if (keep_pass_reason and status.reason) else pass_
    elif reverse:
        reason = fail_expected
        type_ = StatusType.PASSED
    else:
        reason = fail
    if type_ is StatusType.FAILED and status.reason and status.reason != EXEC_PASS:
        reason += ": " + status.reason
    return Status(type_, reason)


class ActionRunner:
    """Runs main and compile actions in samevm, othervm or agentvm mode."""

    def __init__(self, config: Config | None = None, pool: AgentPool | None = None,
                 timeout_handlers: TimeoutHandlerProvider | None = None):
        self._config = config or Config()
        self._pool = pool if pool is not None else AgentPool.instance()
        execution = self._config.execution
        self._timeout_handlers = timeout_handlers or TimeoutHandlerProvider(
            execution.timeout_handler, execution.timeout_handler_timeout)
        if execution.security_policy:
            self._pool.set_security_policy(execution.security_policy)
        self._cleanup = inprocess.CleanupPolicy(execution.cleanup_rounds, execution.max_cleanup_time)

    def _timeout(self, cmd: ActionCommand) -> float:
        timeout = self._config.execution.default_timeout if cmd.timeout is None else cmd.timeout
        if timeout <= 0:
            return 0
        return timeout * self._config.execution.timeout_factor

    def _timeout_handler(self, cmd: ActionCommand, section: Section):
        return self._timeout_handlers.create_handler(section.message_writer, Path(cmd.scratch_dir),
                                                     cmd.interpreter)

    # -- main ----------------------------------------------------------------------

    def run_main(self, cmd: MainCommand, mode: ExecMode | str, section: Section) -> Status:
        mode = ExecMode(mode)
        section.message_writer.write(f"Mode: {mode.value}\n")
        logger.debug("main %s (%s) in %s", cmd.entry, cmd.test_name, mode.value)
        if mode is ExecMode.SAMEVM:
            status = self._main_same_vm(cmd, section)
        elif mode is ExecMode.OTHERVM:
            status = self._main_other_vm(cmd, section)
        else:
            status = self._main_agent_vm(cmd, section)
        status = check_reverse(status, cmd.reverse)
        section.status = status
        return status

    def _main_same_vm(self, cmd: MainCommand, section: Section) -> Status:
        return inprocess.run_class(cmd.test_name, cmd.properties, cmd.class_path, cmd.entry,
                                   cmd.args, self._timeout(cmd), SectionOutputHandler(section),
                                   self._cleanup)

    def _main_other_vm(self, cmd: MainCommand, section: Section) -> Status:
        scratch = Path(cmd.scratch_dir)
        fd, argfile = tempfile.mkstemp(prefix="main-", suffix=".json", dir=scratch)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({
                    "entry": cmd.entry,
                    "args": cmd.args,
                    "class_path": [os.path.abspath(p) for p in cmd.class_path],
                    "properties": cmd.properties,
                }, f)
            command = [str(cmd.interpreter.executable), *cmd.vm_opts, "-m", "regtest.main_wrapper", argfile]
            section.message_writer.write(f"Command: {' '.join(command)}\n")
            out = section.create_output(OutputKind.STDOUT.value)
            err = section.create_output(OutputKind.STDERR.value)
            try:
                pc = ProcessCommand(command, env=child_env(cmd.env), exec_dir=str(scratch),
                                    out=out, err=err, timeout=self._timeout(cmd),
                                    timeout_handler=self._timeout_handler(cmd, section),
                                    message_writer=section.message_writer)
                pc.set_status_for_exit(EXIT_CODES[StatusType.PASSED], Status.passed(EXEC_PASS))
                pc.set_status_for_exit(EXIT_CODES[StatusType.FAILED], Status.failed(EXEC_FAIL))
                pc.set_default_status(Status.error(UNEXPECT_SYS_EXIT))
                return pc.execute()
            finally:
                out.close()
                err.close()
        finally:
            try:
                os.remove(argfile)
            except OSError as e:
                logger.debug("Cannot remove %s: %s", argfile, e)

    def _main_agent_vm(self, cmd: MainCommand, section: Section) -> Status:
        agent = self._get_agent(cmd, section)
        if isinstance(agent, Status):
            return agent
        timeout = self._timeout(cmd)
        class_path = [os.path.abspath(p) for p in cmd.class_path]
        try:
            status = agent.run_main(cmd.test_name, cmd.properties, class_path, cmd.entry, cmd.args,
                                    timeout, self._timeout_handler(cmd, section), section)
        except AgentTimeout:
            status = Status.error(f"\"main\" action timed out with a timeout of {timeout:g}"
                                  f" seconds on agent {agent.id}")
        except AgentFault as e:
            status = _fault_status(e)
        self._release(agent, status)
        return status

    # -- compile -------------------------------------------------------------------

    def run_compile(self, cmd: CompileCommand, mode: ExecMode | str, section: Section) -> Status:
        mode = ExecMode(mode)
        section.message_writer.write(f"Mode: {mode.value}\n")
        logger.debug("compile %s (%s) in %s", cmd.args, cmd.test_name, mode.value)
        if mode is ExecMode.SAMEVM:
            status = inprocess.run_compile(cmd.test_name, cmd.properties, cmd.args, self._timeout(cmd),
                                           SectionOutputHandler(section), self._cleanup)
        elif mode is ExecMode.OTHERVM:
            status = self._compile_other_vm(cmd, section)
        else:
            status = self._compile_agent_vm(cmd, section)
        status = check_compile_reverse(status, cmd.reverse)
        section.status = status
        return status

    def _compile_other_vm(self, cmd: CompileCommand, section: Section) -> Status:
        command = [str(cmd.interpreter.executable), *cmd.vm_opts, "-m", "regtest.compiler", *cmd.args]
        section.message_writer.write(f"Command: {' '.join(command)}\n")
        out = section.create_output(OutputKind.DIRECT.value)
        try:
            pc = ProcessCommand(command, env=child_env(cmd.env), exec_dir=str(cmd.scratch_dir),
                                out=out, err=out, timeout=self._timeout(cmd),
                                timeout_handler=self._timeout_handler(cmd, section),
                                message_writer=section.message_writer)
            for code in (EXIT_OK, EXIT_ERROR, EXIT_CMDERR, EXIT_SYSERR):
                pc.set_status_for_exit(code, status_for_exit_code(code))
            pc.set_default_status(Status.error("unexpected exit code from compiler"))
            return pc.execute()
        finally:
            out.close()

    def _compile_agent_vm(self, cmd: CompileCommand, section: Section) -> Status:
        agent = self._get_agent(cmd, section)
        if isinstance(agent, Status):
            return agent
        timeout = self._timeout(cmd)
        try:
            status = agent.run_compile(cmd.test_name, cmd.properties, cmd.args, timeout,
                                       self._timeout_handler(cmd, section), section)
        except AgentTimeout:
            status = Status.error(f"\"compile\" action timed out with a timeout of {timeout:g}"
                                  f" seconds on agent {agent.id}")
        except AgentFault as e:
            status = _fault_status(e)
        self._release(agent, status)
        return status

    # -- agents --------------------------------------------------------------------

    def _get_agent(self, cmd: ActionCommand, section: Section):
        try:
            agent = self._pool.get_agent(cmd.scratch_dir, cmd.interpreter, cmd.vm_opts, child_env(cmd.env))
        except AgentFault as e:
            logger.warning("Cannot get agent for %s: %s", cmd.test_name, e)
            return Status.error(f"{AGENTVM_CANT_GET_VM}: {e}")
        section.message_writer.write(f"Agent id: {agent.id}\n")
        section.message_writer.write(f"Process id: {agent.pid}\n")
        return agent

    def _release(self, agent, status: Status) -> None:
        if status.is_error():
            agent.close()
        else:
            self._pool.save(agent)


def _fault_status(e: AgentFault) -> Status:
    if isinstance(e.__cause__, OSError):
        return Status.error(AGENTVM_IO_EXCEPTION % e.__cause__)
    return Status.error(AGENTVM_EXCEPTION % e)
