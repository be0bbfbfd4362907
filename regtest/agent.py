"""Agent: the controller's handle on one long-lived agent server process."""

import itertools
import logging
import os
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Mapping, TextIO

from regtest import alarm
from regtest.config import AgentConfig
from regtest.interpreter import Interpreter
from regtest.process_command import StreamCopier
from regtest.protocol import (
    CompileRequest,
    DataReader,
    DataWriter,
    KeepAlive,
    MainRequest,
    Op,
    ProtocolError,
)
from regtest.results import Section
from regtest.status import Status, StatusType
from regtest.timeout_handler import TimeoutHandler

logger = logging.getLogger(__name__)

AGENT_MODULE = "regtest.agent_server"

# how often a pending accept looks to see whether the child has died
_ACCEPT_POLL = 0.5


class AgentFault(Exception):
    """The agent could not be started or stopped responding properly."""


class AgentTimeout(AgentFault):
    """An action did not complete on the agent within its timeout."""


class Agent:
    """A child interpreter that runs compile and main requests on demand.

    An agent is bound for life to one scratch directory, interpreter and
    option list, and handles one request at a time.
    """

    _ids = itertools.count(1)

    def __init__(self, scratch_dir: str | Path, interpreter: Interpreter, vm_opts: list[str],
                 process: subprocess.Popen, sock: socket.socket,
                 config: AgentConfig | None = None, id: int | None = None):
        self.id = next(Agent._ids) if id is None else id
        self.scratch_dir = Path(os.path.abspath(scratch_dir))
        self.interpreter = interpreter
        self.vm_opts = list(vm_opts)
        self.process = process
        self._config = config or AgentConfig()
        self._sock = sock
        sock.settimeout(self._config.read_timeout)
        self._reader = DataReader(sock.makefile("rb"))
        self._writer = DataWriter(sock.makefile("wb"))
        self._keep_alive = KeepAlive(self._writer, self._config.keepalive_interval)
        self._keep_alive.set_enabled(True)

    @classmethod
    def new_agent(cls, scratch_dir: str | Path, interpreter: Interpreter, vm_opts: list[str],
                  env_vars: Mapping[str, str], policy_file: str | Path | None = None,
                  config: AgentConfig | None = None) -> "Agent":
        """Start an agent server process and wait for it to connect back."""
        config = config or AgentConfig()
        id = next(cls._ids)

        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            port = server.getsockname()[1]

            cmd = [str(interpreter.executable), *vm_opts, "-m", AGENT_MODULE]
            if policy_file is not None:
                cmd += ["-policy", Path(os.path.abspath(policy_file)).as_uri(), "-allowAddAuditHook"]
            cmd += ["-keepalive", f"{config.keepalive_interval:g}", "-port", str(port)]
            logger.debug("Agent[%d]: starting %s", id, cmd)

            try:
                process = subprocess.Popen(
                    cmd,
                    cwd=scratch_dir,
                    env=dict(env_vars),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as e:
                raise AgentFault(f"cannot start agent process: {e}") from e

            StreamCopier(process.stdout, sys.stdout, prefix=f"Agent[{id}].stdout: ",
                         name=f"Agent[{id}].stdout").start()
            StreamCopier(process.stderr, sys.stderr, prefix=f"Agent[{id}].stderr: ",
                         name=f"Agent[{id}].stderr").start()

            try:
                sock = _accept(server, process, config.accept_timeout)
            except AgentFault:
                logger.warning("Agent[%d]: killing process %d", id, process.pid)
                process.kill()
                process.wait()
                raise
        finally:
            server.close()

        logger.info("Agent[%d]: started process %d in %s", id, process.pid, scratch_dir)
        return cls(scratch_dir, interpreter, vm_opts, process, sock, config, id=id)

    @property
    def pid(self) -> int:
        return self.process.pid

    def matches(self, scratch_dir: str | Path, interpreter: Interpreter, vm_opts: list[str]) -> bool:
        return (self.scratch_dir == Path(os.path.abspath(scratch_dir))
                and self.interpreter == interpreter
                and self.vm_opts == list(vm_opts))

    # -- requests ----------------------------------------------------------------

    def run_compile(self, test_name: str, props: Mapping[str, str], args: list[str],
                    timeout: float, timeout_handler: TimeoutHandler | None,
                    section: Section) -> Status:
        request = CompileRequest(test_name, dict(props), list(args))
        return self._run("compile", request, timeout, timeout_handler, section)

    def run_main(self, test_name: str, props: Mapping[str, str], class_path: list[str],
                 entry: str, args: list[str], timeout: float,
                 timeout_handler: TimeoutHandler | None, section: Section) -> Status:
        request = MainRequest(test_name, dict(props), list(class_path), entry, list(args))
        return self._run("main", request, timeout, timeout_handler, section)

    def _run(self, what: str, request, timeout: float,
             timeout_handler: TimeoutHandler | None, section: Section) -> Status:
        try:
            data = request.to_frame()
        except ValueError as e:
            raise AgentFault(f"cannot encode {what} request: {e}") from e

        # the timeout is handled here rather than in the agent, so the handler
        # sees the agent process exactly as it was when time ran out
        handler_done = threading.Event()
        a = alarm.NONE
        self._keep_alive.set_enabled(False)
        try:
            if timeout > 0:
                if timeout_handler is None:
                    raise ValueError("a timeout handler is required when a timeout is set")
                a = alarm.schedule(timeout, section.message_writer,
                                   lambda: self._on_timeout(timeout_handler, handler_done))
            logger.debug("Agent[%d]: %s request for %s", self.id, what, request.test_name)
            self._writer.send(data)
            logger.debug("Agent[%d]: request sent", self.id)
            return self._read_results(section)
        except OSError as e:
            logger.debug("Agent[%d]: %s failed: %s", self.id, what, e)
            if a.did_fire():
                self._wait_for_handler(timeout_handler, handler_done)
                raise AgentTimeout(f"Agent timed out with a timeout of {timeout:g} seconds") from e
            raise AgentFault(str(e)) from e
        finally:
            a.cancel()
            self._keep_alive.set_enabled(True)

    def _on_timeout(self, handler: TimeoutHandler, done: threading.Event) -> None:
        def run():
            try:
                handler.handle_timeout(self.process)
            finally:
                # release the reader blocked in _read_results
                try:
                    self._sock.shutdown(socket.SHUT_RDWR)
                except OSError as e:
                    logger.debug("Agent[%d]: socket shutdown failed: %s", self.id, e)
                done.set()

        threading.Thread(target=run, name=f"Agent[{self.id}] timeout handler", daemon=True).start()

    def _wait_for_handler(self, handler: TimeoutHandler, done: threading.Event) -> None:
        logger.debug("Agent[%d]: waiting for timeout handler to complete", self.id)
        if handler.timeout <= 0:
            done.wait()
        elif not done.wait(handler.timeout + 10):
            logger.warning("Agent[%d]: timeout handler did not complete within its own timeout",
                           self.id)

    def _read_results(self, section: Section) -> Status:
        streams: dict[str, TextIO] = {}
        try:
            while True:
                op = self._reader.read_op()
                if op is None:
                    raise ProtocolError("unexpected EOF")
                if op == Op.OUTPUT:
                    name = self._reader.read_utf()
                    text = self._reader.read_utf()
                    logger.debug("Agent[%d]: OUTPUT %r %r", self.id, name, text)
                    w = streams.get(name)
                    if w is None:
                        w = section.message_writer if name == "" else section.create_output(name)
                        streams[name] = w
                    w.write(text)
                elif op == Op.STATUS:
                    type_ = self._reader.read_byte()
                    reason = self._reader.read_utf()
                    logger.debug("Agent[%d]: STATUS %d %r", self.id, type_, reason)
                    try:
                        return Status(StatusType(type_), reason)
                    except ValueError:
                        raise ProtocolError(f"Agent: bad status type: {type_}") from None
                elif op == Op.KEEPALIVE:
                    pass
                else:
                    raise ProtocolError(f"Agent: unexpected op: {op}")
        finally:
            # output received before a failure is kept
            for w in streams.values():
                if w is not section.message_writer:
                    w.close()

    # -- shutdown ----------------------------------------------------------------

    def close(self) -> None:
        """Ask the agent to exit, killing it if it does not. Never raises."""
        logger.info("Agent[%d]: closing", self.id)
        self._keep_alive.finished()
        try:
            self._writer.send_op(Op.CLOSE)
            self._writer.close()
        except (OSError, ValueError) as e:
            logger.warning("Agent[%d]: killing process (%s)", self.id, e)
            self.process.kill()

        try:
            rc = self.process.wait(timeout=self._config.close_timeout)
            if rc != 0:
                logger.warning("Agent[%d]: exited, process exit code: %s", self.id, rc)
        except subprocess.TimeoutExpired:
            logger.warning("Agent[%d]: did not exit within %g seconds; killing process",
                           self.id, self._config.close_timeout)
            self.process.kill()
            self.process.wait()
        finally:
            for closeable in (self._writer, self._reader, self._sock):
                try:
                    closeable.close()
                except (OSError, ValueError):
                    pass
        logger.info("Agent[%d]: closed", self.id)

    def __repr__(self) -> str:
        return f"Agent[{self.id}]"


def _accept(server: socket.socket, process: subprocess.Popen, timeout: float) -> socket.socket:
    server.settimeout(_ACCEPT_POLL)
    deadline = time.monotonic() + timeout
    while True:
        try:
            sock, _ = server.accept()
            return sock
        except socket.timeout:
            rc = process.poll()
            if rc is not None:
                raise AgentFault(f"agent process exited with code {rc} before connecting") from None
            if time.monotonic() >= deadline:
                raise AgentFault(f"agent did not connect within {timeout:g} seconds") from None
