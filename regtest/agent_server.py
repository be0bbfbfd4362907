"""Child process entry point for agents.

Invoked as: python -m regtest.agent_server [-policy URI [-allowAddAuditHook]]
            [-keepalive SECONDS] [-host HOST] -port PORT
Connects back to the controller and serves compile and main requests until
told to close. Without -port it serves stdin/stdout instead.
All logging goes to stderr, which the controller relays to its console.
"""

import argparse
import faulthandler
import io
import logging
import signal
import socket
import sys
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import yaml

from regtest import inprocess
from regtest.protocol import (
    WRITE_TIMEOUT,
    CompileRequest,
    DataReader,
    DataWriter,
    KeepAlive,
    MainRequest,
    Op,
    ProtocolError,
    output_frame,
    status_frame,
)
from regtest.results import OutputHandler, OutputKind
from regtest.status import Status

logger = logging.getLogger("agent_server")

HOST = "-host"
PORT = "-port"
POLICY = "-policy"
KEEPALIVE = "-keepalive"
ALLOW_ADD_AUDIT_HOOK = "-allowAddAuditHook"

# largest OUTPUT chunk, in characters
BLOCK_SIZE = 4096


class PolicyViolation(PermissionError):
    pass


def install_policy(policy_file: str | Path, allow_add_audit_hook: bool = False) -> frozenset[str]:
    """Deny the audit events listed under ``deny:`` in a YAML policy file.

    Unless *allow_add_audit_hook* is set, tests are also prevented from
    installing audit hooks of their own. Returns the denied events.
    """
    with open(policy_file, "r") as f:
        data = yaml.safe_load(f) or {}
    denied = set(data.get("deny", []))
    if not allow_add_audit_hook:
        denied.add("sys.addaudithook")
    denied = frozenset(denied)

    def hook(event, args):
        if event in denied:
            raise PolicyViolation(f"{event} is not allowed by the test policy")

    sys.addaudithook(hook)
    return denied


def _policy_path(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return url2pathname(parsed.path)
    return uri


class _FrameWriter(io.TextIOBase):
    """Text sink that sends each write back to the controller as OUTPUT frames."""

    def __init__(self, writer: DataWriter, name: str):
        self._writer = writer
        self._name = name

    def writable(self) -> bool:
        return True

    def write(self, s: str) -> int:
        for i in range(0, len(s), BLOCK_SIZE):
            self._writer.send(output_frame(self._name, s[i:i + BLOCK_SIZE]))
        return len(s)


class FrameOutputHandler(OutputHandler):
    def __init__(self, writer: DataWriter):
        self._writer = writer

    def create_output(self, kind: OutputKind):
        return _FrameWriter(self._writer, kind.value)


class AgentServer:
    def __init__(self, args: list[str]):
        parser = argparse.ArgumentParser(prog="regtest.agent_server")
        parser.add_argument(HOST, default="127.0.0.1")
        parser.add_argument(PORT, type=int, default=-1)
        parser.add_argument(POLICY, default=None)
        parser.add_argument(KEEPALIVE, type=float, default=WRITE_TIMEOUT)
        parser.add_argument(ALLOW_ADD_AUDIT_HOOK, action="store_true")
        opts = parser.parse_args(args)

        self._sock = None
        if opts.port > 0:
            self._sock = socket.create_connection((opts.host, opts.port))
            self._sock.settimeout(2 * opts.keepalive)
            self._reader = DataReader(self._sock.makefile("rb"))
            self._writer = DataWriter(self._sock.makefile("wb"))
        else:
            self._reader = DataReader(sys.stdin.buffer)
            self._writer = DataWriter(sys.stdout.buffer)
        self._keep_alive = KeepAlive(self._writer, opts.keepalive)
        self._output = FrameOutputHandler(self._writer)

        if opts.policy:
            denied = install_policy(_policy_path(opts.policy), opts.allowAddAuditHook)
            logger.info("Installed policy %s denying %s", opts.policy, sorted(denied))

    def run(self) -> None:
        try:
            while True:
                op = self._reader.read_op()
                if op is None or op == Op.CLOSE:
                    return
                if op == Op.DO_COMPILE:
                    self._do_compile()
                elif op == Op.DO_MAIN:
                    self._do_main()
                elif op == Op.KEEPALIVE:
                    continue
                else:
                    raise ProtocolError(f"Agent.Server: unexpected op: {op}")
        finally:
            self._keep_alive.finished()
            if self._sock is not None:
                self._sock.close()

    def _do_compile(self) -> None:
        request = CompileRequest.read(self._reader)
        logger.debug("doCompile %s %s", request.test_name, request.args)
        self._keep_alive.set_enabled(True)
        try:
            status = inprocess.run_compile(request.test_name, request.properties,
                                           request.args, 0, self._output)
            self._write_status(status)
        finally:
            self._keep_alive.set_enabled(False)

    def _do_main(self) -> None:
        request = MainRequest.read(self._reader)
        logger.debug("doMain %s %s", request.test_name, request.entry)
        self._keep_alive.set_enabled(True)
        try:
            status = inprocess.run_class(request.test_name, request.properties,
                                         request.class_path, request.entry,
                                         request.args, 0, self._output)
            self._write_status(status)
        finally:
            self._keep_alive.set_enabled(False)

    def _write_status(self, status: Status) -> None:
        logger.debug("writeStatus %s", status)
        self._writer.send(status_frame(status.type, status.reason))


def main() -> None:
    # Configure logging to stderr only
    logging.basicConfig(
        level=logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if hasattr(signal, "SIGUSR1"):
        faulthandler.register(signal.SIGUSR1, file=sys.__stderr__, all_threads=True)

    try:
        AgentServer(sys.argv[1:]).run()
    except Exception:
        logger.exception("Agent server failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
