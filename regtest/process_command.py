"""Run a child process to completion, with copied output and a timeout."""

import logging
import subprocess
import threading
import time
from typing import BinaryIO, Callable, Mapping, TextIO

from regtest import alarm
from regtest.status import EXIT_PREFIX, Status
from regtest.timeout_handler import TimeoutHandler

logger = logging.getLogger(__name__)


class StreamCopier(threading.Thread):
    """Copies lines from a child's pipe to a text writer.

    Each line is optionally prefixed and optionally shown to *scanner*
    before it is written. The copier closes the pipe when it reaches EOF.
    """

    def __init__(self, stream: BinaryIO, out: TextIO, scanner: Callable[[str], None] | None = None,
                 prefix: str = "", name: str | None = None):
        super().__init__(name=name or "StreamCopier", daemon=True)
        self._stream = stream
        self._out = out
        self._scanner = scanner
        self._prefix = prefix

    def run(self) -> None:
        try:
            for raw in iter(self._stream.readline, b""):
                line = raw.decode("utf-8", "replace")
                if self._scanner is not None:
                    self._scanner(line.rstrip("\r\n"))
                self._out.write(self._prefix + line)
                if not line.endswith("\n"):
                    self._out.write("\n")
                self._out.flush()
        except (OSError, ValueError) as e:
            logger.debug("%s stopped: %s", self.name, e)
        finally:
            try:
                self._stream.close()
            except OSError:
                pass


class _StatusScanner:
    """Remembers the last ``STATUS:`` line a child wrote."""

    def __init__(self):
        self._last: str | None = None

    def __call__(self, line: str) -> None:
        if line.startswith(EXIT_PREFIX):
            self._last = line

    def exit_status(self) -> Status | None:
        if self._last is None:
            return None
        return Status.parse(self._last[len(EXIT_PREFIX):])


class ProcessCommand:
    """A command to run as a child process and turn into a Status.

    The exit code is mapped through the table built with
    ``set_status_for_exit``; codes not in the table give the default status
    augmented with the code. A ``STATUS:`` line the child writes on stderr
    takes precedence, provided it agrees with the exit code.
    """

    def __init__(self, command: list[str], env: Mapping[str, str] | None = None,
                 exec_dir: str | None = None, out: TextIO | None = None, err: TextIO | None = None,
                 timeout: float = 0, timeout_handler: TimeoutHandler | None = None,
                 message_writer: TextIO | None = None):
        self.command = list(command)
        self.env = dict(env) if env is not None else None
        self.exec_dir = exec_dir
        self.out = out
        self.err = err
        self.timeout = timeout
        self.timeout_handler = timeout_handler
        self.message_writer = message_writer
        self.default_status = Status.error("unknown reason")
        self._status_table: dict[int, Status] | None = None

    def set_status_for_exit(self, exit_code: int, status: Status) -> "ProcessCommand":
        if self._status_table is None:
            self._status_table = {}
        self._status_table[exit_code] = status
        return self

    def set_default_status(self, status: Status) -> "ProcessCommand":
        self.default_status = status
        return self

    def execute(self) -> Status:
        if self.out is None or self.err is None:
            raise ValueError("output and error streams are required")
        program = self.command[0]
        try:
            process = subprocess.Popen(
                self.command,
                cwd=self.exec_dir,
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            return Status.error(f"Error invoking program `{program}': {e}")

        if self.message_writer is not None:
            self.message_writer.write(f"Process id: {process.pid}\n")
        logger.debug("Started %s as process %d", program, process.pid)

        start = time.monotonic()
        handler_done = threading.Event()
        a = alarm.NONE
        if self.timeout > 0:
            a = alarm.schedule(self.timeout, self.message_writer,
                               lambda: self._on_timeout(process, handler_done))

        scanner = _StatusScanner()
        out_copier = StreamCopier(process.stdout, self.out, name=f"stdout copier for {program}")
        err_copier = StreamCopier(process.stderr, self.err, scanner, name=f"stderr copier for {program}")
        out_copier.start()
        err_copier.start()
        try:
            out_copier.join()
            err_copier.join()
            exit_code = process.wait()
        finally:
            a.cancel()

        if a.did_fire():
            done = self._wait_for_handler(handler_done)
            msg = f"Program `{program}' timed out"
            if not done:
                msg += ": timeout handler did not complete within its own timeout."
            elapsed = time.monotonic() - start
            msg += (f" (timeout set to {self.timeout:g}s, elapsed time including"
                    f" timeout handling was {elapsed:.1f}s).")
            return Status.error(msg)

        if exit_code != 0:
            logger.debug("%s exited with code %d", program, exit_code)
        return self.get_status(exit_code, scanner.exit_status())

    def _on_timeout(self, process: subprocess.Popen, done: threading.Event) -> None:
        # the handler can be slow; keep it off the alarm thread
        def run():
            try:
                if self.timeout_handler is not None:
                    self.timeout_handler.handle_timeout(process)
            finally:
                logger.warning("Killing timed-out process %d", process.pid)
                process.kill()
                done.set()

        threading.Thread(target=run, name=f"Timeout Handler for {self.command[0]}", daemon=True).start()

    def _wait_for_handler(self, done: threading.Event) -> bool:
        handler_timeout = self.timeout_handler.timeout if self.timeout_handler is not None else 0
        if handler_timeout <= 0:
            done.wait()
            return True
        return done.wait(handler_timeout + 10)

    def get_status(self, exit_code: int, log_status: Status | None) -> Status:
        if log_status is not None:
            if log_status.exit_code == exit_code:
                return log_status
            return Status.error(f"unexpected exit code: {exit_code}, doesn't match exit status:"
                                f" \"{log_status}\" which was reported by the test process")
        if self._status_table is not None:
            status = self._status_table.get(exit_code)
            if status is None:
                return self.default_status.augment(f"exit code: {exit_code}")
            return status
        if exit_code == 0:
            return Status.passed("exit code 0")
        return Status.failed(f"exit code {exit_code}")
