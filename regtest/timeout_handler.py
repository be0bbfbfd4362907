"""Handlers invoked on a child process that has timed out, before it is killed."""

import importlib
import logging
import os
import shutil
import signal
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TextIO

from regtest.interpreter import Interpreter

logger = logging.getLogger(__name__)


class TimeoutHandler(ABC):
    """Gathers diagnostics from a timed-out process.

    *timeout* (seconds) bounds the handler's own work; zero or less means
    no bound.
    """

    def __init__(self, log: TextIO, output_dir: Path, interpreter: Interpreter, timeout: float = 0):
        self.log = log
        self.output_dir = output_dir
        self.interpreter = interpreter
        self.timeout = timeout

    def handle_timeout(self, process: subprocess.Popen) -> None:
        self.log.write("Timeout information:\n")
        pid = getattr(process, "pid", None)
        if not pid:
            self.log.write("Could not find process id for the process that timed out.\n")
            self.log.write("Skipping timeout handling.\n")
            return
        try:
            self.run_actions(process, pid)
        except Exception as e:
            logger.exception("Timeout handler failed for pid %s", pid)
            self.log.write(f"Timeout handler failed: {e}\n")
        self.log.write("--- Timeout information end.\n")

    @abstractmethod
    def run_actions(self, process: subprocess.Popen, pid: int) -> None:
        """Collect whatever helps explain why *process* is stuck."""


class DefaultTimeoutHandler(TimeoutHandler):
    """Dumps the Python stacks of the stuck process.

    Uses ``py-spy dump`` when it is on PATH; otherwise sends SIGUSR1, which
    regtest child processes answer with a faulthandler traceback of all
    threads on their stderr (relayed to the console log).
    """

    def run_actions(self, process, pid):
        py_spy = shutil.which("py-spy")
        if py_spy is not None:
            self._run_py_spy(py_spy, pid)
        elif hasattr(signal, "SIGUSR1"):
            self.log.write(f"Sending SIGUSR1 to process {pid}; see the console log for thread stacks\n")
            os.kill(pid, signal.SIGUSR1)
        else:
            self.log.write("Warning: py-spy not found on PATH; will not dump thread stacks.\n")

    def _run_py_spy(self, py_spy: str, pid: int) -> None:
        self.log.write(f"Running py-spy on process {pid}\n")
        try:
            result = subprocess.run(
                [py_spy, "dump", "--pid", str(pid)],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout if self.timeout > 0 else None,
            )
            self.log.write(result.stdout)
        except subprocess.TimeoutExpired:
            self.log.write(f"py-spy did not complete within {self.timeout:g} seconds\n")


class TimeoutHandlerProvider:
    """Creates the configured kind of timeout handler for each action."""

    def __init__(self, handler_class: type[TimeoutHandler] | str = DefaultTimeoutHandler,
                 timeout: float = 0):
        if isinstance(handler_class, str):
            handler_class = load_handler_class(handler_class)
        self.handler_class = handler_class
        self.timeout = timeout

    def create_handler(self, log: TextIO, output_dir: Path, interpreter: Interpreter) -> TimeoutHandler:
        return self.handler_class(log, output_dir, interpreter, self.timeout)


def load_handler_class(name: str) -> type[TimeoutHandler]:
    """Import a handler class given as ``package.module.ClassName``."""
    module_name, _, class_name = name.rpartition(".")
    if not module_name:
        raise ValueError(f"not a qualified class name: {name}")
    cls = getattr(importlib.import_module(module_name), class_name)
    if not (isinstance(cls, type) and issubclass(cls, TimeoutHandler)):
        raise TypeError(f"{name} is not a TimeoutHandler")
    return cls
