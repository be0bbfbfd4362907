"""In-process execution of test entry points and compilations.

Used directly for same-VM actions and by the agent server for agent-VM
actions. A test runs on its own thread under a WorkerSupervisor, inside a
``test_state`` overlay that is always undone, however the test ends.
"""

import importlib
import inspect
import io
import logging
import os
import sys
import threading
import time
import traceback
from contextlib import ExitStack, contextmanager, redirect_stderr, redirect_stdout
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping, TextIO

from regtest import alarm, testprops
from regtest.alarm import ThreadInterrupted
from regtest.compiler import compile_sources, status_for_exit_code
from regtest.results import OutputHandler, OutputKind
from regtest.status import (
    EXEC_ERROR_CLEANUP,
    EXEC_PASS,
    UNEXPECT_SYS_EXIT,
    Status,
)

logger = logging.getLogger(__name__)

CLASS_PATH_PREFIX = "test.class.path.prefix"

MAIN_THREAD_TIMEOUT = "Timeout"
MAIN_THREW_EXCEPT = "`main' threw exception: "
MAIN_CANT_LOAD_TEST = "Can't load test: "
MAIN_CANT_FIND_MAIN = "Can't find `main' function"

# how often a timed-out test thread is re-interrupted
INTERRUPT_PERIOD = 0.1


@dataclass
class CleanupPolicy:
    rounds: int = 4
    max_time: float = 120.0


def describe(e: BaseException) -> str:
    """One-line ``Type: message`` form of an exception."""
    return traceback.format_exception_only(type(e), e)[-1].strip()


# -- state overlay -------------------------------------------------------------

@contextmanager
def test_state(properties: Mapping[str, str], class_path: list[str], argv: list[str],
               stdout: TextIO, stderr: TextIO) -> Iterator[None]:
    """Present a test's properties, class path, argv and streams; restore on exit.

    Modules loaded from the class path while the test runs are dropped
    from ``sys.modules`` afterwards so the next test loads fresh copies.
    """
    props = dict(properties)
    path_prefix = list(class_path)
    extra = props.pop(CLASS_PATH_PREFIX, None)
    if extra:
        path_prefix = [p for p in extra.split(os.pathsep) if p] + path_prefix
    roots = [os.path.abspath(p) for p in path_prefix]

    saved_path = list(sys.path)
    saved_argv = list(sys.argv)
    saved_modules = set(sys.modules)
    with ExitStack() as stack:
        stack.enter_context(testprops.overlay(props))
        stack.enter_context(redirect_stdout(stdout))
        stack.enter_context(redirect_stderr(stderr))
        sys.path[:0] = path_prefix
        sys.argv = list(argv)
        importlib.invalidate_caches()
        try:
            yield
        finally:
            sys.path[:] = saved_path
            sys.argv = saved_argv
            for name in set(sys.modules) - saved_modules:
                if _loaded_from(sys.modules[name], roots):
                    del sys.modules[name]


def _loaded_from(module, roots: list[str]) -> bool:
    filename = getattr(module, "__file__", None)
    if not filename:
        return False
    filename = os.path.abspath(filename)
    return any(filename.startswith(root + os.sep) for root in roots)


# -- thread supervision --------------------------------------------------------

class WorkerSupervisor:
    """Tracks the threads a test starts, so they can be reclaimed afterwards.

    Threads alive on entry are the baseline; everything else that shows up
    while the supervisor is active belongs to the test.
    """

    def __init__(self, policy: CleanupPolicy | None = None):
        self._policy = policy or CleanupPolicy()
        self._baseline: set[threading.Thread] = set()
        self._saved_hook = None
        self._lock = threading.Lock()
        self.uncaught: BaseException | None = None
        self.uncaught_thread: threading.Thread | None = None
        self.cleanup_ok = False

    def __enter__(self) -> "WorkerSupervisor":
        self._baseline = set(threading.enumerate())
        self._saved_hook = threading.excepthook
        threading.excepthook = self._excepthook
        return self

    def __exit__(self, *exc) -> None:
        threading.excepthook = self._saved_hook

    def _excepthook(self, args) -> None:
        if args.thread in self._baseline:
            self._saved_hook(args)
            return
        if args.exc_type is ThreadInterrupted:
            return
        with self._lock:
            if self.uncaught is None:
                self.uncaught = args.exc_value
                self.uncaught_thread = args.thread
        traceback.print_exception(args.exc_type, args.exc_value, args.exc_traceback, file=sys.stderr)

    def start(self, target: Callable[[], None], name: str) -> threading.Thread:
        t = threading.Thread(target=target, name=name)
        t.start()
        return t

    def live_threads(self) -> list[threading.Thread]:
        current = threading.current_thread()
        return [t for t in threading.enumerate()
                if t not in self._baseline and t is not current
                and t.is_alive() and not t.daemon]

    def cleanup(self) -> bool:
        """Interrupt and join leftover threads in rounds; True if none survive."""
        rounds = max(1, self._policy.rounds)
        per_round = self._policy.max_time / rounds
        start = time.monotonic()
        for i in range(1, rounds + 1):
            deadline = start + i * per_round
            live = self.live_threads()
            if not live:
                self.cleanup_ok = True
                return True
            for t in live:
                alarm.interrupt_thread(t)
            for t in live:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                t.join(remaining)
        self.cleanup_ok = not self.live_threads()
        if not self.cleanup_ok:
            logger.warning("Threads still alive after cleanup: %s",
                           ", ".join(t.name for t in self.live_threads()))
        return self.cleanup_ok


# -- entry points --------------------------------------------------------------

class EntryPointNotFound(Exception):
    pass


def load_entry_point(entry: str) -> Callable:
    """Resolve ``module`` or ``module:function``; the function defaults to ``main``."""
    module_name, _, func_name = entry.partition(":")
    module = importlib.import_module(module_name)
    func = getattr(module, func_name or "main", None)
    if not callable(func):
        raise EntryPointNotFound(entry)
    return func


def invoke(func: Callable, args: list[str]):
    """Call *func* with the argument list if it takes one, else with none."""
    try:
        takes_args = bool(inspect.signature(func).parameters)
    except (TypeError, ValueError):
        takes_args = True
    return func(list(args)) if takes_args else func()


@dataclass
class _Outcome:
    thrown: BaseException | None = None
    exited: bool = False


def _join(t: threading.Thread, a: alarm.Alarm, deadline: float | None) -> None:
    """Wait for *t*; give up once the alarm has fired and *deadline* passes."""
    while t.is_alive():
        t.join(0.1)
        if deadline is not None and a.did_fire() and time.monotonic() > deadline:
            return


def run_class(test_name: str, properties: Mapping[str, str], class_path: list[str],
              entry: str, args: list[str], timeout: float,
              output_handler: OutputHandler, policy: CleanupPolicy | None = None) -> Status:
    """Run a test entry point in this process and return its status."""
    policy = policy or CleanupPolicy()
    out = io.StringIO()
    err = io.StringIO()

    with test_state(properties, class_path, [entry, *args], out, err):
        try:
            func = load_entry_point(entry)
        except EntryPointNotFound:
            err.write(f"\nregtest: no callable `main' found for {entry}\n\n")
            status = Status.error(MAIN_CANT_FIND_MAIN)
        except Exception as e:
            traceback.print_exc(file=err)
            err.write(f"\nregtest: cannot import test module for {entry}\n\n")
            status = Status.error(MAIN_CANT_LOAD_TEST + describe(e))
        else:
            status = _run_supervised(func, args, timeout, output_handler, policy, err)

    logger.debug("%s: %s", test_name, status)
    output_handler.write_output(OutputKind.STDOUT, out.getvalue())
    output_handler.write_output(OutputKind.STDERR, err.getvalue())
    return status


def _run_supervised(func, args, timeout, output_handler, policy, err) -> Status:
    outcome = _Outcome()

    def target():
        try:
            invoke(func, args)
            err.write("\nregtest: Test complete.\n\n")
        except SystemExit as e:
            err.write(f"\nregtest: Test called exit with code {e.code!r}\n\n")
            outcome.exited = True
        except BaseException as e:
            traceback.print_exc(file=err)
            outcome.thrown = e
            err.write(f"\nregtest: Test threw exception: {type(e).__name__}\n"
                      "regtest: shutting down test\n\n")

    status = Status.passed(EXEC_PASS)
    with WorkerSupervisor(policy) as supervisor:
        t = supervisor.start(target, name="SameVMThread")
        a = alarm.NONE
        deadline = None
        if timeout > 0:
            log = output_handler.create_output(OutputKind.LOG)
            a = alarm.schedule_periodic_interrupt(timeout, log, t, INTERRUPT_PERIOD)
            deadline = time.monotonic() + timeout + policy.max_time
        try:
            _join(t, a, deadline)
        finally:
            a.cancel()
            supervisor.cleanup()

        if a.did_fire():
            err.write("Test timed out. No timeout information is available in samevm mode.\n")
            status = Status.error(MAIN_THREAD_TIMEOUT)
        elif outcome.exited:
            status = Status.failed(UNEXPECT_SYS_EXIT)
        elif outcome.thrown is not None or supervisor.uncaught is not None:
            error = outcome.thrown if outcome.thrown is not None else supervisor.uncaught
            status = Status.failed(MAIN_THREW_EXCEPT + describe(error))

        if not supervisor.cleanup_ok:
            status = Status.error(EXEC_ERROR_CLEANUP)
    return status


def run_compile(test_name: str, properties: Mapping[str, str], args: list[str],
                timeout: float, output_handler: OutputHandler,
                policy: CleanupPolicy | None = None) -> Status:
    """Byte-compile in this process; compiler diagnostics go to the ``direct`` output."""
    policy = policy or CleanupPolicy()
    out = io.StringIO()
    result: list[int] = []

    def target():
        result.append(compile_sources(args, out))

    status = Status.error("")
    with test_state(properties, [], ["compile", *args], out, out):
        with WorkerSupervisor(policy) as supervisor:
            t = supervisor.start(target, name="CompileThread")
            a = alarm.NONE
            deadline = None
            if timeout > 0:
                log = output_handler.create_output(OutputKind.LOG)
                a = alarm.schedule_interrupt(timeout, log, t)
                deadline = time.monotonic() + timeout + policy.max_time
            try:
                _join(t, a, deadline)
            finally:
                a.cancel()
                supervisor.cleanup()
            if a.did_fire():
                status = Status.error("Compilation timed out")
            elif result:
                status = status_for_exit_code(result[0])
            elif supervisor.uncaught is not None:
                status = Status.error("compiler crashed: " + describe(supervisor.uncaught))

    logger.debug("%s: %s", test_name, status)
    text = out.getvalue()
    if text:
        output_handler.write_output(OutputKind.DIRECT, text)
    return status
