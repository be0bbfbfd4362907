"""Lightweight timeouts: cancellable one-shot and periodic alarms.

All alarms are serviced by a single daemon scheduler thread, so alarm
callbacks must be quick. Anything slow should hand off to its own thread.
"""

import ctypes
import heapq
import itertools
import logging
import threading
import time
from typing import Callable, TextIO

logger = logging.getLogger(__name__)


class ThreadInterrupted(Exception):
    """Raised asynchronously in a thread that an alarm interrupts."""


def interrupt_thread(thread: threading.Thread) -> bool:
    """Raise ThreadInterrupted in *thread* at its next bytecode boundary.

    Blocking calls in C code are not broken out of; the exception is
    delivered once the call returns to the interpreter. Returns True if the
    exception was scheduled.
    """
    ident = thread.ident
    if ident is None or not thread.is_alive():
        return False
    n = ctypes.pythonapi.PyThreadState_SetAsyncExc(
        ctypes.c_ulong(ident), ctypes.py_object(ThreadInterrupted))
    if n > 1:
        # should never happen; undo rather than hit several threads
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(ident), None)
        return False
    return n == 1


class _Scheduler:
    """A heap of pending alarms and the one thread that fires them."""

    def __init__(self) -> None:
        self._queue: list = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._stopped = False

    def submit(self, delay: float, alarm: "Alarm") -> None:
        with self._cond:
            heapq.heappush(self._queue, (time.monotonic() + delay, next(self._seq), alarm))
            if self._thread is None:
                self._stopped = False
                self._thread = threading.Thread(target=self._run, name="alarm-scheduler", daemon=True)
                self._thread.start()
            self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._stopped = True
            self._queue.clear()
            self._thread = None
            self._cond.notify_all()

    def _run(self) -> None:
        while True:
            with self._cond:
                while True:
                    if self._stopped:
                        return
                    now = time.monotonic()
                    if self._queue and self._queue[0][0] <= now:
                        _, _, alarm = heapq.heappop(self._queue)
                        break
                    timeout = self._queue[0][0] - now if self._queue else None
                    self._cond.wait(timeout)
            alarm._fire()


_scheduler = _Scheduler()


class Alarm:
    """A pending timed action; see schedule() and friends."""

    def __init__(self, delay: float, msg_out: TextIO | None, period: float | None = None):
        self.delay = delay
        self.period = period
        self.msg_out = msg_out
        self._lock = threading.Lock()
        self._cancelled = False
        self._fired = False
        self._count = 0

    def cancel(self) -> None:
        """Cancel the alarm. Idempotent, and safe after the alarm has fired."""
        with self._lock:
            self._cancelled = True

    def did_fire(self) -> bool:
        """True if the alarm has fired at least once."""
        return self._fired

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            if self.msg_out is not None:
                try:
                    if self._count == 0:
                        self.msg_out.write(f"Timeout signalled after {self.delay:g} seconds\n")
                    elif self._count % 100 == 0:
                        self.msg_out.write(f"Timeout refired {self._count} times\n")
                except ValueError:
                    # the log was closed under us
                    pass
            self._count += 1
            self._fired = True
        try:
            self._action()
        except Exception:
            logger.exception("Alarm action failed")
        if self.period is not None:
            with self._lock:
                if not self._cancelled:
                    _scheduler.submit(self.period, self)

    def _action(self) -> None:
        raise NotImplementedError


class _CallbackAlarm(Alarm):
    def __init__(self, delay, msg_out, callback: Callable[[], None]):
        super().__init__(delay, msg_out)
        self._callback = callback

    def _action(self) -> None:
        self._callback()


class _Interruptor(Alarm):
    def __init__(self, delay, msg_out, thread: threading.Thread, period: float | None = None):
        super().__init__(delay, msg_out, period)
        self._thread = thread

    def _action(self) -> None:
        interrupt_thread(self._thread)


class _NoAlarm(Alarm):
    def __init__(self):
        super().__init__(0, None)

    def cancel(self) -> None:
        pass

    def did_fire(self) -> bool:
        return False


NONE: Alarm = _NoAlarm()
"""An alarm that never fires; use it to initialize an Alarm variable."""


def schedule(delay: float, msg_out: TextIO | None, callback: Callable[[], None]) -> Alarm:
    """Run *callback* once on the scheduler thread after *delay* seconds."""
    alarm = _CallbackAlarm(delay, msg_out, callback)
    _scheduler.submit(delay, alarm)
    return alarm


def schedule_interrupt(delay: float, msg_out: TextIO | None, thread: threading.Thread) -> Alarm:
    """Interrupt *thread* once after *delay* seconds."""
    alarm = _Interruptor(delay, msg_out, thread)
    _scheduler.submit(delay, alarm)
    return alarm


def schedule_periodic_interrupt(delay: float, msg_out: TextIO | None,
                                thread: threading.Thread, period: float | None = None) -> Alarm:
    """Interrupt *thread* after *delay* seconds, then every *period* until cancelled.

    *period* defaults to *delay*.
    """
    alarm = _Interruptor(delay, msg_out, thread, period if period is not None else delay)
    _scheduler.submit(delay, alarm)
    return alarm


def finished() -> None:
    """Drop all pending alarms and stop the scheduler thread."""
    _scheduler.shutdown()
