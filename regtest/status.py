"""Status values: the outcome of a test action plus a reason."""

import re
import sys
from dataclasses import dataclass
from enum import IntEnum


class StatusType(IntEnum):
    PASSED = 0
    FAILED = 1
    ERROR = 2
    NOT_RUN = 3


# Exit codes used by Status.exit(), indexed by StatusType. Historical values;
# a passing test must exit non-zero so a bare sys.exit(0) can be detected.
EXIT_CODES = (95, 97, 98, 99)

EXIT_PREFIX = "STATUS:"

_TEXTS = ("Passed.", "Failed.", "Error.", "Not run.")

_WHITESPACE_RE = re.compile(r"\s+")

EXEC_PASS = "Execution successful"
EXEC_FAIL = "Execution failed"
EXEC_FAIL_EXPECT = "Execution failed as expected"
EXEC_PASS_UNEXPECT = "Execution passed unexpectedly"
EXEC_ERROR_CLEANUP = "Error while cleaning up threads after test"
UNEXPECT_SYS_EXIT = "Unexpected exit from test"


def normalize(reason: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return _WHITESPACE_RE.sub(" ", reason).strip()


@dataclass(frozen=True)
class Status:
    type: StatusType
    reason: str = ""

    def __post_init__(self):
        object.__setattr__(self, "type", StatusType(self.type))
        object.__setattr__(self, "reason", normalize(self.reason or ""))

    @classmethod
    def passed(cls, reason: str = "") -> "Status":
        return cls(StatusType.PASSED, reason)

    @classmethod
    def failed(cls, reason: str = "") -> "Status":
        return cls(StatusType.FAILED, reason)

    @classmethod
    def error(cls, reason: str = "") -> "Status":
        return cls(StatusType.ERROR, reason)

    @classmethod
    def not_run(cls, reason: str = "") -> "Status":
        return cls(StatusType.NOT_RUN, reason)

    def is_passed(self) -> bool:
        return self.type is StatusType.PASSED

    def is_failed(self) -> bool:
        return self.type is StatusType.FAILED

    def is_error(self) -> bool:
        return self.type is StatusType.ERROR

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.type]

    def augment(self, extra: str) -> "Status":
        """Return a status of the same type with *extra* appended to the reason."""
        if not self.reason:
            return Status(self.type, extra)
        return Status(self.type, f"{self.reason} [{extra}]")

    def exit(self) -> None:
        """Report this status on stderr and exit with the matching code.

        The controller scans stderr for the last ``STATUS:`` line and checks
        it against the process exit code.
        """
        if sys.stderr is not None:
            sys.stderr.write(f"{EXIT_PREFIX}{self}\n")
            sys.stderr.flush()
        sys.exit(self.exit_code)

    @classmethod
    def parse(cls, text: str) -> "Status | None":
        """Parse the ``str()`` form of a status; returns None if unrecognized."""
        text = text.strip()
        for type_, prefix in zip(StatusType, _TEXTS):
            if text.startswith(prefix):
                return cls(type_, text[len(prefix):])
        return None

    def __str__(self) -> str:
        text = _TEXTS[self.type]
        return f"{text} {self.reason}" if self.reason else text
