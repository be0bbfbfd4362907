"""Identity of the Python installation a test runs on."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Interpreter:
    """A Python executable, identified by its absolute path.

    Symlinks are not resolved: a virtualenv's ``python`` is a
    link to the base interpreter but runs with a different ``sys.prefix``.
    """
    executable: Path

    def __post_init__(self):
        object.__setattr__(self, "executable", Path(os.path.abspath(self.executable)))

    @classmethod
    def current(cls) -> "Interpreter":
        return cls(Path(sys.executable))

    def __str__(self) -> str:
        return str(self.executable)
