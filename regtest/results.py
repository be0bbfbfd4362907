"""Output sinks for one action's results."""

import io
from enum import Enum
from typing import TextIO

from regtest.status import Status


class OutputKind(Enum):
    """Named output streams; the value is the section output name."""
    LOG = ""
    STDOUT = "System.out"
    STDERR = "System.err"
    DIRECT = "direct"


class _SectionOutput(io.StringIO):
    """A writer whose text is stored in its section when closed."""

    def __init__(self, section: "Section", name: str):
        super().__init__()
        self._section = section
        self._name = name

    def close(self) -> None:
        if not self.closed:
            self._section._store(self._name, self.getvalue())
        super().close()


class Section:
    """In-memory record of one action: a message log and named outputs."""

    def __init__(self, title: str = ""):
        self.title = title
        self.message_writer: TextIO = io.StringIO()
        self.status: Status | None = None
        self._outputs: dict[str, str] = {}

    def create_output(self, name: str) -> TextIO:
        """Return a new writer for output *name*; text is kept once it is closed."""
        return _SectionOutput(self, name)

    def _store(self, name: str, text: str) -> None:
        self._outputs[name] = self._outputs.get(name, "") + text

    def output(self, name: str) -> str | None:
        return self._outputs.get(name)

    @property
    def output_names(self) -> list[str]:
        return list(self._outputs)

    @property
    def messages(self) -> str:
        return self.message_writer.getvalue()


class OutputHandler:
    """Where in-process execution sends the output of a test."""

    def create_output(self, kind: OutputKind) -> TextIO:
        raise NotImplementedError

    def write_output(self, kind: OutputKind, text: str) -> None:
        """Write *text* to a fresh writer for *kind* and close it."""
        w = self.create_output(kind)
        try:
            w.write(text)
        finally:
            if kind is not OutputKind.LOG:
                w.close()


class SectionOutputHandler(OutputHandler):
    def __init__(self, section: Section):
        self._section = section

    def create_output(self, kind: OutputKind) -> TextIO:
        if kind is OutputKind.LOG:
            return self._section.message_writer
        return self._section.create_output(kind.value)
