"""Test properties (``test.src``, ``test.classes``, ...) visible to running tests.

Tests read them with :func:`get`. The harness sets them for the duration of
one test through :func:`overlay`.
"""

from contextlib import contextmanager
from typing import Iterator, Mapping

_properties: dict[str, str] = {}


def get(name: str, default: str | None = None) -> str | None:
    return _properties.get(name, default)


@contextmanager
def overlay(props: Mapping[str, str]) -> Iterator[None]:
    """Apply *props* on top of the current properties; restore all on exit."""
    saved = dict(_properties)
    _properties.update(props)
    try:
        yield
    finally:
        _properties.clear()
        _properties.update(saved)
