"""Binary framing shared by the controller and the agent server.

Each frame is a one-byte opcode followed by an opcode-specific payload.
Integers are big-endian; strings use Java's modified UTF-8 with a two-byte
length prefix, so both ends of one harness release agree byte for byte.
"""

import logging
import os
import struct
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Iterable, Mapping

from regtest import alarm

logger = logging.getLogger(__name__)

# Keep-alive bytes are written every WRITE_TIMEOUT seconds while idle; a
# reader may treat READ_TIMEOUT seconds of silence as a dead peer.
WRITE_TIMEOUT = 60.0
READ_TIMEOUT = 2 * WRITE_TIMEOUT

MAX_UTF_LENGTH = 0xFFFF


class Op(IntEnum):
    DO_COMPILE = 1
    DO_MAIN = 2
    OUTPUT = 3
    STATUS = 4
    KEEPALIVE = 5
    CLOSE = 6


class ProtocolError(OSError):
    """Malformed, truncated or unexpected data on an agent connection."""


# -- primitive encoding --------------------------------------------------------

def _modified_utf8(s: str) -> bytes:
    units = s.encode("utf-16-be", "surrogatepass")
    out = bytearray()
    for i in range(0, len(units), 2):
        c = (units[i] << 8) | units[i + 1]
        if 0 < c < 0x80:
            out.append(c)
        elif c < 0x800:
            # includes NUL, which is written as C0 80
            out += bytes((0xC0 | (c >> 6), 0x80 | (c & 0x3F)))
        else:
            out += bytes((0xE0 | (c >> 12), 0x80 | ((c >> 6) & 0x3F), 0x80 | (c & 0x3F)))
    return bytes(out)


def _from_modified_utf8(data: bytes) -> str:
    units = []
    i, n = 0, len(data)
    while i < n:
        b = data[i]
        if b < 0x80:
            units.append(b)
            i += 1
        elif b & 0xE0 == 0xC0 and i + 1 < n and data[i + 1] & 0xC0 == 0x80:
            units.append(((b & 0x1F) << 6) | (data[i + 1] & 0x3F))
            i += 2
        elif (b & 0xF0 == 0xE0 and i + 2 < n
              and data[i + 1] & 0xC0 == 0x80 and data[i + 2] & 0xC0 == 0x80):
            units.append(((b & 0x0F) << 12) | ((data[i + 1] & 0x3F) << 6) | (data[i + 2] & 0x3F))
            i += 3
        else:
            raise ProtocolError(f"malformed input around byte {i}")
    return struct.pack(f">{len(units)}H", *units).decode("utf-16-be", "surrogatepass")


def encode_utf(s: str) -> bytes:
    data = _modified_utf8(s)
    if len(data) > MAX_UTF_LENGTH:
        raise ValueError(f"encoded string too long: {len(data)} bytes")
    return struct.pack(">H", len(data)) + data


def _encode_count(n: int) -> bytes:
    if n > MAX_UTF_LENGTH:
        raise ValueError(f"too many entries: {n}")
    return struct.pack(">H", n)


def encode_collection(items: Iterable[str]) -> bytes:
    items = list(items)
    return _encode_count(len(items)) + b"".join(encode_utf(s) for s in items)


def encode_map(m: Mapping[str, str]) -> bytes:
    parts = [_encode_count(len(m))]
    for key, value in m.items():
        parts.append(encode_utf(key))
        parts.append(encode_utf(value))
    return b"".join(parts)


def frame(op: Op, payload: bytes = b"") -> bytes:
    return bytes((op,)) + payload


# -- requests and responses ----------------------------------------------------

@dataclass
class CompileRequest:
    test_name: str
    properties: dict[str, str] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)

    def to_frame(self) -> bytes:
        return frame(Op.DO_COMPILE,
                     encode_utf(self.test_name)
                     + encode_map(self.properties)
                     + encode_collection(self.args))

    @classmethod
    def read(cls, reader: "DataReader") -> "CompileRequest":
        """Read the payload that follows a DO_COMPILE opcode."""
        return cls(reader.read_utf(), reader.read_map(), reader.read_collection())


@dataclass
class MainRequest:
    test_name: str
    properties: dict[str, str] = field(default_factory=dict)
    class_path: list[str] = field(default_factory=list)
    entry: str = ""
    args: list[str] = field(default_factory=list)

    def to_frame(self) -> bytes:
        return frame(Op.DO_MAIN,
                     encode_utf(self.test_name)
                     + encode_map(self.properties)
                     + encode_utf(os.pathsep.join(self.class_path))
                     + encode_utf(self.entry)
                     + encode_collection(self.args))

    @classmethod
    def read(cls, reader: "DataReader") -> "MainRequest":
        """Read the payload that follows a DO_MAIN opcode."""
        test_name = reader.read_utf()
        properties = reader.read_map()
        class_path = [p for p in reader.read_utf().split(os.pathsep) if p]
        entry = reader.read_utf()
        args = reader.read_collection()
        return cls(test_name, properties, class_path, entry, args)


def output_frame(name: str, text: str) -> bytes:
    return frame(Op.OUTPUT, encode_utf(name) + encode_utf(text))


def status_frame(type_: int, reason: str) -> bytes:
    return frame(Op.STATUS, struct.pack(">b", type_) + encode_utf(reason))


# -- streams -------------------------------------------------------------------

class DataWriter:
    """Writes whole frames to a binary stream.

    ``lock`` serializes every frame on the stream; keep-alive ticks and
    request/response traffic share it.
    """

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self.lock = threading.RLock()

    def send(self, data: bytes) -> None:
        with self.lock:
            self._stream.write(data)
            self._stream.flush()

    def send_op(self, op: Op) -> None:
        self.send(frame(op))

    def close(self) -> None:
        with self.lock:
            self._stream.close()


class DataReader:
    def __init__(self, stream: BinaryIO):
        self._stream = stream

    def _read_exactly(self, n: int) -> bytes:
        data = self._stream.read(n)
        if data is None or len(data) < n:
            raise ProtocolError("unexpected EOF")
        return data

    def read_op(self) -> int | None:
        """Read the next opcode, or None at end of stream."""
        data = self._stream.read(1)
        if not data:
            return None
        return data[0]

    def read_byte(self) -> int:
        return struct.unpack(">b", self._read_exactly(1))[0]

    def read_short(self) -> int:
        return struct.unpack(">H", self._read_exactly(2))[0]

    def read_utf(self) -> str:
        return _from_modified_utf8(self._read_exactly(self.read_short()))

    def read_collection(self) -> list[str]:
        return [self.read_utf() for _ in range(self.read_short())]

    def read_map(self) -> dict[str, str]:
        result = {}
        for _ in range(self.read_short()):
            key = self.read_utf()
            result[key] = self.read_utf()
        return result

    def close(self) -> None:
        self._stream.close()


# -- keep-alive ----------------------------------------------------------------

class KeepAlive:
    """Writes KEEPALIVE frames on an idle connection every *interval* seconds.

    Disable it while a request is in flight; a tick that races with
    ``set_enabled(False)`` finds the flag cleared and writes nothing.
    """

    def __init__(self, writer: DataWriter, interval: float = WRITE_TIMEOUT):
        self._writer = writer
        self._interval = interval
        self._enabled = False
        self._finished = False
        self._alarm = alarm.NONE

    def set_enabled(self, on: bool) -> None:
        with self._writer.lock:
            self._alarm.cancel()
            self._enabled = on and not self._finished
            if self._enabled:
                self._alarm = alarm.schedule(self._interval, None, self._ping)
            else:
                self._alarm = alarm.NONE

    def finished(self) -> None:
        """Stop for good."""
        with self._writer.lock:
            self._finished = True
            self.set_enabled(False)

    def _ping(self) -> None:
        with self._writer.lock:
            if not self._enabled:
                return
            try:
                logger.debug("KeepAlive.ping")
                self._writer.send_op(Op.KEEPALIVE)
            except (OSError, ValueError) as e:
                # the owner finds out on its next real request
                logger.debug("KeepAlive write failed: %s", e)
                return
            self.set_enabled(True)
