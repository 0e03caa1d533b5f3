from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Protocol

from .constants import (
    LENGTH_FIELD_BYTES,
    LENGTH_FORMAT,
    MAX_FRAME_LENGTH,
    PHASE_END_LENGTH,
    TERMINATE_LENGTH,
    TERMINATION_MESSAGE,
)
from .errors import PayloadTooLarge, ProtocolError


class FrameKind(enum.Enum):
    DATA = "data"
    PHASE_END = "phase-end"
    TERMINATE = "terminate"


class ByteStream(Protocol):
    def send_all(self, data: bytes) -> None: ...

    def recv_exact(self, n: int) -> bytes: ...


def encode_length(n: int) -> bytes:
    if n > MAX_FRAME_LENGTH:
        raise PayloadTooLarge(f"payload of {n} bytes does not fit a 32-bit length field")
    return struct.pack(LENGTH_FORMAT, n)


def classify_length(length: int) -> FrameKind:
    if length > 0:
        return FrameKind.DATA
    if length == PHASE_END_LENGTH:
        return FrameKind.PHASE_END
    if length == TERMINATE_LENGTH:
        return FrameKind.TERMINATE
    raise ProtocolError(f"illegal frame length {length}")


@dataclass(frozen=True, slots=True)
class Frame:
    kind: FrameKind
    payload: bytes = b""

    @property
    def is_data(self) -> bool:
        return self.kind is FrameKind.DATA

    def to_bytes(self) -> bytes:
        if self.kind is FrameKind.TERMINATE:
            return encode_length(TERMINATE_LENGTH)
        if self.kind is FrameKind.PHASE_END:
            return encode_length(PHASE_END_LENGTH)
        return encode_length(len(self.payload)) + self.payload

    @staticmethod
    def read_from(stream: ByteStream, max_size: int | None = None) -> "Frame":
        """Read one frame, leaving DATA payloads exactly as they were sent."""
        (length,) = struct.unpack(LENGTH_FORMAT, stream.recv_exact(LENGTH_FIELD_BYTES))
        kind = classify_length(length)
        if kind is not FrameKind.DATA:
            return Frame(kind)
        if max_size is not None and length > max_size:
            raise ProtocolError(f"frame of {length} bytes exceeds limit of {max_size}")
        return Frame(kind, stream.recv_exact(length))

    @staticmethod
    def data(payload: bytes) -> "Frame":
        # An empty payload would go out as a zero length, i.e. a phase-end.
        if not payload:
            return Frame.phase_end()
        return Frame(FrameKind.DATA, bytes(payload))

    @staticmethod
    def phase_end() -> "Frame":
        return Frame(FrameKind.PHASE_END)

    @staticmethod
    def terminate() -> "Frame":
        return Frame(FrameKind.TERMINATE)


def is_termination(datagram: bytes) -> bool:
    """True if ``datagram`` is the raw, unencrypted termination marker."""
    return datagram == TERMINATION_MESSAGE
