from __future__ import annotations

import struct
import threading
from collections import deque

import pytest

from echoprobe.errors import ShortRead
from echoprobe.framing import Frame, classify_length
from echoprobe.responder import DatagramResponder, StreamResponder


class ScriptedEcho:
    """In-memory stand-in for a TCP endpoint whose peer is an echo responder.

    Every frame written is answered immediately the way a responder would;
    ``events`` records what crossed the wire, in order.
    """

    def __init__(self, corrupt: bool = False, ack: Frame | None = Frame.phase_end()):
        self.corrupt = corrupt
        self.ack = ack
        self.events: list[tuple[str, str]] = []
        self.closed = False
        self._replies: deque[Frame] = deque()
        self._buf = b""

    def send_all(self, data: bytes) -> None:
        (length,) = struct.unpack("!i", data[:4])
        frame = Frame(classify_length(length), data[4:])
        self.events.append(("sent", frame.kind.value))
        if frame.is_data:
            payload = frame.payload
            if self.corrupt:
                payload = bytes([payload[0] ^ 0xFF]) + payload[1:]
            self._replies.append(Frame(frame.kind, payload))
        elif frame.kind.value == "phase-end" and self.ack is not None:
            self._replies.append(self.ack)

    def recv_exact(self, n: int) -> bytes:
        if not self._buf:
            if not self._replies:
                raise ShortRead(n, 0)
            frame = self._replies.popleft()
            self.events.append(("recv", frame.kind.value))
            self._buf = frame.to_bytes()
        out, self._buf = self._buf[:n], self._buf[n:]
        return out

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def scripted_echo():
    return ScriptedEcho


@pytest.fixture
def tcp_responder():
    responder = StreamResponder.listening("127.0.0.1", 0, read_timeout_ms=5000)
    t = threading.Thread(target=responder.serve_forever, daemon=True)
    t.start()
    yield responder
    responder.stop()
    t.join(timeout=10.0)


@pytest.fixture
def udp_responder():
    responder = DatagramResponder.listening("127.0.0.1", 0)
    t = threading.Thread(target=responder.run, daemon=True)
    t.start()
    yield responder, t
    responder.stop()
    t.join(timeout=10.0)
