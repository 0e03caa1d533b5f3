from __future__ import annotations

import enum
import logging
import socket
import time
from collections import deque
from typing import Deque, Optional, Tuple

from .constants import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_MAX_DATAGRAM_SIZE,
    DEFAULT_READ_TIMEOUT_MS,
    KEY_SEED,
    TERMINATION_MESSAGE,
)
from .errors import NoResponse, PayloadTooLarge, ProtocolError, TransportError
from .framing import ByteStream, Frame, FrameKind
from .keystream import KeyStream, transform
from .net import Impairment, TcpEndpoint, UdpEndpoint

logger = logging.getLogger(__name__)


class ChannelState(enum.Enum):
    CONNECTED = "connected"
    AWAITING_RESPONSE = "awaiting-response"
    CLOSED = "closed"


class StreamChannel:
    """Client side of the length-prefixed TCP echo protocol.

    The key is advanced as soon as a data frame is composed. Each echo is
    unsealed with the key that sealed its request, so requests may be
    pipelined (a throughput burst sends ``count`` frames before reading any
    echo) without the two endpoints drifting apart.
    """

    transport = "tcp"
    filler = b"\x00"

    def __init__(self, endpoint: ByteStream, keys: KeyStream | None = None):
        self.endpoint = endpoint
        self.keys = keys or KeyStream()
        self.state = ChannelState.CONNECTED
        # Keys of requests still waiting for their echo; None marks an empty
        # payload, which travels as a zero-length frame and consumes no key.
        self._pending: Deque[Optional[int]] = deque()
        self._awaiting_ack = False
        self._released = False

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        *,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        impairment: Impairment | None = None,
        seed: int = KEY_SEED,
    ) -> "StreamChannel":
        endpoint = TcpEndpoint.connect(
            host,
            port,
            connect_timeout_ms=connect_timeout_ms,
            read_timeout_ms=read_timeout_ms,
            impairment=impairment,
        )
        logger.info("connected to %s:%d over tcp", host, port)
        return cls(endpoint, KeyStream(seed))

    @property
    def outstanding(self) -> int:
        return len(self._pending)

    def _check_open(self) -> None:
        if self.state is ChannelState.CLOSED:
            raise TransportError("channel is closed")

    def _update_state(self) -> None:
        if self.state is ChannelState.CLOSED:
            return
        busy = bool(self._pending) or self._awaiting_ack
        self.state = ChannelState.AWAITING_RESPONSE if busy else ChannelState.CONNECTED

    def send_data(self, payload: bytes) -> None:
        self._check_open()
        # Encode first so a rejected payload leaves the key and queue alone.
        if not payload:
            raw = Frame.data(b"").to_bytes()
            pending = None
        else:
            pending = self.keys.current
            raw = Frame.data(transform(payload, pending)).to_bytes()
            self.keys.step()
        self._pending.append(pending)
        self.endpoint.send_all(raw)
        self._update_state()

    def send_phase_end(self) -> None:
        self._check_open()
        self.endpoint.send_all(Frame.phase_end().to_bytes())
        self._awaiting_ack = True
        self._update_state()

    def send_terminate(self) -> None:
        self._check_open()
        self.endpoint.send_all(Frame.terminate().to_bytes())
        logger.debug("sent termination frame")

    def recv(self) -> Frame:
        """Read the next frame, returning DATA frames already decrypted."""
        self._check_open()
        frame = Frame.read_from(self.endpoint)

        if frame.kind is FrameKind.TERMINATE:
            logger.info("peer ended the session")
            self.state = ChannelState.CLOSED
            return frame

        if frame.kind is FrameKind.PHASE_END:
            if self._pending and self._pending[0] is None:
                self._pending.popleft()
                self._update_state()
                return Frame(FrameKind.DATA, b"")
            self._awaiting_ack = False
            self._update_state()
            return frame

        if not self._pending or self._pending[0] is None:
            raise ProtocolError(f"unsolicited {len(frame.payload)}-byte echo")
        key = self._pending.popleft()
        self._update_state()
        return Frame(FrameKind.DATA, transform(frame.payload, key))

    def recv_data(self) -> bytes:
        frame = self.recv()
        if not frame.is_data:
            raise ProtocolError(f"expected an echo, got {frame.kind.value}")
        return frame.payload

    def close(self) -> None:
        self.state = ChannelState.CLOSED
        if self._released:
            return
        self._released = True
        self.endpoint.close()


class DatagramChannel:
    """Client side of the UDP echo protocol.

    Every datagram is one message. Nothing is acknowledged at this layer; a
    probe that gets no echo raises :class:`NoResponse`.
    """

    transport = "udp"
    filler = b"x"

    def __init__(
        self,
        udp: UdpEndpoint,
        dest: Tuple[str, int],
        keys: KeyStream | None = None,
        max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
    ):
        self.udp = udp
        self.dest = dest
        self.keys = keys or KeyStream()
        self.max_datagram_size = max_datagram_size
        self.closed = False

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        *,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
        impairment: Impairment | None = None,
        seed: int = KEY_SEED,
    ) -> "DatagramChannel":
        try:
            addr = socket.gethostbyname(host)
        except OSError as exc:
            raise TransportError(f"cannot resolve {host}: {exc}") from exc
        udp = UdpEndpoint.sending(timeout_ms=read_timeout_ms, impairment=impairment)
        return cls(udp, (addr, port), KeyStream(seed), max_datagram_size)

    def send_data(self, payload: bytes) -> None:
        if len(payload) > self.max_datagram_size:
            raise PayloadTooLarge(
                f"datagram of {len(payload)} bytes exceeds limit of {self.max_datagram_size}"
            )
        self.udp.sendto(self.keys.apply(payload), self.dest)

    def recv_data(self) -> bytes:
        """Wait for the echo of the last datagram sent.

        Datagrams from any address other than ``dest`` are discarded. A late
        echo of an earlier request that timed out still comes from ``dest`` and
        is taken as the current echo.
        """
        timeout = self.udp.sock.gettimeout()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                raw, addr = self.udp.recvfrom(self.max_datagram_size)
            except TimeoutError as exc:
                raise NoResponse(f"no echo from {self.dest[0]}:{self.dest[1]}") from exc
            if tuple(addr[:2]) == self.dest:
                return self.keys.apply(raw)
            logger.debug("ignored %d bytes from %s:%d", len(raw), *addr[:2])
            if deadline is not None and time.monotonic() >= deadline:
                raise NoResponse(f"no echo from {self.dest[0]}:{self.dest[1]}")

    def send_terminate(self) -> None:
        self.udp.sendto(TERMINATION_MESSAGE, self.dest)
        logger.debug("sent termination datagram to %s:%d", *self.dest)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.udp.close()
