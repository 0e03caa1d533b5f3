from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass
from typing import Tuple

from .constants import DEFAULT_CONNECT_TIMEOUT_MS, DEFAULT_MAX_DATAGRAM_SIZE, DEFAULT_READ_TIMEOUT_MS
from .errors import ConnectRefused, ConnectTimeout, ReadTimeout, ShortRead, TransportError

logger = logging.getLogger(__name__)


def _timeout_s(timeout_ms: int) -> float | None:
    return timeout_ms / 1000.0 if timeout_ms > 0 else None


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class TcpEndpoint:
    """A connected TCP socket read and written in whole units.

    Socket errors are translated into :mod:`echoprobe.errors` types here so
    nothing above this layer handles raw ``OSError``.
    """

    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()
        self.closed = False

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        impairment: Impairment | None = None,
    ) -> "TcpEndpoint":
        try:
            sock = socket.create_connection((host, port), timeout=_timeout_s(connect_timeout_ms))
        except TimeoutError as exc:
            raise ConnectTimeout(f"{host}:{port} did not accept within {connect_timeout_ms} ms") from exc
        except ConnectionRefusedError as exc:
            raise ConnectRefused(f"{host}:{port} refused the connection") from exc
        except OSError as exc:
            raise TransportError(f"cannot connect to {host}:{port}: {exc}") from exc
        return cls.accepted(sock, read_timeout_ms=read_timeout_ms, impairment=impairment)

    @classmethod
    def accepted(
        cls,
        sock: socket.socket,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        impairment: Impairment | None = None,
    ) -> "TcpEndpoint":
        sock.settimeout(_timeout_s(read_timeout_ms))
        if sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(sock, impairment)

    def send_all(self, data: bytes) -> None:
        self.impairment.sleep_if_needed()
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise TransportError(f"write failed: {exc}") from exc

    def recv_exact(self, n: int) -> bytes:
        buf = bytearray(n)
        view = memoryview(buf)
        got = 0
        while got < n:
            try:
                chunk = self.sock.recv_into(view[got:], n - got)
            except TimeoutError as exc:
                raise ReadTimeout(f"no data within {self.sock.gettimeout()} s") from exc
            except OSError as exc:
                raise TransportError(f"read failed: {exc}") from exc
            if chunk == 0:
                raise ShortRead(n, got)
            got += chunk
        return bytes(buf)

    @property
    def peer(self) -> str:
        try:
            return "%s:%s" % self.sock.getpeername()[:2]
        except (OSError, TypeError):
            return "?"

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        self.sock.close()


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        timeout_ms: int = 0,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, port))
        if timeout_ms > 0:
            sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, impairment)

    @classmethod
    def sending(
        cls,
        timeout_ms: int = 0,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if timeout_ms > 0:
            sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, impairment)

    def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.impairment.should_drop():
            logger.debug("dropped outbound %d bytes to %s", len(data), addr)
            return
        self.impairment.sleep_if_needed()
        try:
            self.sock.sendto(data, addr)
        except OSError as exc:
            raise TransportError(f"sendto {addr} failed: {exc}") from exc

    def recvfrom(self, bufsize: int = DEFAULT_MAX_DATAGRAM_SIZE) -> Tuple[bytes, Tuple[str, int]]:
        """Receive one datagram; lets ``TimeoutError`` through to the caller."""
        while True:
            try:
                data, addr = self.sock.recvfrom(bufsize)
            except TimeoutError:
                raise
            except OSError as exc:
                raise TransportError(f"recvfrom failed: {exc}") from exc
            if self.impairment.should_drop():
                logger.debug("dropped inbound %d bytes from %s", len(data), addr)
                continue
            self.impairment.sleep_if_needed()
            return data, addr

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()[:2]

    def close(self) -> None:
        self.sock.close()
