from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from collections import deque
from typing import Deque, List, Set, Tuple

from .constants import (
    DEFAULT_MAX_DATAGRAM_SIZE,
    DEFAULT_MAX_FRAME_SIZE,
    DEFAULT_READ_TIMEOUT_MS,
    KEY_SEED,
    LENGTH_FIELD_BYTES,
    POLL_INTERVAL_S,
    SESSION_HISTORY,
    SHUTDOWN_GRACE_S,
)
from .errors import EchoProbeError, ShortRead
from .framing import Frame, FrameKind, is_termination
from .keystream import KeyStream
from .net import Impairment, TcpEndpoint, UdpEndpoint

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionStats:
    peer: str = "?"
    frames_echoed: int = 0
    bytes_echoed: int = 0
    phase_ends: int = 0
    terminated: bool = False
    key: int = KEY_SEED
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)


class StreamSession:
    """Echo loop for one TCP connection.

    Data frames go back byte for byte, still encrypted; the session only
    advances its own key to stay in step with the client.
    """

    def __init__(
        self,
        endpoint: TcpEndpoint,
        seed: int = KEY_SEED,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    ):
        self.endpoint = endpoint
        self.keys = KeyStream(seed)
        self.max_frame_size = max_frame_size
        self.stats = SessionStats(peer=endpoint.peer, key=self.keys.current)

    def run(self) -> SessionStats:
        stats = self.stats
        try:
            while True:
                frame = Frame.read_from(self.endpoint, max_size=self.max_frame_size)
                if frame.kind is FrameKind.TERMINATE:
                    logger.info("termination signal received from %s", stats.peer)
                    stats.terminated = True
                    break
                if frame.kind is FrameKind.PHASE_END:
                    self.endpoint.send_all(Frame.phase_end().to_bytes())
                    stats.phase_ends += 1
                    continue

                self.endpoint.send_all(frame.to_bytes())
                self.keys.step()
                stats.frames_echoed += 1
                stats.bytes_echoed += len(frame.payload)
        except ShortRead as exc:
            if exc.received == 0 and exc.expected == LENGTH_FIELD_BYTES:
                logger.info("client %s disconnected without terminating", stats.peer)
            else:
                logger.warning("client %s: %s", stats.peer, exc)
        except EchoProbeError as exc:
            logger.warning("client %s finished with error: %s", stats.peer, exc)
        finally:
            self.endpoint.close()
            stats.key = self.keys.current
            stats.end_ts = time.monotonic()
            logger.debug("session %s: %d frames echoed", stats.peer, stats.frames_echoed)
        return stats


class StreamResponder:
    """Accepts TCP clients and serves each on its own thread.

    Sessions share nothing: every connection gets a fresh key stream.
    Stats for the last ``history`` finished sessions are kept in ``sessions``.
    """

    def __init__(
        self,
        listener: socket.socket,
        *,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        impairment: Impairment | None = None,
        seed: int = KEY_SEED,
        history: int = SESSION_HISTORY,
    ):
        self.listener = listener
        self.read_timeout_ms = read_timeout_ms
        self.max_frame_size = max_frame_size
        self.impairment = impairment
        self.seed = seed
        self.running = True
        self.sessions: Deque[SessionStats] = deque(maxlen=history)
        self._lock = threading.Lock()
        self._live: Set[TcpEndpoint] = set()
        self._workers: List[threading.Thread] = []

    @classmethod
    def listening(cls, host: str, port: int, *, backlog: int = 16, **kwargs) -> "StreamResponder":
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((host, port))
            listener.listen(backlog)
        except OSError:
            listener.close()
            raise
        listener.settimeout(POLL_INTERVAL_S)
        return cls(listener, **kwargs)

    @property
    def address(self) -> Tuple[str, int]:
        return self.listener.getsockname()[:2]

    def serve_forever(self) -> None:
        logger.info("tcp responder listening on %s:%d", *self.address)
        try:
            while self.running:
                try:
                    conn, addr = self.listener.accept()
                except TimeoutError:
                    continue
                except OSError as exc:
                    if self.running:
                        logger.error("accept failed: %s", exc)
                    break
                logger.info("client connected from %s:%d", *addr[:2])
                endpoint = TcpEndpoint.accepted(
                    conn, read_timeout_ms=self.read_timeout_ms, impairment=self.impairment
                )
                worker = threading.Thread(
                    target=self._serve_session,
                    args=(endpoint,),
                    name=f"echo-session-{addr[0]}:{addr[1]}",
                    daemon=True,
                )
                with self._lock:
                    self._live.add(endpoint)
                    self._workers = [w for w in self._workers if w.is_alive()]
                    self._workers.append(worker)
                worker.start()
        finally:
            self.running = False
            self.listener.close()
            self._drain()
            logger.info("tcp responder stopped")

    def _serve_session(self, endpoint: TcpEndpoint) -> None:
        session = StreamSession(endpoint, seed=self.seed, max_frame_size=self.max_frame_size)
        stats = session.run()
        with self._lock:
            self._live.discard(endpoint)
            self.sessions.append(stats)

    def _drain(self) -> None:
        deadline = time.monotonic() + SHUTDOWN_GRACE_S
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
        with self._lock:
            stragglers = list(self._live)
        for endpoint in stragglers:
            logger.warning("closing unfinished session with %s", endpoint.peer)
            endpoint.close()

    def stop(self) -> None:
        """Stop accepting; closing the listener unblocks a pending accept."""
        self.running = False
        self.listener.close()


class DatagramResponder:
    """UDP echo loop over one socket and one process-wide key stream.

    Only one client session is valid at a time: every datagram from any
    sender advances the same key, and the termination marker from any sender
    stops the whole loop.
    """

    def __init__(
        self,
        udp: UdpEndpoint,
        *,
        max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
        seed: int = KEY_SEED,
    ):
        self.udp = udp
        self.max_datagram_size = max_datagram_size
        self.keys = KeyStream(seed)
        self.running = True
        self.stats = SessionStats(key=self.keys.current)

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        *,
        impairment: Impairment | None = None,
        **kwargs,
    ) -> "DatagramResponder":
        udp = UdpEndpoint.listening(
            host, port, timeout_ms=int(POLL_INTERVAL_S * 1000), impairment=impairment
        )
        return cls(udp, **kwargs)

    @property
    def address(self) -> Tuple[str, int]:
        return self.udp.address

    def run(self) -> SessionStats:
        stats = self.stats
        logger.info("udp responder listening on %s:%d", *self.address)
        try:
            while self.running:
                try:
                    raw, addr = self.udp.recvfrom(self.max_datagram_size)
                except TimeoutError:
                    continue

                if is_termination(raw):
                    logger.info("termination signal received from %s:%d", *addr[:2])
                    stats.terminated = True
                    break

                plain = self.keys.apply(raw)
                echo = self.keys.apply(plain)
                self.udp.sendto(echo, addr)
                stats.peer = "%s:%d" % addr[:2]
                stats.frames_echoed += 1
                stats.bytes_echoed += len(echo)
        except EchoProbeError as exc:
            if self.running:
                logger.error("udp responder failed: %s", exc)
        finally:
            self.running = False
            self.udp.close()
            stats.key = self.keys.current
            stats.end_ts = time.monotonic()
            logger.info("udp responder stopped after %d datagrams", stats.frames_echoed)
        return stats

    def stop(self) -> None:
        self.running = False
        self.udp.close()
