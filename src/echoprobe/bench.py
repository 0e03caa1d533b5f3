from __future__ import annotations

import logging
import threading
from typing import Literal

from .channel import DatagramChannel, StreamChannel
from .constants import DEFAULT_CONNECT_TIMEOUT_MS, DEFAULT_MAX_DATAGRAM_SIZE, DEFAULT_READ_TIMEOUT_MS
from .driver import MeasurementPlan, MeasurementReport, run_plan
from .net import Impairment
from .responder import DatagramResponder, StreamResponder

logger = logging.getLogger(__name__)


def run_benchmark(
    *,
    transport: Literal["tcp", "udp"],
    plan: MeasurementPlan | None = None,
    loss_rate: float = 0.0,
    delay_ms: int = 0,
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
    max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE,
) -> MeasurementReport:
    """Run a responder and the measurement driver against each other on loopback.

    The impairment is applied on the responder side; TCP only honours the
    delay since a stream cannot lose bytes.
    """
    impair = Impairment(loss_rate=loss_rate, delay_ms=delay_ms)

    if transport == "tcp":
        tcp_responder = StreamResponder.listening(
            "127.0.0.1", 0, read_timeout_ms=read_timeout_ms, impairment=impair
        )
        host, port = tcp_responder.address
        t = threading.Thread(target=tcp_responder.serve_forever, daemon=True)
        t.start()
        try:
            channel = StreamChannel.connect(
                host,
                port,
                connect_timeout_ms=connect_timeout_ms,
                read_timeout_ms=read_timeout_ms,
            )
            return run_plan(channel, plan)
        finally:
            tcp_responder.stop()
            t.join(timeout=10.0)

    udp_responder = DatagramResponder.listening(
        "127.0.0.1", 0, impairment=impair, max_datagram_size=max_datagram_size
    )
    host, port = udp_responder.address
    t = threading.Thread(target=udp_responder.run, daemon=True)
    t.start()
    try:
        udp_channel = DatagramChannel.open(
            host,
            port,
            read_timeout_ms=read_timeout_ms,
            max_datagram_size=max_datagram_size,
        )
        return run_plan(udp_channel, plan)
    finally:
        # A lost termination marker would leave the loop running.
        t.join(timeout=1.0)
        if t.is_alive():
            logger.debug("udp responder still running, stopping it")
            udp_responder.stop()
            t.join(timeout=10.0)
