"""Measurement loops run by the client against either channel variant.

A run is strictly ordered: every latency probe, then every throughput trial
in plan order, then the termination signal.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import List, Sequence, Tuple, Union

from .channel import DatagramChannel, StreamChannel
from .constants import DEFAULT_LATENCY_SIZES, DEFAULT_THROUGHPUT_TRIALS, TIME_RESOLUTION_S
from .errors import EchoMismatch, NoResponse, ProtocolError
from .framing import FrameKind

logger = logging.getLogger(__name__)

Channel = Union[StreamChannel, DatagramChannel]


@dataclass(frozen=True, slots=True)
class ThroughputTrial:
    count: int
    size: int


@dataclass(frozen=True, slots=True)
class MeasurementPlan:
    latency_sizes: Tuple[int, ...] = DEFAULT_LATENCY_SIZES
    throughput_trials: Tuple[ThroughputTrial, ...] = tuple(
        ThroughputTrial(count, size) for count, size in DEFAULT_THROUGHPUT_TRIALS
    )

    @classmethod
    def build(
        cls,
        latency_sizes: Sequence[int] | None = None,
        trials: Sequence[Tuple[int, int]] | None = None,
    ) -> "MeasurementPlan":
        plan = cls()
        return cls(
            latency_sizes=tuple(latency_sizes) if latency_sizes is not None else plan.latency_sizes,
            throughput_trials=(
                tuple(ThroughputTrial(c, s) for c, s in trials)
                if trials is not None
                else plan.throughput_trials
            ),
        )


@dataclass(frozen=True, slots=True)
class LatencyResult:
    size: int
    rtt_s: float | None

    @property
    def no_response(self) -> bool:
        return self.rtt_s is None


@dataclass(frozen=True, slots=True)
class ThroughputResult:
    count: int
    size: int
    elapsed_s: float
    bits_per_second: float


@dataclass(slots=True)
class MeasurementReport:
    transport: str
    latency: List[LatencyResult] = field(default_factory=list)
    throughput: List[ThroughputResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def throughput_bps(count: int, size: int, elapsed_s: float, resolution_s: float = TIME_RESOLUTION_S) -> float:
    """Bits per second for ``count`` messages of ``size`` bytes.

    Elapsed time is floored at one clock tick so a burst faster than the
    clock can resolve never divides by zero.
    """
    return (count * size * 8) / max(elapsed_s, resolution_s)


def run_latency_probe(channel: Channel, size: int) -> LatencyResult:
    message = bytes(size)
    start = time.perf_counter()
    channel.send_data(message)
    try:
        echo = channel.recv_data()
    except NoResponse as exc:
        logger.warning("no response for %d-byte probe: %s", size, exc)
        return LatencyResult(size, None)
    rtt_s = time.perf_counter() - start

    if isinstance(channel, StreamChannel) and echo != message:
        raise EchoMismatch(f"{size}-byte echo does not match the message sent")
    return LatencyResult(size, rtt_s)


def run_latency_probes(channel: Channel, sizes: Sequence[int]) -> List[LatencyResult]:
    results = []
    for size in sizes:
        result = run_latency_probe(channel, size)
        if result.rtt_s is not None:
            logger.info("RTT for %d bytes: %.3f ms", size, result.rtt_s * 1000)
        results.append(result)
    return results


def _drain_burst(channel: StreamChannel, count: int) -> None:
    for _ in range(count):
        channel.recv_data()

    channel.send_phase_end()
    ack = channel.recv()
    if ack.kind is not FrameKind.PHASE_END:
        raise ProtocolError(f"expected phase-end acknowledgment, got {ack.kind.value}")


def run_throughput_trial(channel: Channel, count: int, size: int) -> ThroughputResult:
    message = channel.filler * size
    start = time.perf_counter()

    for _ in range(count):
        channel.send_data(message)

    # Datagram bursts are fire-and-forget: only the send side is timed.
    if isinstance(channel, StreamChannel):
        _drain_burst(channel, count)

    elapsed_s = time.perf_counter() - start
    bps = throughput_bps(count, size, elapsed_s)
    logger.info("Throughput for %d messages of %d bytes: %.0f bps", count, size, bps)
    return ThroughputResult(count, size, elapsed_s, bps)


def finish(channel: Channel) -> None:
    try:
        channel.send_terminate()
    finally:
        channel.close()


def run_plan(channel: Channel, plan: MeasurementPlan | None = None) -> MeasurementReport:
    plan = plan or MeasurementPlan()
    report = MeasurementReport(transport=channel.transport)
    try:
        report.latency.extend(run_latency_probes(channel, plan.latency_sizes))
        for trial in plan.throughput_trials:
            report.throughput.append(run_throughput_trial(channel, trial.count, trial.size))
        finish(channel)
    finally:
        channel.close()
    return report
