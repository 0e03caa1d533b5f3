from __future__ import annotations

import argparse
import json
import logging
import signal
from typing import Tuple, Union

from .bench import run_benchmark
from .channel import DatagramChannel, StreamChannel
from .constants import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_LATENCY_SIZES,
    DEFAULT_MAX_DATAGRAM_SIZE,
    DEFAULT_PORT,
    DEFAULT_READ_TIMEOUT_MS,
    DEFAULT_THROUGHPUT_TRIALS,
)
from .driver import MeasurementPlan, MeasurementReport, run_plan
from .errors import EchoProbeError
from .net import Impairment
from .responder import DatagramResponder, StreamResponder

logger = logging.getLogger("echoprobe")


def parse_trial(text: str) -> Tuple[int, int]:
    """Parse ``COUNTxSIZE`` such as ``16384x64``."""
    try:
        count, size = (int(part) for part in text.lower().split("x"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected COUNTxSIZE, got {text!r}") from None
    if count <= 0 or size < 0:
        raise argparse.ArgumentTypeError(f"invalid trial {text!r}")
    return count, size


def build_plan(args: argparse.Namespace) -> MeasurementPlan:
    return MeasurementPlan.build(
        latency_sizes=args.latency_size or DEFAULT_LATENCY_SIZES,
        trials=args.trial or DEFAULT_THROUGHPUT_TRIALS,
    )


def print_report(report: MeasurementReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps({"role": "client", **report.to_dict()}, indent=2))
        return
    for r in report.latency:
        rtt = "no response" if r.rtt_s is None else f"{r.rtt_s * 1000:.3f} ms"
        print(f"[{report.transport}] RTT for {r.size} bytes: {rtt}")
    for t in report.throughput:
        print(
            f"[{report.transport}] Throughput for {t.count} messages of {t.size} bytes: "
            f"{t.bits_per_second:.0f} bps"
        )


def cmd_serve(args: argparse.Namespace) -> int:
    impair = Impairment(args.loss_rate, args.delay_ms)
    responder: Union[StreamResponder, DatagramResponder]
    if args.transport == "tcp":
        responder = StreamResponder.listening(
            args.listen_host,
            args.port,
            read_timeout_ms=args.read_timeout_ms,
            impairment=impair,
        )
        run = responder.serve_forever
    else:
        responder = DatagramResponder.listening(
            args.listen_host,
            args.port,
            impairment=impair,
            max_datagram_size=args.max_datagram_size,
        )
        run = responder.run

    def on_signal(signum, _frame):
        logger.info("received %s, shutting down", signal.Signals(signum).name)
        responder.stop()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)
    run()
    return 0


def cmd_measure(args: argparse.Namespace) -> int:
    channel: Union[StreamChannel, DatagramChannel]
    if args.transport == "tcp":
        channel = StreamChannel.connect(
            args.host,
            args.port,
            connect_timeout_ms=args.connect_timeout_ms,
            read_timeout_ms=args.read_timeout_ms,
        )
    else:
        channel = DatagramChannel.open(
            args.host,
            args.port,
            read_timeout_ms=args.read_timeout_ms,
            max_datagram_size=args.max_datagram_size,
        )
    print_report(run_plan(channel, build_plan(args)), args.json)
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    report = run_benchmark(
        transport=args.transport,
        plan=build_plan(args),
        loss_rate=args.loss_rate,
        delay_ms=args.delay_ms,
        connect_timeout_ms=args.connect_timeout_ms,
        read_timeout_ms=args.read_timeout_ms,
        max_datagram_size=args.max_datagram_size,
    )
    print_report(report, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="echoprobe", description="Encrypted TCP/UDP echo latency and throughput probe."
    )
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--transport", choices=["tcp", "udp"], default="tcp")
        x.add_argument("--read-timeout-ms", type=int, help=f"default {DEFAULT_READ_TIMEOUT_MS}")
        x.add_argument("--max-datagram-size", type=int, help=f"udp only; default {DEFAULT_MAX_DATAGRAM_SIZE}")

    def add_plan(x: argparse.ArgumentParser) -> None:
        x.add_argument("--connect-timeout-ms", type=int, default=DEFAULT_CONNECT_TIMEOUT_MS)
        x.add_argument("--latency-size", type=int, action="append", help="repeatable; default 8, 64, 512")
        x.add_argument("--trial", type=parse_trial, action="append", help="COUNTxSIZE, repeatable")
        x.add_argument("--json", action="store_true")

    def add_impairment(x: argparse.ArgumentParser) -> None:
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate datagram loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate per-send delay")

    serve = sub.add_parser("serve", help="run an echo responder")
    add_common(serve)
    add_impairment(serve)
    serve.add_argument("--listen-host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.set_defaults(func=cmd_serve)

    measure = sub.add_parser("measure", help="measure against a running responder")
    add_common(measure)
    add_plan(measure)
    measure.add_argument("--host", required=True)
    measure.add_argument("--port", type=int, default=DEFAULT_PORT)
    measure.set_defaults(func=cmd_measure)

    bench = sub.add_parser("bench", help="responder and client on loopback")
    add_common(bench)
    add_plan(bench)
    add_impairment(bench)
    bench.set_defaults(func=cmd_bench)

    return p


def check_transport_flags(p: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Reject flags the chosen transport would ignore, then fill in defaults."""
    if args.transport == "tcp" and args.max_datagram_size is not None:
        p.error("--max-datagram-size only applies to --transport udp")
    if args.cmd == "serve" and args.transport == "udp" and args.read_timeout_ms is not None:
        p.error("serve --transport udp does not take --read-timeout-ms")
    if args.read_timeout_ms is None:
        args.read_timeout_ms = DEFAULT_READ_TIMEOUT_MS
    if args.max_datagram_size is None:
        args.max_datagram_size = DEFAULT_MAX_DATAGRAM_SIZE


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    check_transport_flags(p, args)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return int(args.func(args))
    except EchoProbeError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    except OSError as exc:
        logger.error("socket setup failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
