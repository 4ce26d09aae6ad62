from __future__ import annotations

import argparse
import json
import logging
import random
from typing import Callable

from .bench import run_simulation
from .channel import Channel
from .config import ChannelConfig, ConfigError, SenderConfig
from .console import ConsoleWatcher
from .constants import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_FRAME_SIZE,
    DEFAULT_MAX_CLIENTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SLOT_TIME_MS,
    DEFAULT_TIMEOUT_S,
)
from .net import TcpEndpoint
from .sender import AlohaSender, TransferMetrics


def _emit(payload: dict, as_json: bool) -> None:
    print(json.dumps(payload, indent=2) if as_json else payload)


def sender_payload(file: str, metrics: TransferMetrics) -> dict:
    return {
        "role": "sender",
        "file": file,
        "result": "success" if metrics.completed else "failure",
        "bytes": metrics.bytes_sent,
        "frames": metrics.frames_sent,
        "seconds": metrics.duration_s,
        "avg_transmissions": round(metrics.avg_transmissions, 2),
        "max_transmissions": metrics.max_transmissions,
        "bps": metrics.bandwidth_bps,
        "mbps": metrics.throughput_mbps,
        "failed_frame": metrics.failed_frame,
    }


def cmd_channel(args: argparse.Namespace) -> int:
    config = ChannelConfig(
        port=args.port,
        slot_time_ms=args.slot_time_ms,
        host=args.host,
        max_clients=args.max_clients,
        buffer_size=args.buffer_size,
    )
    try:
        channel = Channel.open(config.validate())
    except (ConfigError, OSError) as exc:
        logging.error("channel setup failed: %s", exc)
        return 1

    should_stop: Callable[[], bool] = lambda: False
    if not args.no_console:
        should_stop = ConsoleWatcher().start().is_set

    report = channel.run(should_stop)
    _emit(report.as_dict(), args.json)
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    config = SenderConfig(
        host=args.chan_host,
        port=args.chan_port,
        file=args.file,
        frame_size=args.frame_size,
        slot_time_ms=args.slot_time_ms,
        seed=args.seed,
        timeout_s=args.timeout,
        max_retries=args.max_retries,
    )
    try:
        config.validate()
        f = open(config.file, "rb")
    except (ConfigError, OSError) as exc:
        logging.error("sender setup failed: %s", exc)
        return 1

    with f:
        try:
            endpoint = TcpEndpoint.connecting(config.host, config.port, timeout_s=config.timeout_s)
        except OSError as exc:
            logging.error("connection to channel %s:%d failed: %s", config.host, config.port, exc)
            return 1
        logging.info("connected to channel at %s:%d", config.host, config.port)

        try:
            metrics = AlohaSender(
                endpoint,
                f,
                frame_size=config.frame_size,
                slot_time_ms=config.slot_time_ms,
                timeout_s=config.timeout_s,
                max_retries=config.max_retries,
                rng=random.Random(config.seed),
            ).run()
        finally:
            endpoint.close()

    _emit(sender_payload(config.file, metrics), args.json)
    return 0 if metrics.completed else 1


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        r = run_simulation(
            senders=args.senders,
            size_bytes=args.size_bytes,
            frame_size=args.frame_size,
            slot_time_ms=args.slot_time_ms,
            timeout_s=args.timeout,
            max_retries=args.max_retries,
            seed=args.seed,
        )
    except (ConfigError, OSError, RuntimeError) as exc:
        logging.error("simulation failed: %s", exc)
        return 1

    payload = {
        "role": "bench",
        "channel": r.channel.as_dict(),
        "senders": [sender_payload(f"<sender {i}>", m) for i, m in enumerate(r.senders)],
    }
    _emit(payload, args.json)
    return 0 if r.all_completed else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="aloha", description="Slotted ALOHA channel and file sender.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--slot-time-ms", type=int, default=DEFAULT_SLOT_TIME_MS)
        x.add_argument("--json", action="store_true")

    def add_sender_opts(x: argparse.ArgumentParser) -> None:
        x.add_argument("--frame-size", type=int, default=DEFAULT_FRAME_SIZE, help=f"header + payload bytes, at most {DEFAULT_BUFFER_SIZE}")
        x.add_argument("--seed", type=int, default=0, help="backoff random seed")
        x.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_S, help="ack wait per attempt (s)")
        x.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)

    chan = sub.add_parser("channel", help="run the shared channel")
    add_common(chan)
    chan.add_argument("--host", default="0.0.0.0")
    chan.add_argument("--port", type=int, required=True)
    chan.add_argument("--max-clients", type=int, default=DEFAULT_MAX_CLIENTS)
    chan.add_argument("--buffer-size", type=int, default=DEFAULT_BUFFER_SIZE)
    chan.add_argument("--no-console", action="store_true", help="ignore end-of-input on stdin")
    chan.set_defaults(func=cmd_channel)

    send = sub.add_parser("send", help="send a file through a channel")
    add_common(send)
    add_sender_opts(send)
    send.add_argument("--chan-host", required=True)
    send.add_argument("--chan-port", type=int, required=True)
    send.add_argument("--file", required=True)
    send.set_defaults(func=cmd_send)

    bench = sub.add_parser("bench", help="channel + senders on loopback")
    add_common(bench)
    add_sender_opts(bench)
    bench.add_argument("--senders", type=int, default=1)
    bench.add_argument("--size-bytes", type=int, default=10_000)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
