from __future__ import annotations

import io
import random
import threading
from dataclasses import dataclass

from .channel import Channel, ChannelReport
from .config import ChannelConfig, ConfigError
from .constants import DEFAULT_FRAME_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_SLOT_TIME_MS, DEFAULT_TIMEOUT_S
from .net import TcpEndpoint
from .sender import AlohaSender, TransferMetrics

CHANNEL_JOIN_TIMEOUT_S = 10.0


@dataclass(frozen=True, slots=True)
class SimulationResult:
    channel: ChannelReport
    senders: tuple[TransferMetrics, ...]

    @property
    def all_completed(self) -> bool:
        return all(m.completed for m in self.senders)


def run_simulation(
    *,
    senders: int = 1,
    size_bytes: int = 10_000,
    frame_size: int = DEFAULT_FRAME_SIZE,
    slot_time_ms: int = DEFAULT_SLOT_TIME_MS,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    max_retries: int = DEFAULT_MAX_RETRIES,
    seed: int = 0,
) -> SimulationResult:
    if senders <= 0:
        raise ConfigError(f"need at least one sender: {senders}")

    config = ChannelConfig(port=0, slot_time_ms=slot_time_ms, host="127.0.0.1", max_clients=senders)
    if frame_size > config.buffer_size:
        raise ConfigError(f"frame size {frame_size} exceeds the channel receive buffer ({config.buffer_size} bytes)")
    channel = Channel.open(config.validate())
    host, port = channel.listener.address

    stop = threading.Event()
    channel_report: dict[str, ChannelReport] = {}

    def channel_runner():
        channel_report["r"] = channel.run(stop.is_set)

    channel_thread = threading.Thread(target=channel_runner, name="channel", daemon=True)
    channel_thread.start()

    results: list[TransferMetrics] = [TransferMetrics() for _ in range(senders)]

    def sender_runner(index: int) -> None:
        payload = bytes((index + i) % 256 for i in range(size_bytes))
        endpoint = TcpEndpoint.connecting(host, port, timeout_s=timeout_s)
        try:
            sender = AlohaSender(
                endpoint,
                io.BytesIO(payload),
                frame_size=frame_size,
                slot_time_ms=slot_time_ms,
                timeout_s=timeout_s,
                max_retries=max_retries,
                rng=random.Random(seed + index),
            )
            results[index] = sender.run()
        finally:
            endpoint.close()

    threads = [
        threading.Thread(target=sender_runner, args=(i,), name=f"sender-{i}", daemon=True)
        for i in range(senders)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stop.set()
    channel_thread.join(timeout=CHANNEL_JOIN_TIMEOUT_S)
    if channel_thread.is_alive():
        raise RuntimeError(f"channel did not shut down within {CHANNEL_JOIN_TIMEOUT_S} s")

    return SimulationResult(channel=channel_report["r"], senders=tuple(results))
