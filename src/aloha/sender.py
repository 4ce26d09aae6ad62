from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional

from .config import ConfigError
from .constants import (
    BACKOFF_CEILING_EXP,
    DEFAULT_FRAME_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_SLOT_TIME_MS,
    DEFAULT_TIMEOUT_S,
    HEADER_SIZE,
)
from .net import TcpEndpoint
from .packet import Frame, acknowledges, is_collision_signal


@dataclass(slots=True)
class TransferMetrics:
    frames_sent: int = 0
    bytes_sent: int = 0
    transmissions: int = 0
    max_transmissions: int = 0
    completed: bool = False
    failed_frame: Optional[int] = None
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: Optional[float] = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def avg_transmissions(self) -> float:
        if self.frames_sent == 0:
            return 0.0
        return self.transmissions / self.frames_sent

    @property
    def bandwidth_bps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return self.bytes_sent * 8 / self.duration_s

    @property
    def throughput_mbps(self) -> float:
        return self.bandwidth_bps / 1_000_000

    def record_frame(self, payload_len: int, transmissions: int) -> None:
        self.frames_sent += 1
        self.bytes_sent += payload_len
        self.transmissions += transmissions
        self.max_transmissions = max(self.max_transmissions, transmissions)


def backoff_slots(attempt: int, rng: random.Random) -> int:
    """Slots to wait before retransmission number ``attempt`` (1-based).

    Drawn uniformly from ``[0, 2**min(attempt, 10))``; zero means retry at once.
    """
    return rng.randrange(1 << min(attempt, BACKOFF_CEILING_EXP))


def _failure_reason(reply: Optional[bytes]) -> str:
    if reply is None:
        return "timeout"
    if not reply:
        return "no data"
    if is_collision_signal(reply):
        return "collision"
    return "unexpected frame"


@dataclass(slots=True)
class AlohaSender:
    """Pushes a file through the channel one frame at a time.

    A frame counts as delivered once the channel echoes back a message whose
    header carries its id. Frame ``k + 1`` is never read, let alone sent,
    before frame ``k`` is delivered; running out of retries on any frame ends
    the whole transfer.
    """

    endpoint: TcpEndpoint
    f: BinaryIO
    frame_size: int = DEFAULT_FRAME_SIZE
    slot_time_ms: int = DEFAULT_SLOT_TIME_MS
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_retries: int = DEFAULT_MAX_RETRIES
    rng: random.Random = field(default_factory=random.Random)
    sleep: Callable[[float], None] = time.sleep

    def run(self) -> TransferMetrics:
        payload_size = self.frame_size - HEADER_SIZE
        if payload_size <= 0:
            raise ConfigError(f"frame size too small: {self.frame_size}")

        metrics = TransferMetrics()
        frame_id = 0

        while True:
            chunk = self.f.read(payload_size)
            if not chunk:
                metrics.completed = True
                break

            transmissions = self._deliver(Frame(frame_id, chunk).to_bytes(), frame_id)
            if transmissions is None:
                metrics.failed_frame = frame_id
                logging.error("frame %d failed to send after %d attempts", frame_id, self.max_retries)
                break

            metrics.record_frame(len(chunk), transmissions)
            logging.info("frame %d sent successfully (%d transmissions)", frame_id, transmissions)
            frame_id += 1

        metrics.end_ts = time.monotonic()
        return metrics

    def _deliver(self, raw: bytes, frame_id: int) -> Optional[int]:
        """Send until echoed; returns the number of transmissions, or None on give-up."""
        attempts = 0
        while attempts < self.max_retries:
            try:
                # every station hears every broadcast; only this slot's reply counts
                stale = self.endpoint.drain()
                if stale:
                    logging.debug("discarded %d stale bytes before frame %d", stale, frame_id)
                self.endpoint.send(raw)
            except OSError as exc:
                logging.error("send failed for frame %d: %s", frame_id, exc)
                return None

            try:
                reply = self.endpoint.recv(self.frame_size, self.timeout_s)
            except OSError as exc:
                logging.warning("recv failed for frame %d: %s", frame_id, exc)
                reply = b""

            if reply is not None and acknowledges(reply, frame_id):
                return attempts + 1

            attempts += 1
            reason = _failure_reason(reply)
            if attempts >= self.max_retries:
                logging.info("%s on frame %d (attempt %d); giving up", reason, frame_id, attempts)
                break

            delay_ms = backoff_slots(attempts, self.rng) * self.slot_time_ms
            logging.info("%s; retrying frame %d after %d ms (attempt %d)", reason, frame_id, delay_ms, attempts)
            self.sleep(delay_ms / 1000.0)
        return None
