from __future__ import annotations

import enum
import logging
import select
import socket
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import ChannelConfig
from .constants import COLLISION_SIGNAL
from .net import Address, TcpEndpoint, format_addr


class ChannelError(Exception):
    """The readiness poll failed; the channel cannot keep slotting."""


class SlotOutcome(enum.Enum):
    EMPTY = "empty"  # nobody attached, slept one slot
    IDLE = "idle"
    CLEAN = "clean"
    COLLISION = "collision"
    DISCONNECT = "disconnect"
    RECV_ERROR = "recv_error"


@dataclass(frozen=True, slots=True)
class StationSnapshot:
    addr: Address
    frames_received: int
    collisions: int
    total_bytes: int

    def avg_bandwidth(self, elapsed_s: float) -> float:
        if elapsed_s <= 0:
            return 0.0
        return self.total_bytes / elapsed_s


@dataclass(slots=True)
class Station:
    sock: socket.socket
    addr: Address
    frames_received: int = 0
    collisions: int = 0
    total_bytes: int = 0

    @property
    def name(self) -> str:
        return format_addr(self.addr)

    def snapshot(self) -> StationSnapshot:
        return StationSnapshot(
            addr=self.addr,
            frames_received=self.frames_received,
            collisions=self.collisions,
            total_bytes=self.total_bytes,
        )


@dataclass(frozen=True, slots=True)
class ChannelReport:
    elapsed_s: float
    stations: tuple[StationSnapshot, ...]

    def as_dict(self) -> dict:
        return {
            "role": "channel",
            "seconds": self.elapsed_s,
            "stations": [
                {
                    "address": format_addr(s.addr),
                    "frames": s.frames_received,
                    "collisions": s.collisions,
                    "bytes": s.total_bytes,
                    "avg_bandwidth": s.avg_bandwidth(self.elapsed_s),
                }
                for s in self.stations
            ],
        }


class Channel:
    """Shared medium arbitrated in fixed slots.

    Each call to :meth:`tick` is one slot: admit waiting stations, wait at most
    one slot for traffic, then either echo a lone frame to every station or,
    when two or more stations spoke, drop everything and broadcast the
    collision signal. The station table is only ever touched from the thread
    running the loop.

    Admission is capped at ``config.max_clients``. Connections beyond the cap
    are not accepted and stay in the listen backlog until a slot frees up.

    Broadcasts use blocking sends, so a stalled station holds up the rest of
    the slot.
    """

    def __init__(
        self,
        listener,
        config: ChannelConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.listener = listener
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._stations: dict[socket.socket, Station] = {}
        self._departed: list[StationSnapshot] = []
        self.started_at = clock()
        self.stopped_at: Optional[float] = None

    @classmethod
    def open(cls, config: ChannelConfig) -> "Channel":
        listener = TcpEndpoint.listening(config.host, config.port, backlog=config.max_clients)
        host, port = listener.address
        logging.info("channel listening on %s:%d; slot=%d ms", host, port, config.slot_time_ms)
        return cls(listener, config)

    @property
    def stations(self) -> tuple[Station, ...]:
        return tuple(self._stations.values())

    @property
    def departed(self) -> tuple[StationSnapshot, ...]:
        return tuple(self._departed)

    def accept_pending(self) -> int:
        accepted = 0
        while len(self._stations) < self.config.max_clients:
            try:
                pending = self.listener.accept()
            except OSError as exc:
                logging.warning("accept() failed: %s", exc)
                break
            if pending is None:
                break
            sock, addr = pending
            station = Station(sock=sock, addr=addr)
            self._stations[sock] = station
            accepted += 1
            logging.info("new station connected: %s", station.name)
        if len(self._stations) >= self.config.max_clients:
            logging.debug("station table full (%d); leaving new connections pending", len(self._stations))
        return accepted

    def tick(self) -> SlotOutcome:
        self.accept_pending()

        # select() on an empty set is an error on some platforms
        if not self._stations:
            self._sleep(self.config.slot_time_s)
            return SlotOutcome.EMPTY

        ready = self._poll()
        if not ready:
            return SlotOutcome.IDLE
        if len(ready) == 1:
            return self._clean_slot(ready[0])
        self._collision_slot(ready)
        return SlotOutcome.COLLISION

    def run(self, should_stop: Callable[[], bool]) -> ChannelReport:
        try:
            while not should_stop():
                try:
                    self.tick()
                except ChannelError as exc:
                    logging.error("%s; shutting down", exc)
                    break
        except KeyboardInterrupt:
            logging.info("interrupted; shutting down")
        return self.close()

    def close(self) -> ChannelReport:
        for station in list(self._stations.values()):
            self._remove(station)
        if self.stopped_at is None:
            self.stopped_at = self._clock()
            if self.listener is not None:
                self.listener.close()
        return self.report()

    def report(self) -> ChannelReport:
        end = self.stopped_at if self.stopped_at is not None else self._clock()
        snapshots = self._departed + [s.snapshot() for s in self._stations.values()]
        return ChannelReport(elapsed_s=max(0.0, end - self.started_at), stations=tuple(snapshots))

    def _poll(self) -> list[Station]:
        try:
            readable, _, _ = select.select(list(self._stations), [], [], self.config.slot_time_s)
        except (OSError, ValueError) as exc:
            raise ChannelError(f"select() failed: {exc}") from exc
        ready = set(readable)
        return [s for s in self._stations.values() if s.sock in ready]

    def _receive(self, station: Station) -> Optional[bytes]:
        """One recv from a ready station; b"" means it hung up, None means recv failed."""
        try:
            return station.sock.recv(self.config.buffer_size)
        except ConnectionError as exc:
            logging.info("connection to %s lost: %s", station.name, exc)
            return b""
        except OSError as exc:
            logging.warning("recv() error from %s: %s", station.name, exc)
            return None

    def _clean_slot(self, station: Station) -> SlotOutcome:
        data = self._receive(station)
        if data is None:
            return SlotOutcome.RECV_ERROR
        if not data:
            logging.info("station %s disconnected", station.name)
            self._remove(station)
            return SlotOutcome.DISCONNECT

        station.frames_received += 1
        station.total_bytes += len(data)

        failed = []
        for target in list(self._stations.values()):
            try:
                target.sock.sendall(data)
            except OSError as exc:
                logging.warning("send() failed to %s: %s", target.name, exc)
                failed.append(target)
        for target in failed:
            self._remove(target)

        logging.info("successful transmission from %s, %d bytes broadcast", station.name, len(data))
        return SlotOutcome.CLEAN

    def _collision_slot(self, ready: list[Station]) -> None:
        for station in ready:
            data = self._receive(station)
            if data is None:
                continue
            if not data:
                logging.info("station %s disconnected during collision", station.name)
                self._remove(station)
                continue
            station.collisions += 1
            logging.info("collision from %s, %d bytes discarded", station.name, len(data))

        # failing to deliver the collision signal does not detach a station
        for target in list(self._stations.values()):
            try:
                target.sock.sendall(COLLISION_SIGNAL)
            except OSError as exc:
                logging.warning("send() of collision signal failed to %s: %s", target.name, exc)

        logging.info("collision among %d stations; collision signal sent to all", len(ready))

    def _remove(self, station: Station) -> None:
        self._departed.append(station.snapshot())
        del self._stations[station.sock]
        station.sock.close()
