from __future__ import annotations

import socket
from collections import deque

import pytest

from aloha.channel import Channel, SlotOutcome, StationSnapshot
from aloha.config import ChannelConfig
from aloha.constants import COLLISION_SIGNAL
from aloha.packet import Frame

A = ("10.0.0.1", 4001)
B = ("10.0.0.2", 4002)
C = ("10.0.0.3", 4003)


class FakeListener:
    def __init__(self):
        self.pending = deque()
        self.closed = False
        self.peers = []

    def queue(self, addr, wrap=None):
        ours, theirs = socket.socketpair()
        theirs.settimeout(1.0)
        self.peers.append(theirs)
        self.pending.append((wrap(ours) if wrap else ours, addr))
        return theirs

    def accept(self):
        return self.pending.popleft() if self.pending else None

    def close(self):
        self.closed = True
        for p in self.peers:
            p.close()


class BrokenSend:
    def __init__(self, sock):
        self._sock = sock

    def fileno(self):
        return self._sock.fileno()

    def recv(self, bufsize):
        return self._sock.recv(bufsize)

    def sendall(self, data):
        raise BrokenPipeError("peer gone")

    def close(self):
        self._sock.close()


class BrokenRecv(BrokenSend):
    def recv(self, bufsize):
        raise OSError("recv failed")

    def sendall(self, data):
        self._sock.sendall(data)


class ResetRecv(BrokenRecv):
    def recv(self, bufsize):
        raise ConnectionResetError("reset by peer")


class DeadFd(BrokenRecv):
    def fileno(self):
        return -1


def make_channel(listener, sleeps=None, **overrides):
    values = dict(port=0, slot_time_ms=50)
    values.update(overrides)
    sleeps = sleeps if sleeps is not None else []
    return Channel(listener, ChannelConfig(**values), sleep=sleeps.append)


def by_addr(channel):
    return {s.addr: s for s in channel.stations}


def test_empty_channel_sleeps_one_slot():
    sleeps = []
    ch = make_channel(FakeListener(), sleeps)
    assert ch.tick() is SlotOutcome.EMPTY
    assert sleeps == [0.05]


def test_idle_slot():
    listener = FakeListener()
    listener.queue(A)
    ch = make_channel(listener)
    assert ch.tick() is SlotOutcome.IDLE
    assert len(ch.stations) == 1


def test_clean_transmission_echoes_to_everyone():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B)
    ch = make_channel(listener)
    ch.accept_pending()

    frame = Frame(0, b"x" * 100).to_bytes()
    a.sendall(frame)
    assert ch.tick() is SlotOutcome.CLEAN

    assert a.recv(2048) == frame
    assert b.recv(2048) == frame
    st = by_addr(ch)
    assert (st[A].frames_received, st[A].total_bytes, st[A].collisions) == (1, 104, 0)
    assert (st[B].frames_received, st[B].total_bytes, st[B].collisions) == (0, 0, 0)


def test_collision_discards_and_signals():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B)
    c = listener.queue(C)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(Frame(0, b"aaaa").to_bytes())
    b.sendall(Frame(0, b"bbbb").to_bytes())
    assert ch.tick() is SlotOutcome.COLLISION

    for peer in (a, b, c):
        assert peer.recv(2048) == COLLISION_SIGNAL
    st = by_addr(ch)
    assert st[A].collisions == 1
    assert st[B].collisions == 1
    assert st[C].collisions == 0
    assert all(s.total_bytes == 0 and s.frames_received == 0 for s in ch.stations)


def test_disconnect_preserves_stats_and_keeps_serving():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(Frame(0, b"hi").to_bytes())
    assert ch.tick() is SlotOutcome.CLEAN
    a.recv(2048)
    b.recv(2048)

    a.close()
    assert ch.tick() is SlotOutcome.DISCONNECT
    assert [s.addr for s in ch.stations] == [B]
    assert ch.departed == (StationSnapshot(addr=A, frames_received=1, collisions=0, total_bytes=6),)

    frame = Frame(0, b"from b").to_bytes()
    b.sendall(frame)
    assert ch.tick() is SlotOutcome.CLEAN
    assert b.recv(2048) == frame

    report = ch.close()
    assert [s.addr for s in report.stations] == [A, B]
    assert report.stations[1].frames_received == 1


def test_admission_cap_leaves_extra_connections_pending():
    listener = FakeListener()
    a = listener.queue(A)
    listener.queue(B)
    listener.queue(C)
    ch = make_channel(listener, max_clients=2)

    assert ch.accept_pending() == 2
    assert len(listener.pending) == 1

    a.close()
    assert ch.tick() is SlotOutcome.DISCONNECT
    ch.accept_pending()
    assert sorted(s.addr for s in ch.stations) == [B, C]


def test_broadcast_failure_removes_only_failing_station():
    listener = FakeListener()
    a = listener.queue(A)
    listener.queue(B, wrap=BrokenSend)
    ch = make_channel(listener)
    ch.accept_pending()

    frame = Frame(5, b"payload").to_bytes()
    a.sendall(frame)
    assert ch.tick() is SlotOutcome.CLEAN
    assert a.recv(2048) == frame
    assert [s.addr for s in ch.stations] == [A]
    assert [s.addr for s in ch.departed] == [B]


def test_collision_signal_failure_keeps_station():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B, wrap=BrokenSend)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(b"frame-a")
    b.sendall(b"frame-b")
    assert ch.tick() is SlotOutcome.COLLISION
    assert a.recv(2048) == COLLISION_SIGNAL
    assert len(ch.stations) == 2
    assert by_addr(ch)[B].collisions == 1


def test_recv_error_has_no_side_effects():
    listener = FakeListener()
    a = listener.queue(A, wrap=BrokenRecv)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(b"data")
    assert ch.tick() is SlotOutcome.RECV_ERROR
    st = by_addr(ch)[A]
    assert (st.frames_received, st.collisions, st.total_bytes) == (0, 0, 0)
    assert ch.departed == ()


def test_poll_failure_ends_run_and_still_reports():
    listener = FakeListener()
    listener.queue(A, wrap=DeadFd)
    ch = make_channel(listener)

    report = ch.run(lambda: False)

    assert [s.addr for s in report.stations] == [A]
    assert listener.closed


def test_run_stops_on_request_and_reports_each_station_once():
    listener = FakeListener()
    a = listener.queue(A)
    listener.queue(B)
    ch = make_channel(listener, slot_time_ms=1)
    ticks = iter(range(3))

    a.sendall(Frame(0, b"abc").to_bytes())
    report = ch.run(lambda: next(ticks, None) is None)

    assert sorted(s.addr for s in report.stations) == [A, B]
    assert by_addr(ch) == {}
    assert ch.close().stations == report.stations


def test_report_bandwidth_uses_elapsed_time():
    clock = iter([10.0, 12.0])
    ch = Channel(FakeListener(), ChannelConfig(port=0, slot_time_ms=10), clock=lambda: next(clock))
    ch._departed.append(StationSnapshot(addr=A, frames_received=4, collisions=1, total_bytes=1000))

    report = ch.close()
    assert report.elapsed_s == pytest.approx(2.0)
    entry = report.as_dict()["stations"][0]
    assert entry == {
        "address": "10.0.0.1:4001",
        "frames": 4,
        "collisions": 1,
        "bytes": 1000,
        "avg_bandwidth": pytest.approx(500.0),
    }


def test_zero_elapsed_means_zero_bandwidth():
    snap = StationSnapshot(addr=A, frames_received=1, collisions=0, total_bytes=100)
    assert snap.avg_bandwidth(0.0) == 0.0


def test_reset_during_receive_is_a_disconnect():
    listener = FakeListener()
    a = listener.queue(A, wrap=ResetRecv)
    listener.queue(B)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(b"data")
    assert ch.tick() is SlotOutcome.DISCONNECT
    assert [s.addr for s in ch.stations] == [B]
    assert [s.addr for s in ch.departed] == [A]


def test_disconnect_during_collision():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B)
    c = listener.queue(C)
    ch = make_channel(listener)
    ch.accept_pending()

    b.sendall(b"early frame")
    assert ch.tick() is SlotOutcome.CLEAN
    for peer in (a, b, c):
        peer.recv(2048)

    a.sendall(Frame(1, b"aaaa").to_bytes())
    b.close()
    assert ch.tick() is SlotOutcome.COLLISION

    assert a.recv(2048) == COLLISION_SIGNAL
    assert c.recv(2048) == COLLISION_SIGNAL
    assert ch.departed == (StationSnapshot(addr=B, frames_received=1, collisions=0, total_bytes=11),)
    st = by_addr(ch)
    assert sorted(st) == [A, C]
    assert st[A].collisions == 1
    assert st[A].total_bytes == 0


def test_recv_error_during_collision_is_not_counted():
    listener = FakeListener()
    a = listener.queue(A)
    b = listener.queue(B, wrap=BrokenRecv)
    ch = make_channel(listener)
    ch.accept_pending()

    a.sendall(b"frame-a")
    b.sendall(b"frame-b")
    assert ch.tick() is SlotOutcome.COLLISION

    assert a.recv(2048) == COLLISION_SIGNAL
    assert b.recv(2048) == COLLISION_SIGNAL
    st = by_addr(ch)
    assert st[A].collisions == 1
    assert st[B].collisions == 0
    assert ch.departed == ()
