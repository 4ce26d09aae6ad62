from __future__ import annotations

import struct
from dataclasses import dataclass

from .constants import COLLISION_SIGNAL, HEADER_FORMAT, HEADER_SIZE


@dataclass(frozen=True, slots=True)
class Frame:
    frame_id: int
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        return struct.pack(HEADER_FORMAT, self.frame_id) + self.payload

    @staticmethod
    def from_bytes(raw: bytes) -> "Frame":
        if len(raw) < HEADER_SIZE:
            raise ValueError(f"message too small to be a frame: {len(raw)} bytes")
        (frame_id,) = struct.unpack_from(HEADER_FORMAT, raw)
        return Frame(frame_id=frame_id, payload=raw[HEADER_SIZE:])


def is_collision_signal(raw: bytes) -> bool:
    return raw == COLLISION_SIGNAL


def acknowledges(raw: bytes, frame_id: int) -> bool:
    """True when a broadcast confirms delivery of ``frame_id``.

    The collision signal is rejected before the header is looked at, so it
    can never pass for an echo even if its first bytes happened to decode to
    the pending id.
    """
    if is_collision_signal(raw):
        return False
    try:
        return Frame.from_bytes(raw).frame_id == frame_id
    except ValueError:
        return False
