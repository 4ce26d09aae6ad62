from __future__ import annotations

import struct

HEADER_FORMAT = "<i"  # frame id, native int layout of the reference stations
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

COLLISION_SIGNAL = b"NOISE"

DEFAULT_MAX_CLIENTS = 10
DEFAULT_BUFFER_SIZE = 2048
DEFAULT_MAX_RETRIES = 10
BACKOFF_CEILING_EXP = 10

DEFAULT_SLOT_TIME_MS = 100
DEFAULT_TIMEOUT_S = 2.0
DEFAULT_FRAME_SIZE = 104
