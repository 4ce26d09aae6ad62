"""Slotted ALOHA channel simulator.

Two cooperating pieces share one wire format:
- the channel, which samples every attached station once per slot and either
  echoes a clean frame to everybody or announces a collision
- the sender, which pushes a file through the channel one frame at a time,
  backing off exponentially whenever its frame is not echoed back

Both loops are single threaded and deterministic given a seed.
"""

__all__ = []
