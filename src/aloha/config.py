from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_MAX_CLIENTS,
    DEFAULT_MAX_RETRIES,
    HEADER_SIZE,
)


class ConfigError(ValueError):
    pass


def _check_port(port: int) -> None:
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range: {port}")


@dataclass(frozen=True, slots=True)
class ChannelConfig:
    port: int
    slot_time_ms: int
    host: str = "0.0.0.0"
    max_clients: int = DEFAULT_MAX_CLIENTS
    buffer_size: int = DEFAULT_BUFFER_SIZE

    @property
    def slot_time_s(self) -> float:
        return self.slot_time_ms / 1000.0

    def validate(self) -> "ChannelConfig":
        _check_port(self.port)
        if self.slot_time_ms <= 0:
            raise ConfigError(f"slot time must be positive: {self.slot_time_ms} ms")
        if self.max_clients <= 0:
            raise ConfigError(f"max clients must be positive: {self.max_clients}")
        if self.buffer_size <= 0:
            raise ConfigError(f"buffer size must be positive: {self.buffer_size}")
        return self


@dataclass(frozen=True, slots=True)
class SenderConfig:
    host: str
    port: int
    file: str
    frame_size: int
    slot_time_ms: int
    seed: int
    timeout_s: float
    max_retries: int = DEFAULT_MAX_RETRIES

    @property
    def payload_size(self) -> int:
        return self.frame_size - HEADER_SIZE

    def validate(self) -> "SenderConfig":
        _check_port(self.port)
        if self.payload_size <= 0:
            raise ConfigError(
                f"frame size too small: {self.frame_size} (header is {HEADER_SIZE} bytes)"
            )
        if self.frame_size > DEFAULT_BUFFER_SIZE:
            raise ConfigError(
                f"frame size {self.frame_size} exceeds the channel receive buffer ({DEFAULT_BUFFER_SIZE} bytes)"
            )
        if self.slot_time_ms < 0:
            raise ConfigError(f"slot time must not be negative: {self.slot_time_ms} ms")
        if self.timeout_s <= 0:
            raise ConfigError(f"timeout must be positive: {self.timeout_s} s")
        if self.max_retries <= 0:
            raise ConfigError(f"max retries must be positive: {self.max_retries}")
        return self
