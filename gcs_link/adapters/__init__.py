"""Transport adapters for gcs-link."""

from __future__ import annotations

from ..config import ConfigurationError, LinkConfig
from ..core import MavlinkTransport
from .tcp import TcpMavlinkTransport


def build_transport(config: LinkConfig) -> MavlinkTransport:
    if config.transport == "tcp":
        return TcpMavlinkTransport(
            config.host,
            config.port,
            connect_timeout=config.connect_timeout_seconds,
        )
    raise ConfigurationError(f"Unsupported transport '{config.transport}'")


__all__ = ["TcpMavlinkTransport", "build_transport"]
