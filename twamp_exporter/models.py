"""Data models for twamp-exporter."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from twamp_exporter.config import (
    DEFAULT_LISTEN_ADDRESS,
    DEFAULT_PADDING,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECEIVER_PORT,
    DEFAULT_REFLECTOR_TIMEOUT,
    DEFAULT_RUN_COUNT,
    DEFAULT_RUN_INTERVAL,
    DEFAULT_SENDER_PORT,
    DEFAULT_SHUTDOWN_GRACE,
)


@dataclass
class SessionConfig:
    """Parameters sent to the reflector in Request-TW-Session."""

    sender_port: int = DEFAULT_SENDER_PORT
    receiver_port: int = DEFAULT_RECEIVER_PORT
    timeout: int = DEFAULT_REFLECTOR_TIMEOUT  # Also the per-exchange reply wait
    padding: int = DEFAULT_PADDING
    tos: int = 0x00


@dataclass
class ExchangeResult:
    """One test packet sent to the reflector."""

    seq: int
    rtt: Optional[float] = None  # Seconds, None if the reply never came back

    @property
    def lost(self) -> bool:
        return self.rtt is None


@dataclass
class TwampStats:
    """Aggregated statistics for one measurement run.

    Latencies are in seconds. ``loss`` is the percentage of transmitted
    test packets that were not reflected.
    """

    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    stddev: float = 0.0
    tx: int = 0
    rx: int = 0
    loss: float = 0.0


@dataclass
class ProbeOutcome:
    """Result of one scrape's probe attempt."""

    target: str
    success: bool
    duration: float
    stats: Optional[TwampStats] = None
    error: Optional[str] = None


@dataclass
class ExporterConfig:
    """Configuration for a running exporter."""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    timeout: float = DEFAULT_PROBE_TIMEOUT
    count: int = DEFAULT_RUN_COUNT
    interval: float = DEFAULT_RUN_INTERVAL
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE
    session: SessionConfig = field(default_factory=SessionConfig)

    @property
    def listen_host(self) -> Optional[str]:
        host, _, _ = self.listen_address.rpartition(":")
        host = host.strip("[]")
        return host or None

    @property
    def listen_port(self) -> int:
        _, _, port = self.listen_address.rpartition(":")
        return int(port)
