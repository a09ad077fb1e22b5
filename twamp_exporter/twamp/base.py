"""Abstract measurement client contract used by the session cache."""

from __future__ import annotations

import abc
import asyncio

from twamp_exporter.models import ExchangeResult, SessionConfig


class MeasurementTest(abc.ABC):
    """A repeatable test bound to one negotiated session."""

    @abc.abstractmethod
    async def run(
        self,
        count: int,
        interval: float,
        stop: asyncio.Event,
    ) -> list[ExchangeResult]:
        """Exchange *count* test packets, *interval* seconds apart.

        Implementations must return promptly once *stop* is set, raising
        :class:`~twamp_exporter.errors.RunTimeoutError`. A control
        connection or socket that can no longer be used is reported as
        :class:`~twamp_exporter.errors.SessionBrokenError`.
        """


class MeasurementSession(abc.ABC):
    """A negotiated, started test session."""

    @abc.abstractmethod
    async def create_test(self) -> MeasurementTest:
        """Return the test handle used for every run of this session."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Stop the session and release its test socket."""


class ControlConnection(abc.ABC):
    """An open control connection to a reflector."""

    @abc.abstractmethod
    async def create_session(self, config: SessionConfig) -> MeasurementSession:
        """Negotiate and start a test session.

        Raises :class:`~twamp_exporter.errors.ConnectError` on refusal.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Close the control connection."""


class MeasurementClient(abc.ABC):
    """Factory for control connections."""

    @abc.abstractmethod
    async def connect(self, target: str) -> ControlConnection:
        """Connect to *target* and complete the control handshake.

        Raises :class:`~twamp_exporter.errors.ConnectError` on failure.
        """
