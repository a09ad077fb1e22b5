"""Session cache for twamp-exporter.

Keeps one established TWAMP session per target so repeated scrapes of
the same target skip the control handshake and session negotiation.

Two lock granularities are used:

- the registry lock guards the target -> Session mapping and the
  in-progress creations; it is never held across network I/O.
- each Session carries its own lock, held by the prober for exactly one
  measurement run.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field

from twamp_exporter.errors import ConnectError, ProbeError
from twamp_exporter.models import SessionConfig
from twamp_exporter.twamp.base import (
    ControlConnection,
    MeasurementClient,
    MeasurementSession,
    MeasurementTest,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    """An established, reusable measurement relationship with one target."""

    target: str
    connection: ControlConnection
    session: MeasurementSession
    test: MeasurementTest
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: float = field(default_factory=time.monotonic)

    async def close(self) -> None:
        """Stop the session and close its control connection.

        Errors are logged, not raised: a session is usually closed
        because its connection already failed.
        """
        try:
            await self.session.stop()
        except (ProbeError, OSError) as exc:
            logger.debug("Stopping session for %s failed: %s", self.target, exc)
        finally:
            # Also runs when the stop is cut short by a deadline.
            try:
                await self.connection.close()
            except (ProbeError, OSError) as exc:
                logger.debug("Closing control connection to %s failed: %s", self.target, exc)


class SessionCache:
    """Maps target -> :class:`Session`, creating sessions on demand."""

    def __init__(self, client: MeasurementClient, config: SessionConfig | None = None) -> None:
        self._client = client
        self._config = config or SessionConfig()
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, target: object) -> bool:
        return target in self._sessions

    def get(self, target: str) -> Session | None:
        return self._sessions.get(target)

    def targets(self) -> list[str]:
        return sorted(self._sessions)

    async def acquire(self, target: str) -> Session:
        """Return the cached session for *target*, creating it if needed.

        Concurrent callers for a target whose session is still being
        created wait for that creation instead of starting their own.
        Cancelling a caller does not abort the creation; its session is
        cached for the next scrape.

        Raises
        ------
        ConnectError
            If connecting or negotiating failed.  Nothing is cached.
        """
        async with self._lock:
            session = self._sessions.get(target)
            if session is not None:
                return session
            task = self._pending.get(target)
            if task is None:
                task = asyncio.create_task(self._establish(target), name=f"twamp-session-{target}")
                task.add_done_callback(functools.partial(self._creation_done, target))
                self._pending[target] = task
        return await asyncio.shield(task)

    def _creation_done(self, target: str, task: asyncio.Task) -> None:
        if self._pending.get(target) is task:
            del self._pending[target]
        if not task.cancelled():
            task.exception()  # Every waiter may have left already

    async def _establish(self, target: str) -> Session:
        try:
            connection = await self._client.connect(target)
        except ConnectError:
            raise
        except (ProbeError, OSError) as exc:
            raise ConnectError(f"connecting to {target} failed: {exc}") from exc

        try:
            measurement_session = await connection.create_session(self._config)
            test = await measurement_session.create_test()
        except BaseException as exc:
            await _close_quietly(connection, target)
            if isinstance(exc, (ProbeError, OSError)) and not isinstance(exc, ConnectError):
                raise ConnectError(f"creating session with {target} failed: {exc}") from exc
            raise

        session = Session(
            target=target,
            connection=connection,
            session=measurement_session,
            test=test,
        )
        async with self._lock:
            self._sessions[target] = session
        logger.info("Created persistent TWAMP session+test for %s", target)
        return session

    async def evict(
        self,
        target: str,
        session: Session | None = None,
        deadline: float | None = None,
    ) -> bool:
        """Remove and close the cached session for *target*.

        When *session* is given, only that exact session is evicted, so a
        late eviction cannot tear down a session created after it.
        *deadline* is an event loop time bounding the close; the entry is
        removed either way.  Returns True if a session was removed.
        """
        async with self._lock:
            current = self._sessions.get(target)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[target]

        age = time.monotonic() - current.created_at
        try:
            async with asyncio.timeout_at(deadline):
                await current.close()
        except TimeoutError:
            logger.warning("Closing TWAMP session for %s did not finish before the deadline", target)
        logger.info("Deleted TWAMP session for %s (age %.1fs)", target, age)
        return True

    async def drain_all(self) -> int:
        """Close every cached session.  Returns how many were closed.

        Creations still in progress are awaited first so the sessions
        they produce are closed as well.
        """
        async with self._lock:
            pending = list(self._pending.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        logger.info("Shutting down %d TWAMP session(s)", len(sessions))
        for session in sessions:
            logger.info("Stopping TWAMP session for %s", session.target)
        await asyncio.gather(*(s.close() for s in sessions))
        return len(sessions)


async def _close_quietly(connection: ControlConnection, target: str) -> None:
    try:
        await connection.close()
    except (ProbeError, OSError) as exc:
        logger.debug("Closing control connection to %s failed: %s", target, exc)
