"""Probe orchestration for twamp-exporter.

One call to :meth:`Prober.probe` serves one scrape:

    acquire session -> lock session -> run under deadline -> classify

Outcome classification:
  success               -> statistics, session kept
  SessionBrokenError    -> session evicted, next scrape starts clean
  any other failure     -> session kept, failure reported
"""

from __future__ import annotations

import asyncio
import logging
import time

from twamp_exporter.cache import Session, SessionCache
from twamp_exporter.config import DEFAULT_RUN_COUNT, DEFAULT_RUN_INTERVAL, RUN_UNWIND_GRACE
from twamp_exporter.errors import ProbeError, RunTimeoutError, SessionBrokenError
from twamp_exporter.models import ExchangeResult, ProbeOutcome
from twamp_exporter.stats import summarize

logger = logging.getLogger(__name__)


class Prober:
    """Runs bounded TWAMP measurements against cached sessions."""

    def __init__(
        self,
        cache: SessionCache,
        count: int = DEFAULT_RUN_COUNT,
        interval: float = DEFAULT_RUN_INTERVAL,
        unwind_grace: float = RUN_UNWIND_GRACE,
    ) -> None:
        self.cache = cache
        self.count = count
        self.interval = interval
        self.unwind_grace = unwind_grace

    async def probe(self, target: str, deadline: float) -> ProbeOutcome:
        """Probe *target*, giving up after *deadline* seconds.

        Never raises for measurement failures; they are logged and
        reported as ``success=False``.
        """
        start = time.perf_counter()
        expires = asyncio.get_running_loop().time() + deadline

        def failed(error: str) -> ProbeOutcome:
            logger.warning("Probe of %s failed: %s", target, error)
            return ProbeOutcome(
                target=target,
                success=False,
                duration=time.perf_counter() - start,
                error=error,
            )

        try:
            async with asyncio.timeout_at(expires):
                session = await self.cache.acquire(target)
        except TimeoutError:
            return failed("session setup did not finish before the deadline")
        except ProbeError as exc:
            return failed(f"TWAMP session error: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error creating session for %s", target)
            return failed(f"unexpected error: {exc}")

        try:
            async with asyncio.timeout_at(expires):
                await session.lock.acquire()
        except TimeoutError:
            return failed("session busy until the deadline")

        stop = asyncio.Event()
        run = asyncio.create_task(session.test.run(self.count, self.interval, stop))
        try:
            results = await self._wait(run, stop, target, expires)
        except SessionBrokenError as exc:
            await self.cache.evict(target, session, deadline=expires)
            return failed(f"session broken, evicted: {exc}")
        except ProbeError as exc:
            return failed(f"run failed: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error probing %s", target)
            return failed(f"unexpected error: {exc}")
        finally:
            _release(session, run)

        try:
            stats = summarize(results)
        except ProbeError as exc:
            return failed(f"cannot decode results: {exc}")

        duration = time.perf_counter() - start
        logger.debug(
            "Probe of %s succeeded in %.3fs: avg=%.6fs loss=%.1f%%",
            target, duration, stats.avg, stats.loss,
        )
        return ProbeOutcome(target=target, success=True, duration=duration, stats=stats)

    async def _wait(
        self,
        run: asyncio.Task,
        stop: asyncio.Event,
        target: str,
        expires: float,
    ) -> list[ExchangeResult]:
        """Wait for *run*, stopping it so that it has ended by *expires*.

        The stop event is set ``unwind_grace`` before the deadline.  A run
        still going halfway through the grace is cancelled, and the rest
        of the grace is spent waiting for the cancellation to land.
        """
        loop = asyncio.get_running_loop()
        try:
            budget = expires - self.unwind_grace - loop.time()
            done, _ = await asyncio.wait({run}, timeout=max(budget, 0.0))

            # The completion check comes first, so a finished run is never signalled.
            if run not in done:
                stop.set()
                cancel_at = expires - self.unwind_grace / 2
                await asyncio.wait({run}, timeout=max(cancel_at - loop.time(), 0.0))
                if not run.done():
                    logger.debug("Run on %s ignored its stop signal, cancelling", target)
                    run.cancel()
                    await asyncio.wait({run}, timeout=max(expires - loop.time(), 0.0))
        except asyncio.CancelledError:
            stop.set()
            run.cancel()
            raise

        if not run.done() or run.cancelled():
            raise RunTimeoutError(f"measurement of {target} did not finish before the deadline")
        exc = run.exception()
        if exc is not None and not isinstance(exc, SessionBrokenError) and stop.is_set():
            raise RunTimeoutError(
                f"measurement of {target} did not finish before the deadline"
            ) from exc
        return run.result()


def _release(session: Session, run: asyncio.Task) -> None:
    """Release the session lock once *run* has ended.

    A run still unwinding from its cancellation keeps the session locked
    until it finishes, so the next run never overlaps it.
    """
    if run.done():
        _consume(run)
        session.lock.release()
        return

    logger.warning("Run on %s is still unwinding, session stays locked until it ends", session.target)

    def unlock(task: asyncio.Task) -> None:
        _consume(task)
        session.lock.release()

    run.add_done_callback(unlock)


def _consume(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()
