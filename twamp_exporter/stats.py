"""Statistical aggregation for TWAMP measurement runs."""

from __future__ import annotations

import math
from typing import Sequence

from twamp_exporter.errors import ResultDecodeError
from twamp_exporter.models import ExchangeResult, TwampStats

# Round to whole nanoseconds so exposed values stay stable
_PRECISION = 9


def compute_stats(values: Sequence[float]) -> tuple[float, float, float, float]:
    """Return (min, max, avg, stddev) of a non-empty list of RTTs."""
    sorted_vals = sorted(values)
    n = len(sorted_vals)

    avg = sum(sorted_vals) / n
    variance = sum((v - avg) ** 2 for v in sorted_vals) / n if n > 1 else 0.0
    stddev = math.sqrt(variance)

    return (
        round(sorted_vals[0], _PRECISION),
        round(sorted_vals[-1], _PRECISION),
        round(avg, _PRECISION),
        round(stddev, _PRECISION),
    )


def summarize(results: Sequence[ExchangeResult]) -> TwampStats:
    """Aggregate the exchanges of one run into a :class:`TwampStats`.

    When every packet was lost the latency fields are NaN, so the
    exported gauges show that no sample exists instead of a fake zero.

    Raises
    ------
    ResultDecodeError
        If the run has no exchanges or an RTT is not a usable number.
    """
    if not results:
        raise ResultDecodeError("run returned no exchanges")

    rtts: list[float] = []
    for result in results:
        if result.lost:
            continue
        rtt = result.rtt
        if isinstance(rtt, bool) or not isinstance(rtt, (int, float)):
            raise ResultDecodeError(f"exchange {result.seq}: RTT {rtt!r} is not a number")
        if math.isnan(rtt) or math.isinf(rtt) or rtt < 0:
            raise ResultDecodeError(f"exchange {result.seq}: invalid RTT {rtt!r}")
        rtts.append(float(rtt))

    tx = len(results)
    rx = len(rtts)
    loss = round(100.0 * (tx - rx) / tx, 3)

    if not rtts:
        nan = float("nan")
        return TwampStats(min=nan, max=nan, avg=nan, stddev=nan, tx=tx, rx=0, loss=loss)

    lo, hi, avg, stddev = compute_stats(rtts)
    return TwampStats(min=lo, max=hi, avg=avg, stddev=stddev, tx=tx, rx=rx, loss=loss)
