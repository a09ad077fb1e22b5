"""Prometheus metrics for twamp-exporter.

Probe results are written to a fresh ``CollectorRegistry`` per scrape so
one target's gauges never leak into another target's response.  The
exporter's own counters live in the default registry behind ``/metrics``.
"""

from __future__ import annotations

from typing import Callable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from twamp_exporter.config import MEASUREMENT_KINDS
from twamp_exporter.models import ProbeOutcome

PROBES_TOTAL = Counter(
    "twamp_exporter_probes_total",
    "Probes run by the exporter, by result",
    ["result"],
)

SESSIONS_CACHED = Gauge(
    "twamp_exporter_sessions",
    "TWAMP sessions currently cached",
)


def track_sessions(count: Callable[[], int]) -> None:
    """Report *count()* as the number of cached sessions at scrape time."""
    SESSIONS_CACHED.set_function(count)


def record_probe(outcome: ProbeOutcome) -> None:
    PROBES_TOTAL.labels(result="success" if outcome.success else "failure").inc()


def build_probe_registry(outcome: ProbeOutcome) -> CollectorRegistry:
    """Return a registry holding the gauges for one probe outcome.

    ``probe_success`` and ``probe_duration_seconds`` are always present.
    The TWAMP gauges are only registered when the probe succeeded, so
    their absence marks a scrape without a measurement.
    """
    registry = CollectorRegistry()

    probe_success = Gauge(
        "probe_success",
        "Displays whether or not the probe was successful",
        registry=registry,
    )
    probe_duration = Gauge(
        "probe_duration_seconds",
        "Duration of the probe",
        registry=registry,
    )
    probe_success.set(1 if outcome.success else 0)
    probe_duration.set(outcome.duration)

    if outcome.success and outcome.stats is not None:
        durations = Gauge(
            "twamp_duration_seconds",
            "min/max/avg/stddev of twamp measurement",
            ["measurement"],
            registry=registry,
        )
        lost = Gauge(
            "twamp_probes_lost",
            "Lost probes per measurement",
            registry=registry,
        )
        for kind in MEASUREMENT_KINDS:
            durations.labels(measurement=kind).set(getattr(outcome.stats, kind))
        lost.set(outcome.stats.loss)

    return registry


def render(registry: CollectorRegistry = REGISTRY) -> tuple[bytes, str]:
    """Return (body, content type) for a text exposition of *registry*."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
