"""twamp-exporter: Prometheus exporter for TWAMP round-trip measurements."""

__version__ = "0.1.0"
