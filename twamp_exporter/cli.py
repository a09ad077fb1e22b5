"""CLI entry point for twamp-exporter."""

from __future__ import annotations

import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler

from twamp_exporter import __version__
from twamp_exporter.config import (
    CONNECT_TIMEOUT,
    DEFAULT_LISTEN_ADDRESS,
    DEFAULT_PADDING,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECEIVER_PORT,
    DEFAULT_REFLECTOR_TIMEOUT,
    DEFAULT_RUN_COUNT,
    DEFAULT_RUN_INTERVAL,
    DEFAULT_SENDER_PORT,
    DEFAULT_SHUTDOWN_GRACE,
    DEFAULT_TOS,
    LOG_LEVELS,
    TOS_VALUES,
    TWAMP_CONTROL_PORT,
)
from twamp_exporter.models import ExporterConfig, SessionConfig

logger = logging.getLogger("twamp_exporter")


def setup_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
    )


def _validate_listen_address(ctx, param, value: str) -> str:
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit() or not 0 < int(port) < 65536:
        raise click.BadParameter(f"expected [host]:port, got {value!r}")
    return value


@click.command(context_settings={"auto_envvar_prefix": "TWAMP_EXPORTER"})
@click.option("-l", "--listen-address", default=DEFAULT_LISTEN_ADDRESS, callback=_validate_listen_address,
              help="Address to serve HTTP on", show_default=True)
@click.option("-t", "--timeout", default=DEFAULT_PROBE_TIMEOUT, type=click.FloatRange(min=0, min_open=True),
              help="Probe deadline in seconds", show_default=True)
@click.option("-n", "--count", default=DEFAULT_RUN_COUNT, type=click.IntRange(min=1),
              help="Test packets per probe", show_default=True)
@click.option("-i", "--interval", default=DEFAULT_RUN_INTERVAL, type=click.FloatRange(min=0),
              help="Seconds between test packets", show_default=True)
@click.option("--shutdown-grace", default=DEFAULT_SHUTDOWN_GRACE, type=click.FloatRange(min=0),
              help="Seconds in-flight scrapes get on shutdown", show_default=True)
@click.option("--control-port", default=TWAMP_CONTROL_PORT, type=click.IntRange(1, 65535),
              help="TWAMP-Control port on the reflector", show_default=True)
@click.option("--connect-timeout", default=CONNECT_TIMEOUT, type=click.FloatRange(min=0, min_open=True),
              help="Seconds allowed for each control message", show_default=True)
@click.option("--sender-port", default=DEFAULT_SENDER_PORT, type=click.IntRange(0, 65535),
              help="Local UDP port for test packets (0 = ephemeral)", show_default=True)
@click.option("--receiver-port", default=DEFAULT_RECEIVER_PORT, type=click.IntRange(0, 65535),
              help="Reflector UDP port to request", show_default=True)
@click.option("--reflector-timeout", default=DEFAULT_REFLECTOR_TIMEOUT, type=click.IntRange(min=1),
              help="Seconds to wait for each reflected packet", show_default=True)
@click.option("--padding", default=DEFAULT_PADDING, type=click.IntRange(min=0),
              help="Padding bytes per test packet", show_default=True)
@click.option("--tos", default=DEFAULT_TOS, type=click.Choice(sorted(TOS_VALUES), case_sensitive=False),
              help="DSCP class for test packets", show_default=True)
@click.option("--log-level", default="info", type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help="Log verbosity", show_default=True)
@click.version_option(version=__version__)
def main(
    listen_address: str,
    timeout: float,
    count: int,
    interval: float,
    shutdown_grace: float,
    control_port: int,
    connect_timeout: float,
    sender_port: int,
    receiver_port: int,
    reflector_timeout: int,
    padding: int,
    tos: str,
    log_level: str,
) -> None:
    """twamp-exporter — Prometheus exporter for TWAMP reflectors.

    Serves GET /probe?target=HOST: each scrape runs a short TWAMP
    measurement against HOST over a cached session and reports
    min/max/avg/stddev round-trip time and packet loss.

    Every option can also be set through a TWAMP_EXPORTER_<OPTION>
    environment variable, e.g. TWAMP_EXPORTER_LISTEN_ADDRESS.
    """
    setup_logging(log_level)

    config = ExporterConfig(
        listen_address=listen_address,
        timeout=timeout,
        count=count,
        interval=interval,
        shutdown_grace=shutdown_grace,
        session=SessionConfig(
            sender_port=sender_port,
            receiver_port=receiver_port,
            timeout=reflector_timeout,
            padding=padding,
            tos=TOS_VALUES[tos.upper()],
        ),
    )

    from twamp_exporter.server import run_server
    from twamp_exporter.twamp import TwampClient

    try:
        run_server(config, TwampClient(port=control_port, timeout=connect_timeout))
    except OSError as exc:
        logger.error("HTTP server error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
