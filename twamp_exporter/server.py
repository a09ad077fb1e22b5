"""HTTP server for twamp-exporter.

Routes:
    GET /         -- landing page with a probe form
    GET /probe    -- probe ?target= and return its metrics
    GET /metrics  -- the exporter's own metrics

On SIGINT/SIGTERM aiohttp stops accepting connections, gives in-flight
scrapes ``shutdown_grace`` seconds, then runs the cleanup hook that
drains the session cache.
"""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from twamp_exporter.cache import SessionCache
from twamp_exporter.config import SCRAPE_TIMEOUT_HEADER, SCRAPE_TIMEOUT_OFFSET
from twamp_exporter.metrics import build_probe_registry, record_probe, render, track_sessions
from twamp_exporter.models import ExporterConfig
from twamp_exporter.prober import Prober
from twamp_exporter.twamp import MeasurementClient, TwampClient

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", ExporterConfig)
CACHE_KEY = web.AppKey("cache", SessionCache)
PROBER_KEY = web.AppKey("prober", Prober)

INDEX_PAGE = """<html>
<head><title>TWAMP Exporter</title></head>
<body>
<h1>TWAMP Exporter</h1>
<form action="/probe">
<label>Target:</label> <input type="text" name="target" placeholder="X.X.X.X" value="192.168.100.1">
<input type="submit" value="Probe">
</form>
<p><a href="/metrics">Metrics</a></p>
</body>
</html>
"""


def scrape_deadline(request: web.Request, timeout: float) -> float:
    """Return the probe deadline in seconds for *request*.

    Prometheus announces its scrape timeout in a header; when that is
    shorter than the configured timeout, leave a small offset so the
    response still makes it back in time.
    """
    header = request.headers.get(SCRAPE_TIMEOUT_HEADER)
    if not header:
        return timeout
    try:
        scrape_timeout = float(header)
    except ValueError:
        logger.debug("Ignoring invalid %s header: %r", SCRAPE_TIMEOUT_HEADER, header)
        return timeout
    if scrape_timeout <= 0:
        return timeout
    return min(timeout, max(scrape_timeout - SCRAPE_TIMEOUT_OFFSET, 0.0))


async def handle_index(request: web.Request) -> web.Response:
    return web.Response(text=INDEX_PAGE, content_type="text/html")


async def handle_probe(request: web.Request) -> web.Response:
    target = request.query.get("target", "").strip()
    if not target:
        return web.Response(status=400, text="target parameter is required")

    config = request.app[CONFIG_KEY]
    outcome = await request.app[PROBER_KEY].probe(target, scrape_deadline(request, config.timeout))
    record_probe(outcome)

    body, content_type = render(build_probe_registry(outcome))
    return web.Response(body=body, headers={"Content-Type": content_type})


async def handle_metrics(request: web.Request) -> web.Response:
    body, content_type = render()
    return web.Response(body=body, headers={"Content-Type": content_type})


async def _on_startup(app: web.Application) -> None:
    logger.info("Listening on %s", app[CONFIG_KEY].listen_address)


async def _on_shutdown(app: web.Application) -> None:
    logger.info("Shutdown signal received, waiting for in-flight scrapes")


async def _drain_sessions(app: web.Application) -> None:
    closed = await app[CACHE_KEY].drain_all()
    logger.info("Exporter shut down cleanly (%d session(s) closed)", closed)


def create_app(
    config: ExporterConfig,
    client: Optional[MeasurementClient] = None,
) -> web.Application:
    """Build the aiohttp application.

    The session cache and prober are created here and stored on the app,
    so tests can pass a fake *client* and inspect ``app[CACHE_KEY]``.
    """
    cache = SessionCache(client or TwampClient(), config.session)
    prober = Prober(cache, count=config.count, interval=config.interval)
    track_sessions(cache.__len__)

    app = web.Application()
    app[CONFIG_KEY] = config
    app[CACHE_KEY] = cache
    app[PROBER_KEY] = prober

    app.router.add_get("/", handle_index)
    app.router.add_get("/probe", handle_probe)
    app.router.add_get("/metrics", handle_metrics)

    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.on_cleanup.append(_drain_sessions)
    return app


def run_server(config: ExporterConfig, client: Optional[MeasurementClient] = None) -> None:
    """Serve until SIGINT/SIGTERM.

    Raises OSError if the listen address cannot be bound.
    """
    app = create_app(config, client)
    web.run_app(
        app,
        host=config.listen_host,
        port=config.listen_port,
        shutdown_timeout=config.shutdown_grace,
        print=None,
        access_log=None,
    )
