"""Tests for the HTTP surface.

Tests cover:
- /probe input validation and metric families
- /metrics and the landing page
- Scrape timeout header handling
- Session draining on shutdown
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer, make_mocked_request
from prometheus_client import REGISTRY
from prometheus_client.parser import text_string_to_metric_families

from twamp_exporter.config import SCRAPE_TIMEOUT_HEADER
from twamp_exporter.models import ExporterConfig
from twamp_exporter.server import CACHE_KEY, create_app, scrape_deadline


def _samples(text: str) -> dict:
    samples = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            samples[(sample.name, tuple(sorted(sample.labels.items())))] = sample.value
    return samples


def _probe_count(result: str) -> float:
    return REGISTRY.get_sample_value("twamp_exporter_probes_total", {"result": result}) or 0.0


@pytest.fixture
def config() -> ExporterConfig:
    return ExporterConfig(listen_address="127.0.0.1:0", timeout=2.0, interval=0)


@pytest.mark.asyncio
async def test_probe_requires_target(config, fake_client):
    before = _probe_count("success") + _probe_count("failure")
    async with TestClient(TestServer(create_app(config, fake_client))) as client:
        resp = await client.get("/probe")
        assert resp.status == 400
        assert "target parameter is required" in await resp.text()

        resp = await client.get("/probe", params={"target": ""})
        assert resp.status == 400

    assert fake_client.connects == []
    assert _probe_count("success") + _probe_count("failure") == before


@pytest.mark.asyncio
async def test_probe_reports_measurements(config, fake_client):
    before = _probe_count("success")
    async with TestClient(TestServer(create_app(config, fake_client))) as client:
        resp = await client.get("/probe", params={"target": "192.168.100.1"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        text = await resp.text()

    samples = _samples(text)
    assert samples[("probe_success", ())] == 1
    assert samples[("probe_duration_seconds", ())] > 0
    assert samples[("twamp_duration_seconds", (("measurement", "min"),))] == 0.0034
    assert samples[("twamp_duration_seconds", (("measurement", "max"),))] == 0.0069
    assert samples[("twamp_duration_seconds", (("measurement", "avg"),))] == 0.0046
    assert ("twamp_duration_seconds", (("measurement", "stddev"),)) in samples
    assert samples[("twamp_probes_lost", ())] == 0
    assert 'twamp_duration_seconds{measurement="avg"} 0.0046' in text
    assert _probe_count("success") == before + 1


@pytest.mark.asyncio
async def test_failed_probe_has_no_twamp_metrics(config, refused_client):
    before = _probe_count("failure")
    async with TestClient(TestServer(create_app(config, refused_client))) as client:
        resp = await client.get("/probe", params={"target": "192.0.2.1"})
        assert resp.status == 200
        text = await resp.text()

    samples = _samples(text)
    assert samples[("probe_success", ())] == 0
    assert samples[("probe_duration_seconds", ())] > 0
    assert not any(name.startswith("twamp_") for name, _ in samples)
    assert _probe_count("failure") == before + 1


@pytest.mark.asyncio
async def test_index_page(config, fake_client):
    async with TestClient(TestServer(create_app(config, fake_client))) as client:
        resp = await client.get("/")
        assert resp.status == 200
        text = await resp.text()

    assert 'action="/probe"' in text
    assert 'name="target"' in text


@pytest.mark.asyncio
async def test_metrics_page(config, fake_client):
    async with TestClient(TestServer(create_app(config, fake_client))) as client:
        await client.get("/probe", params={"target": "192.0.2.10"})
        resp = await client.get("/metrics")
        assert resp.status == 200
        text = await resp.text()

    samples = _samples(text)
    assert samples[("twamp_exporter_sessions", ())] == 1
    assert ("twamp_exporter_probes_total", (("result", "success"),)) in samples


@pytest.mark.asyncio
async def test_shutdown_drains_sessions(config, fake_client):
    app = create_app(config, fake_client)
    targets = ["192.0.2.10", "192.0.2.11", "192.0.2.12"]
    async with TestClient(TestServer(app)) as client:
        for target in targets:
            resp = await client.get("/probe", params={"target": target})
            assert resp.status == 200
        assert len(app[CACHE_KEY]) == 3

    assert sorted(fake_client.closes) == targets
    assert len(app[CACHE_KEY]) == 0


class TestScrapeDeadline:
    def _request(self, value=None):
        headers = {SCRAPE_TIMEOUT_HEADER: value} if value is not None else {}
        return make_mocked_request("GET", "/probe?target=x", headers=headers)

    def test_no_header(self):
        assert scrape_deadline(self._request(), 5.0) == 5.0

    def test_shorter_scrape_timeout_wins(self):
        assert scrape_deadline(self._request("3"), 5.0) == pytest.approx(2.5)

    def test_longer_scrape_timeout_is_capped(self):
        assert scrape_deadline(self._request("10"), 5.0) == 5.0

    def test_invalid_header_is_ignored(self):
        assert scrape_deadline(self._request("soon"), 5.0) == 5.0
        assert scrape_deadline(self._request("-1"), 5.0) == 5.0
