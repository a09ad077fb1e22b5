"""pytest configuration and fixtures for twamp-exporter tests.

Provides:
- FakeClient: scriptable MeasurementClient that records every side effect
- FakeReflector: minimal TWAMP server on localhost for the real client
"""

from __future__ import annotations

import asyncio
import struct
import time
from collections import defaultdict, deque
from typing import Optional

import pytest
import pytest_asyncio

from twamp_exporter.errors import ConnectError, RunTimeoutError
from twamp_exporter.models import ExchangeResult, SessionConfig
from twamp_exporter.twamp.base import (
    ControlConnection,
    MeasurementClient,
    MeasurementSession,
    MeasurementTest,
)
from twamp_exporter.twamp.wire import to_ntp

# RTTs whose stats are min 3.4ms, max 6.9ms, avg 4.6ms
DEFAULT_RTTS = [0.0034, 0.0069, 0.0035]


# ---------------------------------------------------------------------------
# Fake measurement client
# ---------------------------------------------------------------------------

class FakeTest(MeasurementTest):
    def __init__(self, client: FakeClient, target: str) -> None:
        self._client = client
        self._target = target

    async def run(self, count, interval, stop):
        client = self._client
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            if client.run_delay:
                if client.ignore_stop:
                    await asyncio.sleep(client.run_delay)
                else:
                    try:
                        await asyncio.wait_for(stop.wait(), timeout=client.run_delay)
                    except asyncio.TimeoutError:
                        pass
                    if stop.is_set():
                        client.stopped.append(self._target)
                        raise RunTimeoutError("stopped")

            failures = client.failures[self._target]
            if failures:
                raise failures.popleft()

            if self._target in client.results:
                return list(client.results[self._target])
            rtts = client.rtts.get(self._target, DEFAULT_RTTS)
            return [ExchangeResult(seq=i, rtt=rtt) for i, rtt in enumerate(rtts[:count])]
        finally:
            if client.cleanup_delay:
                await asyncio.sleep(client.cleanup_delay)
            client.run_log.append((self._target, started, loop.time()))


class FakeSession(MeasurementSession):
    def __init__(self, client: FakeClient, target: str) -> None:
        self._client = client
        self._target = target
        self._test = FakeTest(client, target)

    async def create_test(self):
        return self._test

    async def stop(self):
        if self._client.stop_delay:
            await asyncio.sleep(self._client.stop_delay)
        self._client.stops.append(self._target)


class FakeConnection(ControlConnection):
    def __init__(self, client: FakeClient, target: str) -> None:
        self._client = client
        self._target = target

    async def create_session(self, config: SessionConfig):
        self._client.session_configs.append(config)
        if self._target in self._client.session_errors:
            raise self._client.session_errors[self._target]
        return FakeSession(self._client, self._target)

    async def close(self):
        self._client.closes.append(self._target)


class FakeClient(MeasurementClient):
    """Scriptable measurement client.

    Attributes set by tests:
        connect_delay   -- seconds each connect takes
        connect_errors  -- target -> exception raised by connect
        session_errors  -- target -> exception raised by create_session
        run_delay       -- seconds each run takes (honours the stop event)
        ignore_stop     -- make runs ignore the stop event
        cleanup_delay   -- seconds a run spends unwinding, even when cancelled
        stop_delay      -- seconds each session stop takes
        failures        -- target -> queue of exceptions for the next runs
        rtts            -- target -> RTT list returned by runs
        results         -- target -> raw ExchangeResult list returned by runs
    """

    def __init__(self) -> None:
        self.connect_delay = 0.0
        self.connect_errors: dict[str, Exception] = {}
        self.session_errors: dict[str, Exception] = {}
        self.run_delay = 0.0
        self.ignore_stop = False
        self.cleanup_delay = 0.0
        self.stop_delay = 0.0
        self.failures: dict[str, deque] = defaultdict(deque)
        self.rtts: dict[str, list[Optional[float]]] = {}
        self.results: dict[str, list[ExchangeResult]] = {}

        self.connects: list[str] = []
        self.closes: list[str] = []
        self.stops: list[str] = []
        self.stopped: list[str] = []
        self.session_configs: list[SessionConfig] = []
        self.run_log: list[tuple[str, float, float]] = []

    async def connect(self, target: str):
        self.connects.append(target)
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if target in self.connect_errors:
            raise self.connect_errors[target]
        return FakeConnection(self, target)

    def runs_for(self, target: str) -> list[tuple[float, float]]:
        return [(start, end) for t, start, end in self.run_log if t == target]


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def refused_client() -> FakeClient:
    client = FakeClient()
    client.connect_errors["192.0.2.1"] = ConnectError("connection refused")
    return client


# ---------------------------------------------------------------------------
# Fake TWAMP reflector
# ---------------------------------------------------------------------------

class _ReflectProtocol(asyncio.DatagramProtocol):
    def __init__(self, reflector: FakeReflector) -> None:
        self._reflector = reflector
        self._seq = 0

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self._reflector.test_packets += 1
        if self._reflector.drop:
            return
        seq, timestamp, error_estimate = struct.unpack_from("!IQH", data)
        now = to_ntp(time.time())
        reply = struct.pack(
            "!IQHHQIQHHB",
            self._seq, now, 1, 0, now, seq, timestamp, error_estimate, 0, 255,
        )
        self._seq += 1
        self.transport.sendto(reply, addr)


class FakeReflector:
    """TWAMP server speaking just enough of RFC 5357 for the client tests."""

    def __init__(self, modes: int = 1, session_accept: int = 0, drop: bool = False) -> None:
        self.modes = modes
        self.session_accept = session_accept
        self.drop = drop
        self.setup_modes: list[int] = []
        self.requests: list[bytes] = []
        self.stop_received = 0
        self.test_packets = 0
        self._writers: list[asyncio.StreamWriter] = []

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._udp, _ = await loop.create_datagram_endpoint(
            lambda: _ReflectProtocol(self), local_addr=("127.0.0.1", 0),
        )
        self.udp_port = self._udp.get_extra_info("sockname")[1]
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def close(self) -> None:
        self.drop_control()
        self._server.close()
        await self._server.wait_closed()
        self._udp.close()

    def drop_control(self) -> None:
        for writer in self._writers:
            writer.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        try:
            writer.write(struct.pack("!12sI16s16sI12s", b"", self.modes, b"\x01" * 16, b"\x02" * 16, 1024, b""))
            await writer.drain()
            if not self.modes:
                return

            setup = await reader.readexactly(164)
            self.setup_modes.append(struct.unpack_from("!I", setup)[0])
            writer.write(struct.pack("!15sB16sQ8s", b"", 0, b"", to_ntp(time.time()), b""))
            await writer.drain()

            self.requests.append(await reader.readexactly(112))
            writer.write(struct.pack("!BBH16s12s16s", self.session_accept, 0, self.udp_port, b"\x07" * 16, b"", b""))
            await writer.drain()
            if self.session_accept:
                return

            await reader.readexactly(32)  # Start-Sessions
            writer.write(struct.pack("!B15s16s", 0, b"", b""))
            await writer.drain()

            message = await reader.readexactly(32)
            if message[0] == 3:
                self.stop_received += 1
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def reflector():
    server = FakeReflector()
    await server.start()
    yield server
    await server.close()
