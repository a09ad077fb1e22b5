"""Asyncio TWAMP client (RFC 5357, unauthenticated mode).

Control messages travel over a TCP connection to the reflector's
control port (862).  Test packets are UDP datagrams sent from an
ephemeral (or configured) local port to the port the reflector accepted
in Accept-Session.

Public API:
    TwampClient  -- MeasurementClient that opens TwampConnection objects
    resolve_target -- resolve a host name with dnspython
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.rdatatype

from twamp_exporter.config import CONNECT_TIMEOUT, TWAMP_CONTROL_PORT
from twamp_exporter.errors import (
    ConnectError,
    ProbeError,
    ProtocolError,
    RunTimeoutError,
    SessionBrokenError,
)
from twamp_exporter.models import ExchangeResult, SessionConfig
from twamp_exporter.twamp import wire
from twamp_exporter.twamp.base import (
    ControlConnection,
    MeasurementClient,
    MeasurementSession,
    MeasurementTest,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------

async def resolve_target(hostname: str, timeout: float) -> str:
    """Return an IP address for *hostname*.

    IP literals are returned unchanged.  Host names are resolved via
    dnspython, preferring A and falling back to AAAA.

    Raises
    ------
    ConnectError
        If no address could be resolved.
    """
    try:
        return str(ipaddress.ip_address(hostname))
    except ValueError:
        pass

    resolver = dns.asyncresolver.Resolver()
    resolver.lifetime = timeout

    last_error: Exception | None = None
    for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        try:
            answer = await resolver.resolve(hostname, rdtype)
            return str(answer[0])
        except dns.exception.DNSException as exc:
            last_error = exc
            continue

    raise ConnectError(f"cannot resolve {hostname}: {last_error}")


def _set_tos(transport: asyncio.DatagramTransport, tos: int) -> None:
    """Mark outgoing test packets with *tos*, best effort."""
    if not tos:
        return
    sock = transport.get_extra_info("socket")
    if sock is None:
        return
    try:
        if sock.family == socket.AF_INET6 and hasattr(socket, "IPV6_TCLASS"):
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_TCLASS, tos)
        else:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, tos)
    except OSError as exc:
        logger.warning("Could not set TOS %#04x on test socket: %s", tos, exc)


# ---------------------------------------------------------------------------
# Test socket
# ---------------------------------------------------------------------------

class _ReflectorProtocol(asyncio.DatagramProtocol):
    """Receives reflected test packets and hands them to waiting exchanges."""

    def __init__(self) -> None:
        self.error: Optional[BaseException] = None
        self._waiters: dict[int, asyncio.Future] = {}

    def datagram_received(self, data: bytes, addr) -> None:
        received = time.perf_counter()
        try:
            reply = wire.decode_test_reply(data)
        except ProtocolError as exc:
            logger.debug("Dropping test reply from %s: %s", addr, exc)
            return

        waiter = self._waiters.pop(reply.sender_seq, None)
        if waiter is None or waiter.done():
            # Late reply for an exchange that already gave up.
            logger.debug("Dropping stale test reply seq=%d from %s", reply.sender_seq, addr)
            return
        waiter.set_result((reply, received))

    def error_received(self, exc: Exception) -> None:
        self.error = exc
        self._fail_waiters(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self.error is None:
            self.error = exc or ConnectionAbortedError("test socket closed")
        self._fail_waiters(self.error)

    def _fail_waiters(self, exc: BaseException) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.set_exception(SessionBrokenError(f"test socket error: {exc}"))
        self._waiters.clear()

    def expect(self, seq: int) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[seq] = waiter
        return waiter

    def forget(self, seq: int, waiter: asyncio.Future) -> None:
        if self._waiters.get(seq) is waiter:
            del self._waiters[seq]
        if not waiter.done():
            waiter.cancel()
        elif not waiter.cancelled():
            waiter.exception()  # Mark retrieved


# ---------------------------------------------------------------------------
# Test, session and control connection
# ---------------------------------------------------------------------------

class TwampTest(MeasurementTest):
    """Runs request/reply exchanges over a started TWAMP session."""

    def __init__(self, session: TwampSession) -> None:
        self._session = session
        self._seq = 0

    async def run(
        self,
        count: int,
        interval: float,
        stop: asyncio.Event,
    ) -> list[ExchangeResult]:
        results: list[ExchangeResult] = []
        stop_wait = asyncio.create_task(stop.wait())
        try:
            for i in range(count):
                if i > 0 and interval > 0:
                    await asyncio.wait({stop_wait}, timeout=interval)
                if stop.is_set():
                    raise RunTimeoutError(
                        f"run stopped after {len(results)} of {count} exchanges"
                    )
                self._session.check_usable()
                results.append(await self._exchange(stop_wait))
        finally:
            stop_wait.cancel()
        return results

    async def _exchange(self, stop_wait: asyncio.Task) -> ExchangeResult:
        session = self._session
        seq = self._seq
        self._seq = (self._seq + 1) & 0xFFFFFFFF

        waiter = session.protocol.expect(seq)
        try:
            sent = time.perf_counter()
            session.send(wire.encode_test_request(seq, time.time(), session.config.padding))
            done, _ = await asyncio.wait(
                {waiter, stop_wait},
                timeout=session.config.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if waiter in done:
                reply, received = waiter.result()
                rtt = received - sent
                # Exclude the time the packet spent inside the reflector.
                turnaround = reply.turnaround
                if 0 <= turnaround < rtt:
                    rtt -= turnaround
                return ExchangeResult(seq=seq, rtt=rtt)

            if stop_wait in done:
                raise RunTimeoutError(f"run stopped while waiting for seq {seq}")

            logger.debug(
                "No reply for seq %d from %s within %ss",
                seq, session.target, session.config.timeout,
            )
            return ExchangeResult(seq=seq)
        finally:
            session.protocol.forget(seq, waiter)


class TwampSession(MeasurementSession):
    """An accepted and started TWAMP test session."""

    def __init__(
        self,
        connection: TwampConnection,
        config: SessionConfig,
        transport: asyncio.DatagramTransport,
        protocol: _ReflectorProtocol,
        reflector: tuple[str, int],
        sid: bytes,
    ) -> None:
        self.connection = connection
        self.config = config
        self.transport = transport
        self.protocol = protocol
        self.reflector = reflector
        self.sid = sid
        self.stopped = False
        self._test: Optional[TwampTest] = None

    @property
    def target(self) -> str:
        return self.connection.target

    async def create_test(self) -> TwampTest:
        if self._test is None:
            self._test = TwampTest(self)
        return self._test

    def check_usable(self) -> None:
        """Raise SessionBrokenError if the session can no longer be used."""
        if self.connection.closed:
            raise SessionBrokenError(f"control connection to {self.target} is closed")
        if self.stopped:
            raise SessionBrokenError(f"session with {self.target} was stopped")
        if self.protocol.error is not None:
            raise SessionBrokenError(f"test socket error: {self.protocol.error}")

    def send(self, data: bytes) -> None:
        if self.transport.is_closing():
            raise SessionBrokenError(f"test socket for {self.target} is closed")
        try:
            self.transport.sendto(data, self.reflector)
        except OSError as exc:
            raise SessionBrokenError(f"sending test packet to {self.target} failed: {exc}") from exc

    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        try:
            await self.connection.send(wire.encode_stop_sessions())
        finally:
            self.transport.close()


class TwampConnection(ControlConnection):
    """TWAMP-Control connection to one reflector."""

    def __init__(
        self,
        target: str,
        address: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timeout: float,
    ) -> None:
        self.target = target
        self.address = address
        self.closed = False
        self._reader = reader
        self._writer = writer
        self._timeout = timeout
        self._watcher: Optional[asyncio.Task] = None

    @property
    def local_address(self) -> str:
        return self._writer.get_extra_info("sockname")[0]

    async def _read(self, size: int) -> bytes:
        try:
            return await asyncio.wait_for(self._reader.readexactly(size), timeout=self._timeout)
        except asyncio.IncompleteReadError as exc:
            self.closed = True
            raise SessionBrokenError(f"control connection to {self.target} closed") from exc
        except asyncio.TimeoutError as exc:
            raise ProtocolError(f"timed out waiting for {size}-byte control message") from exc
        except OSError as exc:
            self.closed = True
            raise SessionBrokenError(f"control connection to {self.target} failed: {exc}") from exc

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise SessionBrokenError(f"control connection to {self.target} is closed")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            self.closed = True
            raise SessionBrokenError(f"control connection to {self.target} failed: {exc}") from exc

    async def handshake(self) -> None:
        """Greeting -> Set-Up-Response -> Server-Start."""
        greeting = wire.decode_greeting(await self._read(wire.GREETING_SIZE))
        if not greeting.modes & wire.MODE_UNAUTHENTICATED:
            raise ProtocolError(
                f"reflector does not offer unauthenticated mode (modes={greeting.modes:#x})"
            )
        await self.send(wire.encode_setup_response())
        wire.check_server_start(await self._read(wire.SERVER_START_SIZE))

    async def create_session(self, config: SessionConfig) -> TwampSession:
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _ReflectorProtocol,
            local_addr=(self.local_address, config.sender_port),
        )
        try:
            _set_tos(transport, config.tos)
            sender_port = transport.get_extra_info("sockname")[1]
            await self.send(wire.encode_request_session(
                sender_address=self.local_address,
                sender_port=sender_port,
                receiver_address=self.address,
                receiver_port=config.receiver_port,
                padding=config.padding,
                timeout=config.timeout,
                tos=config.tos,
                start_time=time.time(),
            ))
            accepted = wire.decode_accept_session(await self._read(wire.ACCEPT_SESSION_SIZE))
            await self.send(wire.encode_start_sessions())
            wire.check_start_ack(await self._read(wire.START_ACK_SIZE))
        except ProbeError as exc:
            transport.close()
            raise ConnectError(f"session negotiation with {self.target} failed: {exc}") from exc
        except BaseException:
            transport.close()
            raise

        logger.debug(
            "Session with %s accepted: local port %d -> reflector port %d",
            self.target, sender_port, accepted.port,
        )
        if self._watcher is None:
            self._watcher = asyncio.create_task(self._watch())
        return TwampSession(
            connection=self,
            config=config,
            transport=transport,
            protocol=protocol,
            reflector=(self.address, accepted.port),
            sid=accepted.sid,
        )

    async def _watch(self) -> None:
        """Flag the connection closed when the reflector hangs up."""
        try:
            while True:
                data = await self._reader.read(4096)
                if not data:
                    break
                if data[0] == wire.CMD_STOP_SESSIONS:
                    logger.info("Reflector %s sent Stop-Sessions", self.target)
                    break
                logger.debug("Ignoring %d unexpected bytes from %s", len(data), self.target)
        except OSError as exc:
            logger.debug("Control connection to %s failed: %s", self.target, exc)
        if not self.closed:
            logger.info("Control connection to %s closed by reflector", self.target)
        self.closed = True

    async def close(self) -> None:
        self.closed = True
        self._writer.close()
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
            await asyncio.wait({self._watcher})
        try:
            await self._writer.wait_closed()
        except OSError as exc:
            logger.debug("Error closing control connection to %s: %s", self.target, exc)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class TwampClient(MeasurementClient):
    """Opens TWAMP-Control connections."""

    def __init__(self, port: int = TWAMP_CONTROL_PORT, timeout: float = CONNECT_TIMEOUT) -> None:
        self.port = port
        self.timeout = timeout

    async def connect(self, target: str) -> TwampConnection:
        address = await resolve_target(target.strip("[]"), self.timeout)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, self.port),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"timed out connecting to {address}:{self.port}") from exc
        except OSError as exc:
            raise ConnectError(f"cannot connect to {address}:{self.port}: {exc}") from exc

        connection = TwampConnection(target, address, reader, writer, self.timeout)
        try:
            await connection.handshake()
        except ProbeError as exc:
            await connection.close()
            raise ConnectError(f"control handshake with {target} failed: {exc}") from exc
        except BaseException:
            await connection.close()
            raise
        return connection
