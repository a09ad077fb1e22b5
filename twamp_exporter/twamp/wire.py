"""TWAMP message encoding and decoding (RFC 4656 / RFC 5357).

Only unauthenticated mode is supported, so every HMAC, key and IV
field is sent as zeros and ignored on receipt.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass

from twamp_exporter.errors import ProtocolError

# Seconds between the NTP epoch (1900) and the Unix epoch (1970)
NTP_EPOCH_OFFSET = 2208988800

MODE_UNAUTHENTICATED = 1

CMD_START_SESSIONS = 2
CMD_STOP_SESSIONS = 3
CMD_REQUEST_TW_SESSION = 5

ACCEPT_OK = 0
ACCEPT_REASONS = {
    1: "failure, reason unspecified",
    2: "internal error",
    3: "some aspect of request is not supported",
    4: "cannot perform request due to permanent resource limitations",
    5: "cannot perform request due to temporary resource limitations",
}

_GREETING = struct.Struct("!12sI16s16sI12s")
_SETUP_RESPONSE = struct.Struct("!I80s64s16s")
_SERVER_START = struct.Struct("!15sB16sQ8s")
_REQUEST_SESSION = struct.Struct("!BBBBIIHH16s16s16sIQQI8s16s")
_ACCEPT_SESSION = struct.Struct("!BBH16s12s16s")
_START_SESSIONS = struct.Struct("!B15s16s")
_START_ACK = struct.Struct("!B15s16s")
_STOP_SESSIONS = struct.Struct("!BBHI8s16s")
_TEST_REQUEST = struct.Struct("!IQH")
_TEST_REPLY = struct.Struct("!IQHHQIQHHB")

GREETING_SIZE = _GREETING.size  # 64
SERVER_START_SIZE = _SERVER_START.size  # 48
ACCEPT_SESSION_SIZE = _ACCEPT_SESSION.size  # 48
START_ACK_SIZE = _START_ACK.size  # 32
TEST_REPLY_SIZE = _TEST_REPLY.size  # 41

# Error estimate: S=0 (unsynchronized), scale 0, multiplier 1
ERROR_ESTIMATE = 0x0001


def to_ntp(timestamp: float) -> int:
    """Convert a Unix timestamp to a 64-bit NTP timestamp."""
    seconds = int(timestamp)
    fraction = int((timestamp - seconds) * (1 << 32)) & 0xFFFFFFFF
    return ((seconds + NTP_EPOCH_OFFSET) << 32) | fraction


def from_ntp(value: int) -> float:
    """Convert a 64-bit NTP timestamp to a Unix timestamp."""
    seconds = (value >> 32) - NTP_EPOCH_OFFSET
    return seconds + (value & 0xFFFFFFFF) / (1 << 32)


def _reason(code: int) -> str:
    return ACCEPT_REASONS.get(code, f"unknown accept code {code}")


@dataclass
class ServerGreeting:
    modes: int
    challenge: bytes
    salt: bytes
    count: int


@dataclass
class AcceptSession:
    port: int
    sid: bytes


@dataclass
class TestReply:
    seq: int
    timestamp: int
    receive_timestamp: int
    sender_seq: int
    sender_timestamp: int
    sender_ttl: int

    @property
    def turnaround(self) -> float:
        """Seconds the reflector held the packet."""
        return from_ntp(self.timestamp) - from_ntp(self.receive_timestamp)


def decode_greeting(data: bytes) -> ServerGreeting:
    _, modes, challenge, salt, count, _ = _GREETING.unpack(data)
    return ServerGreeting(modes=modes, challenge=challenge, salt=salt, count=count)


def encode_setup_response(mode: int = MODE_UNAUTHENTICATED) -> bytes:
    return _SETUP_RESPONSE.pack(mode, b"", b"", b"")


def check_server_start(data: bytes) -> None:
    """Raise ProtocolError unless Server-Start accepts the connection."""
    _, accept, _, _, _ = _SERVER_START.unpack(data)
    if accept != ACCEPT_OK:
        raise ProtocolError(f"server refused control connection: {_reason(accept)}")


def _address_bytes(address: str) -> tuple[int, bytes]:
    ip = ipaddress.ip_address(address)
    return ip.version, ip.packed.ljust(16, b"\x00")


def encode_request_session(
    sender_address: str,
    sender_port: int,
    receiver_address: str,
    receiver_port: int,
    padding: int,
    timeout: int,
    tos: int,
    start_time: float,
) -> bytes:
    ipvn, sender = _address_bytes(sender_address)
    _, receiver = _address_bytes(receiver_address)
    return _REQUEST_SESSION.pack(
        CMD_REQUEST_TW_SESSION,
        ipvn & 0x0F,
        0,  # Conf-Sender
        0,  # Conf-Receiver
        0,  # Number of Schedule Slots
        0,  # Number of Packets
        sender_port,
        receiver_port,
        sender,
        receiver,
        b"",  # SID, assigned by the server
        padding,
        to_ntp(start_time),
        timeout << 32,
        (tos >> 2) & 0x3F,  # Type-P descriptor carries the DSCP
        b"",
        b"",
    )


def decode_accept_session(data: bytes) -> AcceptSession:
    accept, _, port, sid, _, _ = _ACCEPT_SESSION.unpack(data)
    if accept != ACCEPT_OK:
        raise ProtocolError(f"server refused test session: {_reason(accept)}")
    return AcceptSession(port=port, sid=sid)


def encode_start_sessions() -> bytes:
    return _START_SESSIONS.pack(CMD_START_SESSIONS, b"", b"")


def check_start_ack(data: bytes) -> None:
    accept, _, _ = _START_ACK.unpack(data)
    if accept != ACCEPT_OK:
        raise ProtocolError(f"server refused to start sessions: {_reason(accept)}")


def encode_stop_sessions(sessions: int = 1) -> bytes:
    return _STOP_SESSIONS.pack(CMD_STOP_SESSIONS, ACCEPT_OK, 0, sessions, b"", b"")


def encode_test_request(seq: int, timestamp: float, padding: int) -> bytes:
    header = _TEST_REQUEST.pack(seq & 0xFFFFFFFF, to_ntp(timestamp), ERROR_ESTIMATE)
    return header + b"\x00" * padding


def decode_test_reply(data: bytes) -> TestReply:
    if len(data) < TEST_REPLY_SIZE:
        raise ProtocolError(f"test reply too short: {len(data)} bytes")
    seq, ts, _, _, recv_ts, sender_seq, sender_ts, _, _, ttl = _TEST_REPLY.unpack_from(data)
    return TestReply(
        seq=seq,
        timestamp=ts,
        receive_timestamp=recv_ts,
        sender_seq=sender_seq,
        sender_timestamp=sender_ts,
        sender_ttl=ttl,
    )
