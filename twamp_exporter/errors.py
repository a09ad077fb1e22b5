"""Exceptions raised while probing a TWAMP reflector.

Contains:
- ProbeError: base class, every failure below ends up as a failed probe
- ConnectError: control connection or session negotiation failed
- SessionBrokenError: an established session can no longer be used
- RunTimeoutError: a measurement run was stopped before it finished
- ResultDecodeError: a finished run produced unusable results
- ProtocolError: the reflector sent a malformed or refusing control message
"""


class ProbeError(Exception):
    """Base class for probe failures."""

    pass


class ConnectError(ProbeError):
    """Raised when connecting or negotiating a session fails."""

    pass


class SessionBrokenError(ProbeError):
    """Raised when the control connection or test socket is unusable."""

    pass


class RunTimeoutError(ProbeError):
    """Raised when a run is stopped before all exchanges completed."""

    pass


class ResultDecodeError(ProbeError):
    """Raised when run results cannot be turned into statistics."""

    pass


class ProtocolError(ProbeError):
    """Raised on a malformed or refused TWAMP control message."""

    pass
