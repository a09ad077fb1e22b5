"""TWAMP measurement client.

Contains:
- base: the MeasurementClient contract the session cache depends on
- wire: TWAMP-Control and TWAMP-Test message encoding
- client: asyncio implementation of the contract (TwampClient)
"""

from twamp_exporter.twamp.base import (
    ControlConnection,
    MeasurementClient,
    MeasurementSession,
    MeasurementTest,
)
from twamp_exporter.twamp.client import TwampClient, resolve_target

__all__ = [
    "ControlConnection",
    "MeasurementClient",
    "MeasurementSession",
    "MeasurementTest",
    "TwampClient",
    "resolve_target",
]
