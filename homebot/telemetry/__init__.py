"""Telemetry backends for homebot observability.

Provides both in-memory (for testing) and Prometheus (for production) backends.
"""

from homebot.telemetry.base import TelemetryPort
from homebot.telemetry.inmemory import InMemoryTelemetry
from homebot.telemetry.prometheus import PrometheusTelemetry

__all__ = [
    "TelemetryPort",
    "InMemoryTelemetry",
    "PrometheusTelemetry",
]
