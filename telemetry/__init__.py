"""
Telemetry module for structured logging and observability.

This module provides:
- JSONFormatter for structured JSON log output
- TelemetryService for metrics, state-transition records and spans
"""

from telemetry.service import (
    JSONFormatter,
    TelemetryService,
    get_request_id,
)

__all__ = [
    "JSONFormatter",
    "TelemetryService",
    "get_request_id",
]
