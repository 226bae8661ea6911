"""
Error code catalog for the tracking engine.

This module defines every error code used by the engine components and
by the HTTP host: absorbed runtime faults (sensor/signal outages, delivery
failures, persistence failures), construction-time configuration errors,
and request-level errors surfaced through the API.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.

    Runtime fault codes are attached to log records and statistics; they
    are never raised out of the engine components. Request codes map to
    HTTP status codes for the API surface.
    """

    # Request errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Request payload validation failed (HTTP 400)"""

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    """Requested resource does not exist (HTTP 404)"""

    # Configuration errors
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    """A threshold or window is out of range; raised at construction (HTTP 500)"""

    # Absorbed runtime faults
    SENSOR_UNAVAILABLE = "SENSOR_UNAVAILABLE"
    """Motion sensor read failed; classifier falls back to speed-only"""

    SIGNAL_UNAVAILABLE = "SIGNAL_UNAVAILABLE"
    """A policy input is missing; its lowest-information default is used"""

    TRANSIENT_DELIVERY_FAILURE = "TRANSIENT_DELIVERY_FAILURE"
    """Transmit failed in a retryable way; items are re-queued"""

    PERMANENT_DELIVERY_FAILURE = "PERMANENT_DELIVERY_FAILURE"
    """Sink rejected the batch; items are dropped and counted"""

    RETRY_BUDGET_EXHAUSTED = "RETRY_BUDGET_EXHAUSTED"
    """An item exceeded its retry budget and was dropped"""

    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    """Finalized driving session could not be persisted"""

    # Service errors (5xx)
    ENGINE_NOT_RUNNING = "ENGINE_NOT_RUNNING"
    """Tracking engine has not been started (HTTP 503)"""

    SESSION_STORE_UNAVAILABLE = "SESSION_STORE_UNAVAILABLE"
    """Redis session store unavailable (HTTP 503)"""

    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""

    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    """Circuit breaker is open (HTTP 503)"""


# Mapping of error codes to their default HTTP status codes
ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.INVALID_CONFIGURATION: 500,
    ErrorCode.SENSOR_UNAVAILABLE: 503,
    ErrorCode.SIGNAL_UNAVAILABLE: 503,
    ErrorCode.TRANSIENT_DELIVERY_FAILURE: 503,
    ErrorCode.PERMANENT_DELIVERY_FAILURE: 502,
    ErrorCode.RETRY_BUDGET_EXHAUSTED: 503,
    ErrorCode.PERSISTENCE_FAILURE: 503,
    ErrorCode.ENGINE_NOT_RUNNING: 503,
    ErrorCode.SESSION_STORE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.CIRCUIT_OPEN: 503,
}


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
