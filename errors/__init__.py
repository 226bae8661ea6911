"""
Error handling module for the tracking engine.

This module provides:
- ErrorCode enum for absorbed runtime faults and API errors
- AppException and InvalidConfigurationError
- Exception handlers for the FastAPI host
"""

from errors.codes import ErrorCode
from errors.exceptions import AppException, InvalidConfigurationError
from errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    handle_validation_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "InvalidConfigurationError",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "handle_validation_exception",
    "register_exception_handlers",
]
