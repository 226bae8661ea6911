"""
Telemetry service for structured logging and observability.

This module provides structured JSON logging with request correlation,
optional OpenTelemetry spans around sink calls, and metric recording for
the tracking engine components.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from middleware.request_id import request_id_var


class JSONFormatter(logging.Formatter):
    """
    Log formatter that outputs one JSON object per record.

    Each log entry contains:
    - timestamp: ISO 8601 formatted UTC timestamp
    - level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - message: The log message
    - logger: Name of the logger that produced the entry
    - request_id: Correlation ID for request tracing

    Additional fields can be included via the 'extra_data' attribute
    on the log record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as a JSON string.

        Args:
            record: The log record to format

        Returns:
            JSON-formatted string containing the log entry
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": request_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        if hasattr(record, "extra_data") and record.extra_data:
            log_data.update(record.extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class TelemetryService:
    """
    Centralized telemetry for the tracking engine.

    This service provides:
    - Structured JSON logging on stdout
    - OpenTelemetry spans when an OTLP endpoint is configured
    - Metric recording as structured debug records
    - State-transition and absorbed-fault records with error codes
    """

    def __init__(self, settings: Optional[Any] = None, configure_logging: bool = True):
        """
        Initialize the telemetry service.

        Args:
            settings: Application settings containing log_level, otel_endpoint
                and otel_service_name
            configure_logging: Install the JSON handler on the root logger
        """
        self.settings = settings
        self.tracer = None
        self._logger = logging.getLogger("telemetry")
        if configure_logging:
            self._setup_logging()
        self._setup_tracing()

    def _setup_logging(self) -> None:
        """Install the JSON formatter on the root logger at the configured level."""
        log_level_str = "INFO"
        if self.settings and hasattr(self.settings, "log_level"):
            log_level_str = self.settings.log_level

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)

        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        stdout_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(stdout_handler)

        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str}
        })

    def _setup_tracing(self) -> None:
        """Configure an OTLP tracer provider if an endpoint is set."""
        if not self.settings:
            return

        otel_endpoint = getattr(self.settings, "otel_endpoint", None)
        if not otel_endpoint:
            self._logger.debug("OpenTelemetry endpoint not configured, tracing disabled")
            return

        try:
            from opentelemetry import trace
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.resources import SERVICE_NAME, Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor

            service_name = getattr(self.settings, "otel_service_name", "tracking-engine")
            provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint)))
            trace.set_tracer_provider(provider)
            self.tracer = trace.get_tracer(service_name)

            self._logger.info("OpenTelemetry tracing configured", extra={
                "extra_data": {
                    "otel_endpoint": otel_endpoint,
                    "service_name": service_name,
                }
            })
        except ImportError as e:
            self._logger.warning(
                "OpenTelemetry packages not installed, tracing disabled",
                extra={"extra_data": {"error": str(e)}}
            )

    def log_state_transition(
        self,
        component: str,
        previous: str,
        current: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a confirmed state change of an engine component.

        Args:
            component: Component name (e.g. "motion", "policy", "driving")
            previous: State before the transition
            current: State after the transition
            details: Extra context for the record
        """
        log_data = {
            "component": component,
            "previous_state": previous,
            "current_state": current,
        }
        if details:
            log_data["details"] = details

        self._logger.info(
            f"State transition: {component} {previous} -> {current}",
            extra={"extra_data": log_data}
        )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Record a custom metric.

        Args:
            name: Name of the metric
            value: Metric value
            tags: Optional tags for metric dimensions
        """
        metric_data = {
            "metric_name": name,
            "metric_value": value,
        }

        if tags:
            metric_data["tags"] = tags

        self._logger.debug(
            f"Metric: {name}={value}",
            extra={"extra_data": metric_data}
        )

    def create_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Create an OpenTelemetry span, or a no-op context manager when
        tracing is not configured.
        """
        if self.tracer:
            span = self.tracer.start_as_current_span(name)
            if attributes:
                return _SpanContextManager(span, attributes)
            return span
        return _NoOpSpanContextManager()

    def create_external_service_span(
        self,
        service_name: str,
        operation: str,
        attributes: Optional[Dict[str, Any]] = None
    ):
        """
        Create a span for a call to an external sink.

        Args:
            service_name: Name of the external service (e.g., "elasticsearch", "redis")
            operation: The operation being performed (e.g., "bulk", "save")
            attributes: Optional additional attributes for the span

        Returns:
            Span context manager
        """
        span_attributes = {
            "service.name": service_name,
            "operation.name": operation,
            "span.kind": "client",
        }
        if attributes:
            span_attributes.update(attributes)

        return self.create_span(f"{service_name}.{operation}", span_attributes)


class _SpanContextManager:
    """Adds attributes to a span after entering it."""

    def __init__(self, span_context, attributes: Dict[str, Any]):
        self._span_context = span_context
        self._attributes = attributes
        self._span = None

    def __enter__(self):
        self._span = self._span_context.__enter__()
        if self._span and hasattr(self._span, "set_attribute"):
            for key, value in self._attributes.items():
                self._span.set_attribute(key, value)
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb):
        return self._span_context.__exit__(exc_type, exc_val, exc_tb)


class _NoOpSpanContextManager:
    """Span stand-in used when tracing is not configured."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def add_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        pass

    def record_exception(self, exception: Exception) -> None:
        pass


def get_request_id() -> str:
    """Return the current request ID, or an empty string if not set."""
    return request_id_var.get("")
