"""
Observability package: metrics aggregation, export, log shipping and
HTTP instrumentation.

Provides:
- ``MetricsAggregator``: process-wide counters, endpoint latencies and host gauges
- ``OtlpJsonEncoder`` / ``LineProtocolEncoder``: snapshot wire formats
- ``PeriodicExporter``: background POST of encoded snapshots
- ``LogShipper``: sanitized structured events to a Loki-style endpoint
- ``MetricsInterceptor`` / ``LoggingInterceptor`` / ``FlaskInstrumentation``:
  request instrumentation
- ``ErrorReporter``: unhandled-exception capture
- ``sanitize`` / ``PiiScrubber``: redaction of sensitive fields
"""

from .encoders import LineProtocolEncoder, MetricEncoder, OtlpJsonEncoder, get_encoder
from .errors import ErrorReporter
from .exporter import PeriodicExporter
from .logging import setup_structured_logger
from .metrics import EndpointKey, MetricsAggregator, RequestTimer, Snapshot
from .middleware import (
    FlaskInstrumentation,
    LoggingInterceptor,
    MetricsInterceptor,
    RequestContext,
    run_interceptors,
)
from .pii import PiiScrubber, SanitizeCycleError, sanitize
from .shipper import LogShipper

__all__ = [
    "MetricsAggregator",
    "EndpointKey",
    "RequestTimer",
    "Snapshot",
    "MetricEncoder",
    "OtlpJsonEncoder",
    "LineProtocolEncoder",
    "get_encoder",
    "PeriodicExporter",
    "LogShipper",
    "RequestContext",
    "MetricsInterceptor",
    "LoggingInterceptor",
    "FlaskInstrumentation",
    "run_interceptors",
    "ErrorReporter",
    "sanitize",
    "SanitizeCycleError",
    "PiiScrubber",
    "setup_structured_logger",
]
