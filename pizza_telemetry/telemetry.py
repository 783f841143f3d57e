"""
Process-level owner of the telemetry components.

One ``Telemetry`` is built at startup and handed to the routing layer.
It owns the aggregator, the exporter timer, the log shipper and the error
reporter, and releases the timer and worker pool on ``shutdown()``.
"""

from typing import Any, Dict, List

from flask import Flask

from .config import export_interval, load_config
from .constants import DEFAULT_EXPORT_INTERVAL_SECONDS, DEFAULT_SOURCE
from .observability.encoders import get_encoder
from .observability.errors import ErrorReporter
from .observability.exporter import PeriodicExporter
from .observability.logging import setup_structured_logger
from .observability.metrics import MetricsAggregator
from .observability.middleware import (
    FlaskInstrumentation,
    Interceptor,
    LoggingInterceptor,
    MetricsInterceptor,
)
from .observability.shipper import LogShipper


class Telemetry:
    """Metrics and log shipping for one process.

    Usage::

        telemetry = Telemetry(load_config())
        telemetry.instrument(app)

        # In business code:
        telemetry.metrics.record_auth(True, user.id)
        telemetry.logs.log_db_query(sql, params)

        # On shutdown:
        telemetry.shutdown()
    """

    def __init__(self, config: Dict[str, Any] = None, *, config_path: str = None):
        """Build every component from configuration.

        Args:
            config: Pre-loaded configuration dict (preferred).
            config_path: Path to the JSON config file, used when *config*
                is not given.
        """
        self.config = config if config is not None else load_config(config_path or "config.json")
        metrics_conf = self.config.get("metrics", {})
        logging_conf = self.config.get("logging", {})

        debug_mode = bool(logging_conf.get("debug", False))
        self.logger = setup_structured_logger("telemetry", "telemetry.log", debug=debug_mode)

        self.metrics = MetricsAggregator()
        self.encoder = get_encoder(
            metrics_conf.get("format") or "otlp",
            metrics_conf.get("source") or DEFAULT_SOURCE,
        )
        self.exporter = PeriodicExporter(
            self.metrics,
            self.encoder,
            url=metrics_conf.get("url"),
            api_key=metrics_conf.get("api_key"),
            interval_seconds=export_interval(metrics_conf, DEFAULT_EXPORT_INTERVAL_SECONDS),
        )
        self.logs = LogShipper(
            logging_conf.get("source") or DEFAULT_SOURCE,
            url=logging_conf.get("url"),
            api_key=logging_conf.get("api_key"),
        )
        self.errors = ErrorReporter(self.logs)

        if not self.exporter.configured:
            self.logger.info("Metrics export disabled (no url/api_key)")
        if not self.logs.configured:
            self.logger.info("Log shipping disabled (no url/api_key)")

    def instrument(
        self, app: Flask, *, metrics: bool = True, logging: bool = True
    ) -> FlaskInstrumentation:
        """Install request instrumentation and the error handler on *app*."""
        interceptors: List[Interceptor] = []
        if metrics:
            interceptors.append(MetricsInterceptor(self.metrics))
        if logging:
            interceptors.append(LoggingInterceptor(self.logs))
        instrumentation = FlaskInstrumentation(app, interceptors)
        self.errors.install_flask(app)
        app.extensions["pizza_telemetry"] = self
        return instrumentation

    def shutdown(self, wait: bool = True) -> None:
        """Stop the export timer and drain queued log events.  Idempotent."""
        self.exporter.stop()
        self.logs.shutdown(wait=wait)
