"""
Background export of aggregator snapshots to a remote metrics collector.

The exporter arms itself at construction when both a URL and an API key
are configured; otherwise it stays idle and every call is a no-op.  Each
tick snapshots the aggregator (draining purchase latencies), encodes the
snapshot and POSTs it.  Failures are reported on the operator log and the
next tick is the retry.
"""

import base64
import logging
import threading
from typing import Optional

import requests

from ..constants import (
    APP_USER_AGENT,
    DEFAULT_EXPORT_INTERVAL_SECONDS,
    EXPORT_BODY_SAMPLE_CHARS,
    HTTP_TIMEOUT_SECONDS,
)
from .encoders import MetricEncoder
from .logging import setup_structured_logger
from .metrics import MetricsAggregator


def basic_authorization(api_key: str) -> str:
    """``Basic <base64(api_key)>``: the key is sent as-is, already ``user:token``."""
    return "Basic " + base64.b64encode(api_key.encode("utf-8")).decode("ascii")


class PeriodicExporter:
    """Repeating snapshot → encode → POST loop on a daemon thread.

    Usage::

        exporter = PeriodicExporter(agg, OtlpJsonEncoder("svc"), url, key)
        ...
        exporter.stop()
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        encoder: MetricEncoder,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        interval_seconds: float = DEFAULT_EXPORT_INTERVAL_SECONDS,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
        autostart: bool = True,
    ) -> None:
        self.aggregator = aggregator
        self.encoder = encoder
        self.url = url or None
        self.api_key = api_key or None
        self.interval_seconds = interval_seconds
        self.timeout = timeout
        self.logger = logger or setup_structured_logger("metrics_exporter", "telemetry.log")

        self._state_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

        if autostart:
            self.start()

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @property
    def is_running(self) -> bool:
        return self._thread is not None

    # ── lifecycle ────────────────────────────────────────────────

    def start(self) -> bool:
        """Arm the timer.  Returns ``False`` when unconfigured or already running."""
        if not self.configured:
            return False
        with self._state_lock:
            if self._thread is not None:
                return False
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="metrics-exporter",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        self.logger.info(
            "Metrics export started (every %ss to %s)", self.interval_seconds, self.url
        )
        return True

    def stop(self) -> None:
        """Disarm the timer.  Safe to call any number of times.

        An export already in flight is left to finish on its own.
        """
        with self._state_lock:
            if self._thread is None:
                return
            self._stop_event.set()
            self._stop_event = None
            self._thread = None
        self.logger.info("Metrics export stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            try:
                self.export_once()
            except Exception:
                self.logger.exception("Unexpected error in periodic metrics export")

    # ── export ───────────────────────────────────────────────────

    def export_once(self) -> bool:
        """Snapshot, encode and POST once.  Returns ``True`` on a 2xx reply."""
        if not self.configured:
            self.logger.debug("Metrics export not configured: skipping send")
            return False

        try:
            body = self.encoder.encode(self.aggregator.snapshot())
        except Exception:
            self.logger.exception("Error encoding metrics snapshot")
            return False

        headers = {
            "Content-Type": self.encoder.content_type,
            "Authorization": basic_authorization(self.api_key),
            "User-Agent": APP_USER_AGENT,
        }

        try:
            response = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            self.logger.error(
                "Error sending metrics to %s: %s", self.url, e, extra={"export_url": self.url}
            )
            return False

        if not response.ok:
            self.logger.error(
                "Failed to send metrics: %s %s %s (body sample: %s)",
                response.status_code,
                response.reason,
                response.text,
                body[:EXPORT_BODY_SAMPLE_CHARS],
                extra={"export_url": self.url, "status_code": response.status_code},
            )
            return False

        self.logger.debug("Metrics sent (%d bytes)", len(body))
        return True
