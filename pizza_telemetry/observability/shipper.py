"""
Structured log shipping to a Loki-style push endpoint.

Every event is sanitized, wrapped as one line of a labelled stream and
POSTed on a small worker pool, so ``send`` returns immediately and never
raises.  Failures of any kind end up as a single error on the operator
log.
"""

import json
import logging
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional

import requests

from ..constants import (
    APP_USER_AGENT,
    HTTP_TIMEOUT_SECONDS,
    LOG_SHIPPER_MAX_PENDING,
    LOG_SHIPPER_WORKERS,
)
from .logging import setup_structured_logger
from .pii import sanitize


def bearer_authorization(credential: str) -> str:
    """``Bearer <user id>:<api key>``, split from *credential* on its first colon."""
    user_id, _, api_key = credential.partition(":")
    return f"Bearer {user_id}:{api_key}"


class LogShipper:
    """Fire-and-forget shipper for structured telemetry events.

    Usage::

        shipper = LogShipper("jwt-pizza-service", url, "12345:glc_abc")
        shipper.log("info", "auth", "login", {"userId": 7})
        shipper.log_db_query("SELECT * FROM user WHERE id=?", [7])
    """

    def __init__(
        self,
        source: str,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
        max_workers: int = LOG_SHIPPER_WORKERS,
        max_pending: int = LOG_SHIPPER_MAX_PENDING,
    ) -> None:
        self.source = source
        self.url = url or None
        self.api_key = api_key or None
        self.timeout = timeout
        self.logger = logger or setup_structured_logger("log_shipper", "telemetry.log")
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = threading.BoundedSemaphore(max_pending)
        self._drop_lock = threading.Lock()
        self._dropped = 0
        self._dropping = False

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @property
    def dropped(self) -> int:
        """Events discarded because the backlog was full."""
        return self._dropped

    # ── payload ──────────────────────────────────────────────────

    def build_payload(
        self,
        level: str,
        log_type: str,
        message: str,
        details: Any = None,
        *,
        timestamp_ns: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Return the push document for one event.

        Raises:
            SanitizeCycleError: If *details* references itself.
        """
        clean = sanitize(details) if details is not None else {}
        if not isinstance(clean, Mapping):
            clean = {"details": clean}
        line = json.dumps({"message": message, **clean}, default=str)
        stamp = timestamp_ns if timestamp_ns is not None else time.time_ns()
        return {
            "streams": [
                {
                    "stream": {"source": self.source, "level": level, "type": log_type},
                    "values": [[str(stamp), line]],
                }
            ]
        }

    # ── sending ──────────────────────────────────────────────────

    def send(
        self,
        level: str,
        log_type: str,
        message: str,
        details: Any = None,
    ) -> Optional["Future[bool]"]:
        """Queue one event for delivery.

        Returns:
            A future resolving to ``True`` when the backend accepted the
            event and ``False`` otherwise, or ``None`` when shipping is
            not configured, the event could not be built, or the backlog
            was full.
        """
        if not self.configured:
            self.logger.debug("Log shipping not configured: dropping %s event", log_type)
            return None

        try:
            body = json.dumps(self.build_payload(level, log_type, message, details))
        except Exception as e:
            self.logger.error(
                "Error preparing %s log event: %s", log_type, e, extra={"log_type": log_type}
            )
            return None

        if not self._reserve(log_type):
            return None
        headers = {
            "Content-Type": "application/json",
            "Authorization": bearer_authorization(self.api_key),
            "User-Agent": APP_USER_AGENT,
        }
        try:
            return self._pool().submit(self._post, body, headers, log_type)
        except Exception as e:
            self._slots.release()
            self.logger.error(
                "Error queueing %s log event: %s", log_type, e, extra={"log_type": log_type}
            )
            return None

    def _reserve(self, log_type: str) -> bool:
        """Take a backlog slot; count the drop and warn once per full spell."""
        if self._slots.acquire(blocking=False):
            with self._drop_lock:
                self._dropping = False
            return True

        with self._drop_lock:
            self._dropped += 1
            first = not self._dropping
            self._dropping = True
        if first:
            self.logger.warning(
                "Log shipping backlog full: dropping %s event (%d dropped so far)",
                log_type,
                self._dropped,
                extra={"log_type": log_type},
            )
        return False

    def _post(self, body: str, headers: Dict[str, str], log_type: str) -> bool:
        try:
            return self._deliver(body, headers, log_type)
        finally:
            self._slots.release()

    def _deliver(self, body: str, headers: Dict[str, str], log_type: str) -> bool:
        try:
            response = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except Exception as e:
            self.logger.error(
                "Error sending %s log: %s", log_type, e, extra={"log_type": log_type}
            )
            return False

        if not response.ok:
            self.logger.error(
                "Failed to send %s log: %s %s",
                log_type,
                response.status_code,
                response.reason,
                extra={"log_type": log_type, "status_code": response.status_code},
            )
            return False
        return True

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="log-shipper"
            )
        return self._executor

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool, by default waiting for queued events."""
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # ── event shapes ─────────────────────────────────────────────

    def log(
        self, level: str, log_type: str, message: str, details: Any = None
    ) -> Optional["Future[bool]"]:
        """General-purpose event."""
        return self.send(level, log_type, message, details)

    def log_db_query(self, sql: str, params: Any = None) -> Optional["Future[bool]"]:
        return self.send("info", "database", "Database Query", {"sql": sql, "params": params})

    def log_factory_request(
        self,
        request_body: Any,
        response_body: Any,
        status_code: int,
        error: Any = None,
    ) -> Optional["Future[bool]"]:
        """Call to the upstream pizza factory; logged at ``error`` when *error* is set."""
        level = "error" if error else "info"
        return self.send(
            level,
            "factory",
            "Factory Service Request",
            {
                "requestBody": request_body,
                "responseBody": response_body,
                "statusCode": status_code,
                "error": error,
            },
        )

    def log_exception(
        self, exc: BaseException, context: Optional[Mapping[str, Any]] = None
    ) -> Optional["Future[bool]"]:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return self.send(
            "error",
            "exception",
            "Unhandled Exception",
            {"errorMessage": str(exc), "errorStack": stack, **(context or {})},
        )
