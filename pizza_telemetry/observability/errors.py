"""
Capture of unhandled exceptions.

Exceptions that escape a Flask view are logged on the operator channel
and shipped as ``exception`` events, enriched with the request method and
path.  The client gets a generic JSON 500.
"""

import logging
import sys
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .logging import get_log_context, setup_structured_logger
from .shipper import LogShipper


class ErrorReporter:
    """Reports exceptions to the operator log and the log shipper.

    Usage::

        reporter = ErrorReporter(shipper)
        reporter.install_flask(app)

        # Anywhere else:
        try:
            charge_card()
        except Exception:
            reporter.capture_exception(extra={"orderId": oid})
    """

    def __init__(self, shipper: LogShipper, *, logger: Optional[logging.Logger] = None) -> None:
        self.shipper = shipper
        self.logger = logger or setup_structured_logger("error_reporter", "errors.log")

    # ── Flask integration ────────────────────────────────────────

    def install_flask(self, app: Flask) -> None:
        """Register a Flask error handler that reports all unhandled exceptions."""

        @app.errorhandler(Exception)
        def _handle_exception(exc: Exception):
            # 404s, 405s and friends are ordinary responses
            if isinstance(exc, HTTPException):
                return exc

            self.capture_exception(exc, extra={"method": request.method, "path": request.path})
            return jsonify({"error": "Internal Server Error"}), 500

    # ── Capture ──────────────────────────────────────────────────

    def capture_exception(
        self,
        exc: Optional[BaseException] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Report an exception with its context.

        Args:
            exc: The exception. If ``None``, uses ``sys.exc_info()``.
            extra: Additional context to attach.

        Returns:
            ``False`` if there was nothing to report.
        """
        if exc is None:
            exc = sys.exc_info()[1]
            if exc is None:
                return False

        context: Dict[str, Any] = get_log_context()
        if extra:
            context.update(extra)

        self.logger.error(
            "Unhandled %s: %s",
            type(exc).__name__,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={k: v for k, v in context.items() if k in ("method", "path")},
        )
        self.shipper.log_exception(exc, context)
        return True
