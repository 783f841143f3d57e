"""
HTTP instrumentation: request interceptors and the Flask adapter.

Interceptors never touch the framework's response object.  Each one is
handed an explicit ``RequestContext``, registers whatever it needs to do
on completion with ``ctx.on_complete`` and then calls the continuation
straight away::

    def interceptor(ctx, call_next):
        ctx.on_complete(lambda done: ...)
        return call_next()

``FlaskInstrumentation`` creates the context in ``before_request`` and
completes it from ``after_request`` (or ``teardown_request`` when the
view blew up before a response existed).
"""

import logging
import time
from typing import Any, Callable, List, Mapping, Optional, Sequence

from flask import Flask, Response, g, request

from .logging import clear_log_context, set_log_context, setup_structured_logger
from .metrics import MetricsAggregator
from .shipper import LogShipper

CompletionCallback = Callable[["RequestContext"], None]
Interceptor = Callable[["RequestContext", Callable[[], Any]], Any]

_logger = setup_structured_logger("instrumentation", "telemetry.log")


# ── Request context ──────────────────────────────────────────────


class RequestContext:
    """Per-request state shared by the interceptors."""

    def __init__(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.method = method
        self.path = path
        self.headers = dict(headers or {})
        self.body = body
        self.started_at = clock()
        self.status_code: Optional[int] = None
        self.response_body: Any = None
        self._clock = clock
        self._callbacks: List[CompletionCallback] = []
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def elapsed_ms(self) -> int:
        return max(0, round((self._clock() - self.started_at) * 1000))

    def on_complete(self, callback: CompletionCallback) -> None:
        """Register *callback* to run once the response is done."""
        self._callbacks.append(callback)

    def complete(self, status_code: int, response_body: Any = None) -> bool:
        """Record the outcome and fire callbacks in registration order.

        Only the first call has any effect; it returns ``True``.
        """
        if self._completed:
            return False
        self._completed = True
        self.status_code = status_code
        self.response_body = response_body
        for callback in self._callbacks:
            try:
                callback(self)
            except Exception:
                _logger.exception(
                    "Completion callback failed for %s %s",
                    self.method,
                    self.path,
                    extra={"method": self.method, "path": self.path},
                )
        return True


def run_interceptors(
    ctx: RequestContext,
    interceptors: Sequence[Interceptor],
    handler: Callable[[], Any] = lambda: None,
) -> Any:
    """Invoke *interceptors* in order around *handler* and return its result."""

    def call(index: int) -> Any:
        if index == len(interceptors):
            return handler()
        return interceptors[index](ctx, lambda: call(index + 1))

    return call(0)


# ── Interceptors ─────────────────────────────────────────────────


class MetricsInterceptor:
    """Counts the request and its latency in the aggregator."""

    def __init__(self, aggregator: MetricsAggregator) -> None:
        self.aggregator = aggregator

    def __call__(self, ctx: RequestContext, call_next: Callable[[], Any]) -> Any:
        timer = self.aggregator.record_request_start(ctx.method, ctx.path)
        ctx.on_complete(lambda done: timer.finish(done.status_code))
        return call_next()


class LoggingInterceptor:
    """Ships one ``http`` event per request with both bodies and the duration."""

    def __init__(self, shipper: LogShipper) -> None:
        self.shipper = shipper

    def __call__(self, ctx: RequestContext, call_next: Callable[[], Any]) -> Any:
        request_details = {
            "method": ctx.method,
            "path": ctx.path,
            "hasAuthorization": bool(ctx.header("Authorization")),
            "requestBody": ctx.body,
        }

        def ship(done: RequestContext) -> None:
            self.shipper.send(
                "info",
                "http",
                "HTTP Request",
                {
                    "method": request_details["method"],
                    "path": request_details["path"],
                    "statusCode": done.status_code,
                    "hasAuthorization": request_details["hasAuthorization"],
                    "requestBody": request_details["requestBody"],
                    "responseBody": done.response_body,
                    "durationMs": done.elapsed_ms(),
                },
            )

        ctx.on_complete(ship)
        return call_next()


# ── Flask adapter ────────────────────────────────────────────────


def _response_body(response: Response) -> Any:
    """Best-effort read of what was sent; streamed bodies are left alone."""
    if response.is_streamed or response.direct_passthrough:
        return None
    if response.is_json:
        return response.get_json(silent=True)
    data = response.get_data(as_text=True)
    return data or None


class FlaskInstrumentation:
    """Flask middleware: runs the interceptors around every request.

    Usage::

        FlaskInstrumentation(app, [MetricsInterceptor(agg), LoggingInterceptor(shipper)])
    """

    def __init__(
        self,
        app: Flask,
        interceptors: Sequence[Interceptor],
        *,
        logger: Optional[logging.Logger] = None,
    ):
        self.app = app
        self.interceptors = list(interceptors)
        self.logger = logger or _logger
        self._install(app)

    def _install(self, app: Flask) -> None:
        app.before_request(self._before)
        app.after_request(self._after)
        app.teardown_request(self._teardown)

    def _before(self) -> None:
        ctx = RequestContext(
            request.method,
            request.path,
            headers=dict(request.headers),
            body=request.get_json(silent=True),
        )
        g.telemetry_ctx = ctx
        set_log_context(method=ctx.method, path=ctx.path)
        run_interceptors(ctx, self.interceptors)

    def _after(self, response: Response) -> Response:
        ctx = g.get("telemetry_ctx")
        if ctx is not None:
            ctx.complete(response.status_code, _response_body(response))
        return response

    def _teardown(self, exc: Optional[BaseException] = None) -> None:
        ctx = g.get("telemetry_ctx")
        if ctx is not None and not ctx.completed:
            # No response went through after_request
            self.logger.warning(
                "Request ended without a response: %s", exc,
                extra={"method": ctx.method, "path": ctx.path},
            )
            ctx.complete(500)
        clear_log_context()
