"""
Wire encoders for aggregator snapshots.

``OtlpJsonEncoder`` is the canonical format: an OTLP-style JSON document
with one gauge per metric and one data point per gauge.  The
``LineProtocolEncoder`` renders the same metric set as InfluxDB line
protocol for collectors that ingest text.  Both walk the snapshot through
``iter_metrics`` so the metric names stay in one place.
"""

import json
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional

from .metrics import Snapshot


class MetricPoint(NamedTuple):
    name: str
    value: float
    unit: str
    attributes: Dict[str, str]


def _point(name: str, value: Any, unit: str, **attributes: Any) -> MetricPoint:
    return MetricPoint(name, float(value), unit, {k: str(v) for k, v in attributes.items()})


def iter_metrics(snapshot: Snapshot) -> Iterator[MetricPoint]:
    """Yield every exported data point of *snapshot*, in export order."""
    http = snapshot.http
    yield _point("http_requests_total", http.total_requests, "requests")
    yield _point("http_requests_active", http.active_requests, "requests")
    yield _point("http_requests_errors_total", http.error_count, "requests")

    for key, stats in snapshot.endpoints.items():
        yield _point(
            "http_request_count_total", stats.count, "requests",
            method=key.method, path=key.path,
        )
        yield _point(
            "http_request_duration_ms", round(stats.average_ms, 2), "ms",
            method=key.method, path=key.path,
        )

    yield _point("auth_attempts_total", snapshot.auth.successful, "attempts", status="success")
    yield _point("auth_attempts_total", snapshot.auth.failed, "attempts", status="fail")

    yield _point("user_registrations_total", snapshot.users.new_users, "users")
    yield _point("user_active_total", len(snapshot.users.active_users), "users")

    p = snapshot.purchases
    yield _point("pizza_purchase_attempts_total", p.attempts, "purchases")
    yield _point("pizza_purchase_total", p.successful, "purchases", status="success")
    yield _point("pizza_purchase_total", p.failed, "purchases", status="fail")
    yield _point("pizza_revenue_total", round(p.total_revenue, 2), "USD")
    yield _point("pizza_sold_total", p.pizzas_sold, "pizzas")

    # One point per sample, never aggregated
    for latency in p.latencies:
        yield _point("pizza_purchase_duration_ms", latency, "ms", status="success")
    for latency in p.failure_latencies:
        yield _point("pizza_purchase_duration_ms", latency, "ms", status="fail")

    yield _point("system_cpu_usage_percent", snapshot.cpu_percent, "%")
    yield _point("system_memory_usage_percent", snapshot.memory_percent, "%")


# ── Encoder interface ────────────────────────────────────────────


class MetricEncoder(ABC):
    """Turns a ``Snapshot`` into a request body."""

    content_type: str = "application/octet-stream"

    def __init__(self, source: str) -> None:
        self.source = source

    @abstractmethod
    def encode(self, snapshot: Snapshot) -> str:
        """Return the serialized request body for *snapshot*."""


# ── OTLP gauge document ──────────────────────────────────────────


class GaugeDocumentBuilder:
    """Accumulates gauge metrics into an OTLP ``resourceMetrics`` document.

    Every data point carries the ``source`` attribute first, followed by
    the metric's own attributes.
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.metrics: List[Dict[str, Any]] = []

    def add_metric(
        self,
        name: str,
        value: Any,
        unit: str = "",
        attributes: Optional[Mapping[str, Any]] = None,
        *,
        time_unix_nano: Optional[int] = None,
    ) -> None:
        all_attributes = [{"key": "source", "value": {"stringValue": self.source}}]
        for key, attr_value in (attributes or {}).items():
            all_attributes.append({"key": key, "value": {"stringValue": str(attr_value)}})

        stamp = time_unix_nano if time_unix_nano is not None else time.time_ns()
        self.metrics.append(
            {
                "name": name,
                "unit": unit,
                "gauge": {
                    "dataPoints": [
                        {
                            "asDouble": float(value),
                            "timeUnixNano": str(stamp),
                            "attributes": all_attributes,
                        }
                    ]
                },
            }
        )

    def to_document(self) -> Dict[str, Any]:
        return {"resourceMetrics": [{"scopeMetrics": [{"metrics": self.metrics}]}]}

    def clear(self) -> None:
        self.metrics = []


class OtlpJsonEncoder(MetricEncoder):
    """Canonical encoder: OTLP/HTTP JSON gauges."""

    content_type = "application/json"

    def build(self, snapshot: Snapshot) -> Dict[str, Any]:
        """Return the gauge document as a dict (``encode`` serializes it)."""
        builder = GaugeDocumentBuilder(self.source)
        stamp = time.time_ns()
        for point in iter_metrics(snapshot):
            builder.add_metric(
                point.name, point.value, point.unit, point.attributes, time_unix_nano=stamp
            )
        return builder.to_document()

    def encode(self, snapshot: Snapshot) -> str:
        return json.dumps(self.build(snapshot))


# ── Line protocol ────────────────────────────────────────────────


def _escape_tag(value: str) -> str:
    """Escape commas, equals signs and spaces in tag keys/values."""
    return value.replace("\\", "\\\\").replace(",", r"\,").replace("=", r"\=").replace(" ", r"\ ")


class LineProtocolEncoder(MetricEncoder):
    """InfluxDB line protocol: ``name,source=…,k=v value=1.0 <ns>``.

    Units are carried as a ``unit`` tag since the protocol has no field
    for them.
    """

    content_type = "text/plain; charset=utf-8"

    def encode(self, snapshot: Snapshot) -> str:
        stamp = time.time_ns()
        lines = []
        for point in iter_metrics(snapshot):
            tags = {"source": self.source, **point.attributes}
            if point.unit:
                tags["unit"] = point.unit
            tag_str = ",".join(f"{_escape_tag(k)}={_escape_tag(v)}" for k, v in tags.items())
            lines.append(f"{_escape_tag(point.name)},{tag_str} value={point.value!r} {stamp}")
        return "\n".join(lines) + "\n"


_ENCODERS = {
    "otlp": OtlpJsonEncoder,
    "line": LineProtocolEncoder,
}


def get_encoder(name: str, source: str) -> MetricEncoder:
    """Return the encoder registered as *name* (``otlp`` or ``line``)."""
    try:
        return _ENCODERS[name](source)
    except KeyError:
        raise ValueError(
            f"Unknown metrics format '{name}', expected one of {sorted(_ENCODERS)}"
        ) from None
