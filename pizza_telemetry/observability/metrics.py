"""
In-process metrics aggregation: HTTP traffic, auth, users, purchases.

The aggregator is the single owner of all telemetry counters.  Request
handling and business code only touch it through the narrow ``record_*``
operations; the periodic exporter reads it through ``snapshot()``.

Counters are cumulative for the life of the process.  Purchase latency
samples are a since-last-export batch: a draining snapshot moves them
out of the aggregator, so each sample is exported exactly once.
"""

import copy
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, List, Optional, Set

import psutil

from ..constants import ERROR_STATUS_THRESHOLD

# ── Counter groups ───────────────────────────────────────────────


@dataclass(frozen=True)
class EndpointKey:
    """(method, path) pair: exact, case-sensitive match."""

    method: str
    path: str


@dataclass
class EndpointStats:
    count: int = 0
    total_time_ms: int = 0

    @property
    def average_ms(self) -> float:
        return self.total_time_ms / self.count if self.count else 0.0


@dataclass
class HttpCounters:
    total_requests: int = 0
    active_requests: int = 0
    error_count: int = 0


@dataclass
class AuthCounters:
    successful: int = 0
    failed: int = 0


@dataclass
class UserCounters:
    new_users: int = 0
    active_users: Set[Hashable] = field(default_factory=set)


@dataclass
class PurchaseCounters:
    attempts: int = 0
    successful: int = 0
    failed: int = 0
    total_revenue: float = 0.0
    pizzas_sold: int = 0
    latencies: List[float] = field(default_factory=list)
    failure_latencies: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of the aggregator, safe to read from any thread."""

    http: HttpCounters
    endpoints: Dict[EndpointKey, EndpointStats]
    auth: AuthCounters
    users: UserCounters
    purchases: PurchaseCounters
    cpu_percent: str
    memory_percent: str
    captured_at: datetime


# ── Request timing ───────────────────────────────────────────────


class RequestTimer:
    """Completion handle returned by ``MetricsAggregator.record_request_start``.

    ``finish`` must be called exactly once.  A second call counts the
    request twice; that is the caller's contract, not checked here.
    """

    __slots__ = ("_aggregator", "_stats", "started_at")

    def __init__(self, aggregator: "MetricsAggregator", stats: EndpointStats, started_at: float):
        self._aggregator = aggregator
        self._stats = stats
        self.started_at = started_at

    def finish(self, status_code: int) -> int:
        """Record completion and return the elapsed time in milliseconds."""
        return self._aggregator._finish_request(self, self._stats, status_code)


# ── Aggregator ───────────────────────────────────────────────────


class MetricsAggregator:
    """Thread-safe in-process telemetry store.

    Usage::

        agg = MetricsAggregator()
        timer = agg.record_request_start("GET", "/api/order")
        ...
        timer.finish(200)
        agg.record_purchase(True, latency_ms=150, pizza_count=3, revenue=25.99)
        snap = agg.snapshot()
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._init_state()

    def _init_state(self) -> None:
        self._http = HttpCounters()
        self._endpoints: Dict[EndpointKey, EndpointStats] = {}
        self._auth = AuthCounters()
        self._users = UserCounters()
        self._purchases = PurchaseCounters()

    # ── HTTP ─────────────────────────────────────────────────────

    def record_request_start(self, method: str, path: str) -> RequestTimer:
        """Count a request as started and return its completion handle."""
        key = EndpointKey(method, path)
        with self._lock:
            self._http.total_requests += 1
            self._http.active_requests += 1
            stats = self._endpoints.get(key)
            if stats is None:
                stats = self._endpoints[key] = EndpointStats()
        return RequestTimer(self, stats, self._clock())

    def _finish_request(self, timer: RequestTimer, stats: EndpointStats, status_code: int) -> int:
        elapsed_ms = max(0, round((self._clock() - timer.started_at) * 1000))
        with self._lock:
            stats.count += 1
            stats.total_time_ms += elapsed_ms
            self._http.active_requests -= 1
            if status_code >= ERROR_STATUS_THRESHOLD:
                self._http.error_count += 1
        return elapsed_ms

    # ── Business events ──────────────────────────────────────────

    def record_auth(self, success: bool, user_id: Optional[Hashable] = None) -> None:
        """Count an authentication attempt; successful users become active."""
        with self._lock:
            if success:
                self._auth.successful += 1
                if user_id is not None:
                    self._users.active_users.add(user_id)
            else:
                self._auth.failed += 1

    def record_new_user(self, user_id: Hashable) -> None:
        with self._lock:
            self._users.new_users += 1
            self._users.active_users.add(user_id)

    def record_purchase(
        self,
        success: bool,
        latency_ms: float,
        pizza_count: int = 0,
        revenue: float = 0,
    ) -> None:
        """Count a purchase attempt and buffer its latency for the next export.

        *pizza_count* and *revenue* only count towards the totals when
        the purchase succeeded.
        """
        with self._lock:
            p = self._purchases
            p.attempts += 1
            if success:
                p.successful += 1
                p.pizzas_sold += pizza_count
                p.total_revenue += revenue
                p.latencies.append(latency_ms)
            else:
                p.failed += 1
                p.failure_latencies.append(latency_ms)

    # ── Host gauges ──────────────────────────────────────────────

    def cpu_usage_percent(self) -> str:
        """1-minute load average per logical core, as a percentage string."""
        load_1m = psutil.getloadavg()[0]
        cores = psutil.cpu_count() or 1
        return f"{load_1m / cores * 100:.2f}"

    def memory_usage_percent(self) -> str:
        """Share of physical memory in use, as a percentage string."""
        vm = psutil.virtual_memory()
        return f"{(vm.total - vm.free) / vm.total * 100:.2f}"

    # ── Snapshot ─────────────────────────────────────────────────

    def snapshot(self, *, drain: bool = True) -> Snapshot:
        """Copy every counter group, the endpoint map and the host gauges.

        Args:
            drain: Move the buffered purchase latencies into the snapshot
                and clear them here.  ``False`` leaves them buffered.
        """
        cpu = self.cpu_usage_percent()
        memory = self.memory_usage_percent()

        with self._lock:
            purchases = copy.deepcopy(self._purchases)
            if drain:
                self._purchases.latencies = []
                self._purchases.failure_latencies = []
            return Snapshot(
                http=copy.copy(self._http),
                endpoints={k: copy.copy(v) for k, v in self._endpoints.items()},
                auth=copy.copy(self._auth),
                users=UserCounters(self._users.new_users, set(self._users.active_users)),
                purchases=purchases,
                cpu_percent=cpu,
                memory_percent=memory,
                captured_at=datetime.now(timezone.utc),
            )

    # ── Reset (testing) ──────────────────────────────────────────

    def reset(self) -> None:
        """Zero every counter and forget all endpoints."""
        with self._lock:
            self._init_state()
