"""Health checks of registered servers and response-time statistics."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

import requests
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from .analytics_models import ServerHealthMetrics

log = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 300.0
DEFAULT_CHECK_TIMEOUT = 10.0
SLOW_RESPONSE_MS = 1000
DEFAULT_UPTIME = 99.9

_AVAILABILITY_BY_STATUS = {
    "healthy": 99.9,
    "slow": 95.0,
    "degraded": 75.0,
}

_BAD_REQUEST_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def get_percentile(sorted_values: Sequence[float], percentile: float) -> float:
    """Return the value at ``percentile`` of an ascending sequence (0 if empty)."""
    if not sorted_values:
        return 0.0
    index = int((len(sorted_values) - 1) * percentile / 100)
    return sorted_values[index]


@dataclass
class HealthCheckConfig:
    """How to check one server's health."""

    server_id: str
    health_url: str
    timeout: float = DEFAULT_CHECK_TIMEOUT
    last_check: Optional[datetime] = None
    status: str = "unknown"


class HealthMonitor:
    """Periodically checks registered servers and records their health.

    ``database`` is a pymongo database (or anything indexable by collection
    name). Database errors from the query methods propagate as
    :class:`pymongo.errors.PyMongoError`.
    """

    def __init__(
        self,
        database: Any,
        *,
        check_interval: float | timedelta = DEFAULT_CHECK_INTERVAL,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.database = database
        self.health_collection = database["server_health"]
        self.response_collection = database["response_times"]
        self.check_interval = _seconds(check_interval)
        self._session = session or requests.Session()
        self._clock = clock
        self._now = now
        self._checks: dict[str, HealthCheckConfig] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.create_indexes()

    def create_indexes(self) -> None:
        """Create the indexes of the health and response-time collections."""
        health_indexes = [
            IndexModel([("server_id", ASCENDING)]),
            IndexModel([("last_health_check", DESCENDING)]),
        ]
        try:
            self.health_collection.create_indexes(health_indexes)
        except PyMongoError as exc:
            log.warning("Failed to create health indexes: %s", exc)

        response_indexes = [
            IndexModel([("timestamp", DESCENDING)]),
            IndexModel([("endpoint", ASCENDING), ("timestamp", DESCENDING)]),
        ]
        try:
            self.response_collection.create_indexes(response_indexes)
        except PyMongoError as exc:
            log.warning("Failed to create response time indexes: %s", exc)

    def start(self) -> None:
        """Run an initial check, then check every interval in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop background monitoring and wait for the running round to finish."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self) -> None:
        self.perform_health_checks()
        while not self._stop.wait(self.check_interval):
            self.perform_health_checks()

    def register_health_check(self, server_id: str, health_url: str) -> None:
        """Register a server for health monitoring."""
        with self._lock:
            self._checks[server_id] = HealthCheckConfig(server_id=server_id, health_url=health_url)

    def perform_health_checks(self) -> dict[str, str]:
        """Check all registered servers concurrently; return status by server ID."""
        with self._lock:
            checks = list(self._checks.values())
        if not checks:
            return {}
        with ThreadPoolExecutor(max_workers=len(checks)) as pool:
            statuses = list(pool.map(self.check_server_health, checks))
        return {check.server_id: status for check, status in zip(checks, statuses)}

    def check_server_health(self, config: HealthCheckConfig) -> str:
        """Check one server, record the result and return its status."""
        start = self._clock()
        try:
            response = self._session.get(config.health_url, timeout=config.timeout)
        except _BAD_REQUEST_ERRORS as exc:
            self._record_health_check(config.server_id, "error", 0.0, str(exc))
            return "error"
        except requests.RequestException as exc:
            elapsed = int((self._clock() - start) * 1000)
            self._record_health_check(config.server_id, "down", float(elapsed), str(exc))
            return "down"
        elapsed = int((self._clock() - start) * 1000)
        try:
            code = response.status_code
        finally:
            response.close()

        status = "healthy"
        message = f"HTTP {code}"
        if code >= 500:
            status = "down"
        elif code >= 400:
            status = "degraded"
        elif elapsed > SLOW_RESPONSE_MS:
            status = "slow"
            message = f"HTTP {code} (slow response)"

        self._record_health_check(config.server_id, status, float(elapsed), message)
        return status

    def _record_health_check(self, server_id: str, status: str, response_time: float, message: str) -> None:
        update_fields = {
            "server_id": server_id,
            "status": status,
            "response_time": response_time,
            "last_health_check": self._now(),
            "message": message,
            "availability": self._calculate_availability(server_id),
        }
        try:
            self.health_collection.update_one(
                {"server_id": server_id}, {"$set": update_fields}, upsert=True
            )
        except PyMongoError as exc:
            log.error("Failed to record health check: %s", exc)
        self._record_response_time(server_id, response_time)

    def _calculate_availability(self, server_id: str) -> float:
        # Based on the status stored before this check.
        try:
            health = self.health_collection.find_one({"server_id": server_id})
        except PyMongoError:
            return 0.0
        if health is None:
            return 0.0
        status = health.get("status", "")
        if status == "down":
            return 0.0
        return _AVAILABILITY_BY_STATUS.get(status, 50.0)

    def _record_response_time(self, endpoint: str, response_time: float) -> None:
        document = {
            "endpoint": endpoint,
            "response_time": response_time,
            "timestamp": self._now(),
        }
        try:
            self.response_collection.insert_one(document)
        except PyMongoError as exc:
            log.error("Failed to record response time: %s", exc)

    def get_response_time_percentiles(
        self, endpoint: str, period: float | timedelta
    ) -> tuple[float, float, float]:
        """Return the 50th, 90th and 99th percentile response times over ``period``.

        An empty ``endpoint`` covers all endpoints.
        """
        since = self._now() - timedelta(seconds=_seconds(period))
        query: dict[str, Any] = {"timestamp": {"$gte": since}}
        if endpoint:
            query["endpoint"] = endpoint
        cursor = self.response_collection.find(
            query, {"response_time": 1, "_id": 0}, sort=[("response_time", ASCENDING)]
        )
        times = sorted(
            float(doc["response_time"])
            for doc in cursor
            if isinstance(doc.get("response_time"), (int, float))
        )
        if not times:
            return 0.0, 0.0, 0.0
        return get_percentile(times, 50), get_percentile(times, 90), get_percentile(times, 99)

    def get_server_health(self, server_id: str) -> ServerHealthMetrics:
        """Return the current health of a server, or an "unknown" record."""
        document = self.health_collection.find_one({"server_id": server_id})
        if document is None:
            return ServerHealthMetrics(server_id=server_id, status="unknown", availability=0.0)
        return ServerHealthMetrics.from_dict(document)

    def get_uptime_percentage(self) -> float:
        """Return the average availability of all monitored servers (99.9 if none)."""
        values = [
            float(doc["availability"])
            for doc in self.health_collection.find({}, {"availability": 1, "_id": 0})
            if isinstance(doc.get("availability"), (int, float))
            and not isinstance(doc.get("availability"), bool)
        ]
        average = sum(values) / len(values) if values else 0.0
        return average if average != 0 else DEFAULT_UPTIME

    def track_endpoint_response(self, endpoint: str, duration: float | timedelta) -> threading.Thread:
        """Record an API endpoint's response time in the background.

        ``duration`` is a timedelta or a number of seconds. Returns the
        thread doing the recording.
        """
        milliseconds = int(_seconds(duration) * 1000)
        thread = threading.Thread(
            target=self._record_response_time,
            args=(endpoint, float(milliseconds)),
            name="response-time",
            daemon=True,
        )
        thread.start()
        return thread

    def __enter__(self) -> HealthMonitor:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()