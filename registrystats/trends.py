"""Growth and trending calculations over the analytics collections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple, Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from .analytics_models import DataPoint, GrowthMetrics, TrendingServer

log = logging.getLogger(__name__)

PERIODS = ("day", "week", "month", "year")
METRICS = ("installs", "users", "api_calls", "servers", "ratings", "searches")

_MOMENTUM_METRICS = frozenset({"installs", "users", "api_calls", "searches"})
_DATA_POINT_METRICS = frozenset({"installs", "users", "api_calls", "servers", "ratings"})
_DATA_POINT_INTERVALS = {
    "day": timedelta(hours=1),
    "week": timedelta(days=1),
    "month": timedelta(days=1),
    "year": timedelta(days=30),
}
_DEFAULT_INTERVAL = timedelta(days=1)

TRENDING_WINDOW = timedelta(hours=24)
MIN_FILL_RATING = 4.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_months(first_of_month: datetime, months: int) -> datetime:
    total = first_of_month.year * 12 + first_of_month.month - 1 + months
    return first_of_month.replace(year=total // 12, month=total % 12 + 1)


def _sunday_based_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


class PeriodWindow(NamedTuple):
    """The current and previous time windows of a growth period."""

    period: str
    current_start: datetime
    previous_start: datetime
    previous_end: datetime


def period_window(period: str, now: datetime) -> PeriodWindow:
    """Return the windows for ``period``; unknown periods mean the last seven days."""
    if period == "day":
        current = _midnight(now)
        previous = current - timedelta(days=1)
    elif period == "week":
        current = _midnight(now - timedelta(days=_sunday_based_weekday(now)))
        previous = current - timedelta(days=7)
    elif period == "month":
        current = _midnight(now.replace(day=1))
        previous = _add_months(current, -1)
    elif period == "year":
        current = _midnight(now.replace(month=1, day=1))
        previous = current.replace(year=current.year - 1)
    else:
        current = now - timedelta(days=7)
        previous = current - timedelta(days=7)
        period = "week"
    return PeriodWindow(period, current, previous, current)


def momentum_start(period: str, previous_start: datetime) -> Optional[datetime]:
    """Return the start of the period before the previous one, or None if unknown."""
    if period == "day":
        return previous_start - timedelta(days=1)
    if period == "week":
        return previous_start - timedelta(days=7)
    if period == "month":
        return _add_months(previous_start, -1)
    if period == "year":
        return previous_start.replace(year=previous_start.year - 1)
    return None


def classify_trend(momentum: Optional[float]) -> str:
    """Name the trend of a momentum value; None means there is no history."""
    if momentum is None:
        return "new"
    if momentum > 0:
        return "accelerating"
    if momentum < -5:
        return "decelerating"
    return "steady"


def _time_range(start: datetime, end: datetime) -> dict[str, datetime]:
    return {"$gte": start, "$lt": end}


class GrowthCalculator:
    """Computes metric values per period and their growth."""

    def __init__(self, database: Any) -> None:
        self.activity = database["activity_events"]
        self.api_calls = database["api_calls"]
        self.searches = database["search_analytics"]
        self._counters: dict[str, Callable[[datetime, datetime], float]] = {
            "installs": lambda s, e: self._count_activity("install", s, e),
            "users": self._count_users,
            "api_calls": self._sum_api_calls,
            "servers": lambda s, e: self._count_activity("server_added", s, e),
            "ratings": lambda s, e: self._count_activity("rating", s, e),
            "searches": self._count_searches,
        }

    def _count_activity(self, event_type: str, start: datetime, end: datetime) -> float:
        query = {"type": event_type, "timestamp": _time_range(start, end)}
        return float(self.activity.count_documents(query))

    def _count_users(self, start: datetime, end: datetime) -> float:
        query = {
            "timestamp": _time_range(start, end),
            "user_id": {"$exists": True, "$ne": ""},
        }
        return float(len(self.activity.distinct("user_id", query)))

    def _sum_api_calls(self, start: datetime, end: datetime) -> float:
        cursor = self.api_calls.find({"last_called": _time_range(start, end)}, {"count": 1, "_id": 0})
        return float(
            sum(
                doc["count"]
                for doc in cursor
                if isinstance(doc.get("count"), (int, float)) and not isinstance(doc.get("count"), bool)
            )
        )

    def _count_searches(self, start: datetime, end: datetime) -> float:
        return float(self.searches.count_documents({"timestamp": _time_range(start, end)}))

    def period_values(
        self,
        metric: str,
        current_start: datetime,
        current_end: datetime,
        previous_start: Optional[datetime] = None,
        previous_end: Optional[datetime] = None,
    ) -> tuple[float, float]:
        """Return the metric's value in the current and previous windows.

        The previous value is 0 when no previous window is given. Database
        errors are logged and count as 0.
        """
        counter = self._counters.get(metric)
        if counter is None:
            raise ValueError(f"unsupported metric: {metric}")
        try:
            current = counter(current_start, current_end)
        except PyMongoError as exc:
            log.error("Error counting current %s: %s", metric, exc)
            return 0.0, 0.0
        if previous_start is None or previous_end is None:
            return current, 0.0
        try:
            previous = counter(previous_start, previous_end)
        except PyMongoError as exc:
            log.error("Error counting previous %s: %s", metric, exc)
            return current, 0.0
        return current, previous

    def growth_metrics(self, metric: str, period: str, now: Optional[datetime] = None) -> GrowthMetrics:
        """Compute the growth of ``metric`` over ``period`` up to ``now``."""
        if metric not in self._counters:
            raise ValueError(f"unsupported metric: {metric}")
        now = now if now is not None else _utcnow()
        window = period_window(period, now)
        current, previous = self.period_values(
            metric, window.current_start, now, window.previous_start, window.previous_end
        )
        growth = GrowthMetrics(
            metric=metric,
            period=window.period,
            current_period_start=window.current_start,
            previous_period_start=window.previous_start,
            current_value=current,
            previous_value=previous,
        )
        if previous > 0:
            growth.growth_rate = (current - previous) / previous * 100
        elif current > 0:
            growth.growth_rate = 100.0
        growth.absolute_change = current - previous

        momentum_value = 0.0
        start = momentum_start(window.period, window.previous_start)
        if metric in _MOMENTUM_METRICS and start is not None:
            momentum_value, _ = self.period_values(metric, start, window.previous_start)
        if momentum_value > 0:
            previous_growth = (previous - momentum_value) / momentum_value * 100
            growth.momentum = growth.growth_rate - previous_growth
            growth.trend = classify_trend(growth.momentum)
        else:
            growth.trend = classify_trend(None)

        growth.data_points = self.data_points(metric, window.current_start, now, window.period)
        return growth

    def data_points(self, metric: str, start: datetime, end: datetime, period: str) -> list[DataPoint]:
        """Split [start, end) into period-sized steps and value each one."""
        interval = _DATA_POINT_INTERVALS.get(period, _DEFAULT_INTERVAL)
        points: list[DataPoint] = []
        current = start
        while current < end:
            step_end = min(current + interval, end)
            value = 0.0
            if metric in _DATA_POINT_METRICS:
                value, _ = self.period_values(metric, current, step_end)
            points.append(DataPoint(timestamp=current, value=value))
            current = step_end
        return points


@dataclass
class _Tally:
    server_name: str
    recent: int = 0
    previous: int = 0


class TrendingCalculator:
    """Ranks servers by recent install velocity and momentum."""

    def __init__(self, database: Any) -> None:
        self.activity = database["activity_events"]
        self.stats = database["stats"]
        self.servers = database["servers_v2"]

    def _server_name(self, server_id: str) -> str:
        try:
            document = self.servers.find_one({"id": server_id})
        except PyMongoError:
            return ""
        if document is None:
            return ""
        name = document.get("name")
        return name if isinstance(name, str) else ""

    def calculate(self, limit: int, now: Optional[datetime] = None) -> list[TrendingServer]:
        """Return up to ``limit`` trending servers.

        Servers are scored on installs in the last 24 hours against the 24
        hours before; if too few are found, highly rated servers fill the rest.
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        now = _as_utc(now if now is not None else _utcnow())
        yesterday = now - TRENDING_WINDOW
        two_days_ago = now - 2 * TRENDING_WINDOW

        events = self.activity.find(
            {
                "type": "install",
                "timestamp": {"$gte": two_days_ago},
                "server_id": {"$exists": True, "$ne": ""},
            }
        )
        tallies: dict[str, _Tally] = {}
        for event in events:
            server_id = event.get("server_id")
            if not isinstance(server_id, str):
                continue
            tally = tallies.get(server_id)
            if tally is None:
                name = event.get("server_name")
                tally = tallies[server_id] = _Tally(name if isinstance(name, str) else "")
            timestamp = event.get("timestamp")
            if isinstance(timestamp, datetime) and _as_utc(timestamp) >= yesterday:
                tally.recent += 1
            else:
                tally.previous += 1

        hours = TRENDING_WINDOW.total_seconds() / 3600
        trending: list[TrendingServer] = []
        for server_id, tally in tallies.items():
            velocity = tally.recent / hours
            if tally.previous == 0:
                momentum = 100.0
            else:
                momentum = (tally.recent - tally.previous) / tally.previous * 100
            trending.append(
                TrendingServer(
                    server_id=server_id,
                    server_name=tally.server_name,
                    trending_score=velocity + momentum * 0.1,
                    install_velocity=velocity,
                    momentum_change=momentum,
                    recent_installs=tally.recent,
                    previous_installs=tally.previous,
                    trend_period="24h",
                )
            )
        trending.sort(key=lambda server: server.trending_score, reverse=True)
        trending = trending[:limit]
        for server in trending:
            if not server.server_name:
                server.server_name = self._server_name(server.server_id)

        if len(trending) < limit:
            trending.extend(self._top_rated(limit - len(trending), [s.server_id for s in trending]))
        return trending

    def _top_rated(self, count: int, exclude: list[str]) -> list[TrendingServer]:
        fill: list[TrendingServer] = []
        try:
            cursor = self.stats.find(
                {"server_id": {"$nin": exclude}, "rating": {"$gte": MIN_FILL_RATING}},
                sort=[("rating", DESCENDING), ("install_count", DESCENDING)],
                limit=count,
            )
            for stat in cursor:
                try:
                    server_id = str(stat["server_id"])
                    rating = float(stat.get("rating") or 0.0)
                    installs = int(stat.get("install_count") or 0)
                except (KeyError, TypeError, ValueError):
                    continue
                fill.append(
                    TrendingServer(
                        server_id=server_id,
                        server_name=self._server_name(server_id),
                        trending_score=rating * 10,
                        install_velocity=installs / (30 * 24),
                        momentum_change=0.0,
                        trend_period="all-time",
                    )
                )
        except PyMongoError as exc:
            log.warning("Failed to fill trending with top-rated servers: %s", exc)
        return fill