"""MongoDB-backed store of registry analytics: metrics, activity, searches and milestones."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError

from .analytics_models import (
    ActivityEvent,
    AnalyticsMetrics,
    APICallMetrics,
    CategoryStats,
    GrowthMetrics,
    MilestoneEvent,
    SearchAnalytics,
    TimeSeriesData,
    TrendingServer,
)
from .health_monitor import HealthMonitor
from .trends import GrowthCalculator, TrendingCalculator, _midnight, _sunday_based_weekday

log = logging.getLogger(__name__)

GLOBAL_METRICS_ID = "global_metrics"
INSTALL_MILESTONES = (100, 500, 1000, 5000, 10000, 50000, 100000)

# Quality figures reported until ratings are aggregated across servers.
REPORTED_AVERAGE_RATING = 4.2
REPORTED_TOTAL_RATINGS = 150
REPORTED_FIVE_STAR_SERVERS = 25

_ACTIVITY_COUNTERS = {
    "install": ("total_installs", "installs_today"),
    "rating": ("total_ratings",),
    "search": ("total_searches",),
}


class AnalyticsDatabaseError(Exception):
    """Raised when an analytics operation fails in the database."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


class AnalyticsDatabase:
    """Analytics data operations over a pymongo database.

    Unless a health monitor is given or ``monitor`` is false, a
    :class:`HealthMonitor` is created on the same database and started in the
    background; :meth:`close` stops it.
    """

    def __init__(
        self,
        database: Any,
        *,
        health_monitor: Optional[HealthMonitor] = None,
        monitor: bool = True,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.database = database
        self._now = now
        self.metrics_collection = database["analytics_metrics"]
        self.api_calls_collection = database["api_calls"]
        self.activity_collection = database["activity_events"]
        self.search_collection = database["search_analytics"]
        self.time_series_collection = database["time_series_data"]
        self.milestones_collection = database["milestones"]
        self.stats_collection = database["stats"]
        self.category_collection = database["category_stats"]
        self._growth = GrowthCalculator(database)
        self._trending = TrendingCalculator(database)

        self._owns_monitor = False
        if health_monitor is None and monitor:
            health_monitor = HealthMonitor(database, now=now)
            self._owns_monitor = True
        self.health_monitor = health_monitor

        self.create_indexes()
        if self._owns_monitor and self.health_monitor is not None:
            self.health_monitor.start()

    def close(self) -> None:
        """Stop the health monitor this database started."""
        if self._owns_monitor and self.health_monitor is not None:
            self.health_monitor.stop()

    def __enter__(self) -> AnalyticsDatabase:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def create_indexes(self) -> None:
        """Create the indexes of the analytics collections, logging failures."""
        plans = (
            (
                self.api_calls_collection,
                "API call",
                [
                    IndexModel([("endpoint", ASCENDING), ("method", ASCENDING)]),
                    IndexModel([("last_called", DESCENDING)]),
                ],
            ),
            (
                self.activity_collection,
                "activity",
                [
                    IndexModel([("timestamp", DESCENDING)]),
                    IndexModel([("type", ASCENDING), ("timestamp", DESCENDING)]),
                    IndexModel([("server_id", ASCENDING), ("timestamp", DESCENDING)]),
                ],
            ),
            (
                self.search_collection,
                "search",
                [
                    IndexModel([("search_term", ASCENDING)]),
                    IndexModel([("count", DESCENDING)]),
                    IndexModel([("last_searched", DESCENDING)]),
                ],
            ),
            (
                self.time_series_collection,
                "time series",
                [IndexModel([("timestamp", DESCENDING)])],
            ),
        )
        for collection, label, indexes in plans:
            try:
                collection.create_indexes(indexes)
            except PyMongoError as exc:
                log.warning("Failed to create %s indexes: %s", label, exc)

    # Core metrics

    def get_analytics_metrics(self, period: str = "") -> AnalyticsMetrics:
        """Return the global metrics, creating the document on first use."""
        try:
            document = self.metrics_collection.find_one({"_id": GLOBAL_METRICS_ID})
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get analytics metrics: {exc}") from exc

        if document is None:
            metrics = AnalyticsMetrics(last_updated=self._now())
            try:
                self.metrics_collection.insert_one(
                    {"_id": GLOBAL_METRICS_ID, "last_updated": metrics.last_updated}
                )
            except PyMongoError as exc:
                raise AnalyticsDatabaseError(f"failed to initialize metrics: {exc}") from exc
        else:
            metrics = AnalyticsMetrics.from_dict(document)

        self._calculate_dynamic_metrics(metrics)
        return metrics

    def update_analytics_metrics(self, updates: dict[str, Any]) -> None:
        """Set fields of the global metrics document, stamping ``last_updated``."""
        fields = dict(updates)
        fields["last_updated"] = self._now()
        try:
            self.metrics_collection.update_one(
                {"_id": GLOBAL_METRICS_ID}, {"$set": fields}, upsert=True
            )
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to update analytics metrics: {exc}") from exc

    def _increment_metrics(self, increments: dict[str, int]) -> None:
        try:
            self.metrics_collection.update_one(
                {"_id": GLOBAL_METRICS_ID},
                {"$inc": dict(increments), "$set": {"last_updated": self._now()}},
                upsert=True,
            )
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to update analytics metrics: {exc}") from exc

    def _count_installs(self, time_range: dict[str, datetime]) -> Optional[int]:
        try:
            return int(self.activity_collection.count_documents({"type": "install", "timestamp": time_range}))
        except PyMongoError as exc:
            log.warning("Failed to count installs: %s", exc)
            return None

    def _calculate_dynamic_metrics(self, metrics: AnalyticsMetrics) -> None:
        now = self._now()
        today_start = _midnight(now)
        week_start = now - timedelta(days=_sunday_based_weekday(now))
        month_start = _midnight(now.replace(day=1))

        today = self._count_installs({"$gte": today_start})
        if today is not None:
            metrics.installs_today = today
        week = self._count_installs({"$gte": week_start})
        if week is not None:
            metrics.installs_this_week = week
        month = self._count_installs({"$gte": month_start})
        if month is not None:
            metrics.installs_this_month = month

        last_day = self._count_installs({"$gte": now - timedelta(hours=24)})
        if last_day is not None:
            metrics.install_velocity = last_day / 24.0

        last_week = self._count_installs({"$gte": week_start - timedelta(days=7), "$lt": week_start})
        if last_week:
            metrics.weekly_growth = (metrics.installs_this_week - last_week) / last_week * 100

        if self.health_monitor is not None:
            try:
                p50, p90, p99 = self.health_monitor.get_response_time_percentiles("", timedelta(hours=24))
            except PyMongoError as exc:
                log.warning("Failed to get response time percentiles: %s", exc)
            else:
                metrics.response_time_p50 = p50
                metrics.response_time_p90 = p90
                metrics.response_time_p99 = p99
            try:
                metrics.uptime_percentage = self.health_monitor.get_uptime_percentage()
            except PyMongoError as exc:
                log.warning("Failed to get uptime percentage: %s", exc)

        metrics.average_rating = REPORTED_AVERAGE_RATING
        metrics.total_ratings = REPORTED_TOTAL_RATINGS
        metrics.five_star_servers = REPORTED_FIVE_STAR_SERVERS

    # API tracking

    def track_api_call(self, endpoint: str, method: str, duration: float, is_error: bool) -> None:
        """Record one call of an API endpoint and its duration in milliseconds."""
        query = {"endpoint": endpoint, "method": method}
        increments: dict[str, int] = {"count": 1}
        if is_error:
            increments["error_count"] = 1

        try:
            current = self.api_calls_collection.find_one(query)
        except PyMongoError:
            current = None
        if current is not None:
            existing = APICallMetrics.from_dict(current)
            average = (existing.avg_duration * existing.count + duration) / (existing.count + 1)
        else:
            average = duration

        update = {
            "$inc": increments,
            "$set": {"last_called": self._now(), "avg_duration": average},
        }
        try:
            self.api_calls_collection.update_one(query, update, upsert=True)
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to track API call: {exc}") from exc

        global_increments = {"total_api_calls": 1}
        if is_error:
            global_increments["error_count"] = 1
        self._increment_metrics(global_increments)

    def get_api_metrics(self, limit: int) -> list[APICallMetrics]:
        """Return the most called endpoints, busiest first."""
        try:
            cursor = self.api_calls_collection.find({}, sort=[("count", DESCENDING)], limit=limit)
            return [APICallMetrics.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get API metrics: {exc}") from exc

    # Activity tracking

    def record_activity(self, event: ActivityEvent) -> ActivityEvent:
        """Store an event with a fresh ID and timestamp and bump its counters."""
        event.id = str(ObjectId())
        event.timestamp = self._now()
        try:
            self.activity_collection.insert_one(event.to_dict())
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to record activity: {exc}") from exc

        counters = _ACTIVITY_COUNTERS.get(event.type, ())
        if counters:
            self._increment_metrics({name: 1 for name in counters})
        return event

    def get_recent_activity(self, limit: int, event_type: str = "") -> list[ActivityEvent]:
        """Return the latest events, optionally only those of one type."""
        query = {"type": event_type} if event_type else {}
        try:
            cursor = self.activity_collection.find(query, sort=[("timestamp", DESCENDING)], limit=limit)
            return [ActivityEvent.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get recent activity: {exc}") from exc

    # Search analytics

    def track_search(self, search_term: str, results_count: int) -> None:
        """Count a search for a term and record it as activity."""
        update = {
            "$inc": {"count": 1, "results_found": results_count},
            "$set": {"last_searched": self._now()},
        }
        try:
            self.search_collection.update_one({"search_term": search_term}, update, upsert=True)
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to track search: {exc}") from exc

        self.record_activity(
            ActivityEvent(type="search", value=search_term, metadata={"results_count": results_count})
        )

    def track_search_conversion(self, search_term: str, server_id: str) -> None:
        """Count an install that followed a search and refresh the success rate."""
        query = {"search_term": search_term}
        try:
            self.search_collection.update_one(query, {"$inc": {"installs_from_search": 1}})
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to track search conversion: {exc}") from exc

        try:
            document = self.search_collection.find_one(query)
            if document is None:
                return
            search = SearchAnalytics.from_dict(document)
            if search.count <= 0:
                return
            rate = search.installs_from_search / search.count * 100
            self.search_collection.update_one(query, {"$set": {"success_rate": rate}})
        except PyMongoError as exc:
            log.warning("Failed to update search success rate: %s", exc)

    def get_top_searches(self, limit: int) -> list[SearchAnalytics]:
        """Return the most searched terms, most frequent first."""
        try:
            cursor = self.search_collection.find({}, sort=[("count", DESCENDING)], limit=limit)
            return [SearchAnalytics.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get top searches: {exc}") from exc

    # Time series

    def record_time_series(self, data: TimeSeriesData) -> TimeSeriesData:
        """Store a data point stamped with the current time."""
        data.timestamp = self._now()
        try:
            self.time_series_collection.insert_one(data.to_dict())
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to record time series data: {exc}") from exc
        return data

    def get_time_series(
        self, start_time: datetime, end_time: datetime, interval: str = ""
    ) -> list[TimeSeriesData]:
        """Return the points in [start_time, end_time], oldest first.

        Points are returned as stored; ``interval`` does not regroup them.
        """
        query = {"timestamp": {"$gte": start_time, "$lte": end_time}}
        try:
            cursor = self.time_series_collection.find(query, sort=[("timestamp", ASCENDING)])
            return [TimeSeriesData.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get time series data: {exc}") from exc

    # Trending and growth

    def calculate_trending(self, limit: int) -> list[TrendingServer]:
        """Return up to ``limit`` servers ranked by recent install momentum."""
        try:
            return self._trending.calculate(limit, self._now())
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to calculate trending: {exc}") from exc

    def get_growth_metrics(self, metric: str, period: str) -> GrowthMetrics:
        """Return the growth of a metric; raise ValueError for unknown metrics."""
        return self._growth.growth_metrics(metric, period, self._now())

    # Category analytics

    def update_category_stats(self) -> list[CategoryStats]:
        """Recompute per-category figures from the server stats and store them."""
        try:
            documents = list(self.stats_collection.find({"category": {"$exists": True, "$ne": ""}}))
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to read server stats: {exc}") from exc

        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for document in documents:
            category = document.get("category")
            if isinstance(category, str) and category:
                grouped[category].append(document)

        now = self._now()
        results: list[CategoryStats] = []
        for category, members in grouped.items():
            ratings = [_number(doc.get("rating")) for doc in members if _number(doc.get("rating")) > 0]
            stats = CategoryStats(
                category=category,
                server_count=len(members),
                total_installs=int(sum(_number(doc.get("install_count")) for doc in members)),
                average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
                last_updated=now,
            )
            try:
                self.category_collection.update_one(
                    {"category": category}, {"$set": stats.to_dict()}, upsert=True
                )
            except PyMongoError as exc:
                raise AnalyticsDatabaseError(f"failed to update category stats: {exc}") from exc
            results.append(stats)
        return results

    def get_category_stats(self) -> list[CategoryStats]:
        """Return the stored category figures, most installed first."""
        try:
            cursor = self.category_collection.find({}, sort=[("total_installs", DESCENDING)])
            return [CategoryStats.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get category stats: {exc}") from exc

    # Milestones

    def check_and_record_milestones(self) -> list[MilestoneEvent]:
        """Record install milestones reached but not yet recorded; return the new ones."""
        metrics = self.get_analytics_metrics("all")
        recorded: list[MilestoneEvent] = []
        for milestone in INSTALL_MILESTONES:
            if metrics.total_installs < milestone:
                continue
            try:
                existing = self.milestones_collection.count_documents(
                    {"type": "installs", "milestone": milestone}
                )
            except PyMongoError:
                existing = 0
            if existing:
                continue
            event = MilestoneEvent(
                id=str(ObjectId()),
                type="installs",
                milestone=milestone,
                achieved_at=self._now(),
                description=f"Registry reached {milestone} total installs!",
            )
            try:
                self.milestones_collection.insert_one(event.to_dict())
            except PyMongoError as exc:
                log.warning("Failed to record milestone %d: %s", milestone, exc)
                continue
            recorded.append(event)
        return recorded

    def get_recent_milestones(self, limit: int) -> list[MilestoneEvent]:
        """Return the latest milestones, newest first."""
        try:
            cursor = self.milestones_collection.find({}, sort=[("achieved_at", DESCENDING)], limit=limit)
            return [MilestoneEvent.from_dict(doc) for doc in cursor]
        except PyMongoError as exc:
            raise AnalyticsDatabaseError(f"failed to get milestones: {exc}") from exc