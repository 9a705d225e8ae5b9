"""Analytics data records and their document/JSON representations."""

import re
import types
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional, Union, get_args, get_origin

_KEY = "key"
_ALIASES = "aliases"
_OMIT_EMPTY = "omitempty"

_FRACTION = re.compile(r"\.(\d+)")


def _meta(*, key: Optional[str] = None, omitempty: bool = False, aliases: tuple = (), **kwargs: Any):
    """Declare a record field with its serialized key and omission rule."""
    metadata = {_KEY: key, _OMIT_EMPTY: omitempty, _ALIASES: aliases}
    return field(metadata=metadata, **kwargs)


def _parse_time(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp, accepting up to nanosecond precision."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise TypeError(f"expected a timestamp string, got {type(value).__name__}")
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp: {value!r}") from exc


def _is_empty(value: Any, tp: Any) -> bool:
    if value is None:
        return True
    if tp is Any:
        return False
    if isinstance(value, bool):
        return not value
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    if isinstance(value, (int, float)):
        return value == 0
    return False


def _encode(value: Any) -> Any:
    if isinstance(value, _Record):
        return value.to_dict()
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


def _decode(tp: Any, value: Any) -> Any:
    if value is None or tp is Any:
        return value
    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        options = [arg for arg in get_args(tp) if arg is not type(None)]
        return _decode(options[0], value) if options else value
    if origin is list:
        (item_type,) = get_args(tp) or (Any,)
        return [_decode(item_type, item) for item in value]
    if origin is dict or tp is dict:
        return dict(value)
    if tp is datetime:
        return _parse_time(value)
    if isinstance(tp, type) and issubclass(tp, _Record):
        return tp.from_dict(value)
    if tp is bool:
        return bool(value)
    if tp is int:
        return int(value)
    if tp is float:
        return float(value)
    if tp is str:
        return str(value)
    return value


def _record_to_dict(record: Any) -> dict:
    """Return a record as a document, leaving timestamps as datetimes."""
    result: dict = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if f.metadata.get(_OMIT_EMPTY) and _is_empty(value, f.type):
            continue
        result[f.metadata.get(_KEY) or f.name] = _encode(value)
    return result


def _record_from_dict(cls: type, data: Mapping) -> Any:
    """Build a record of ``cls`` from a document; unknown keys are ignored."""
    if not isinstance(data, Mapping):
        raise TypeError(f"expected a mapping, got {type(data).__name__}")
    kwargs: dict = {}
    for f in fields(cls):
        keys = (f.metadata.get(_KEY) or f.name, *f.metadata.get(_ALIASES, ()))
        for key in keys:
            if key in data and data[key] is not None:
                kwargs[f.name] = _decode(f.type, data[key])
                break
    return cls(**kwargs)


class _Record:
    """Mixin giving dataclass records dict serialization keyed by their wire names."""

    def to_dict(self) -> dict:
        """Return the record as a document, leaving timestamps as datetimes."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping):
        """Build a record from a document; unknown keys are ignored."""
        return _record_from_dict(cls, data)


@dataclass
class AnalyticsMetrics(_Record):
    """Registry-wide analytics figures."""

    total_installs: int = 0
    total_api_calls: int = 0
    active_users: int = 0
    active_installs: int = 0

    installs_today: int = 0
    installs_this_week: int = 0
    installs_this_month: int = 0
    weekly_growth: float = 0.0
    monthly_growth: float = 0.0
    install_velocity: float = 0.0  # installs per hour

    average_rating: float = 0.0
    total_ratings: int = 0
    five_star_servers: int = 0
    total_feedback: int = 0

    response_time_p50: float = 0.0  # milliseconds
    response_time_p90: float = 0.0
    response_time_p99: float = 0.0
    uptime_percentage: float = 0.0
    error_rate: float = 0.0

    total_searches: int = 0
    search_success_rate: float = 0.0
    registry_installs: int = 0
    community_installs: int = 0

    active_publishers: int = 0
    new_servers: int = 0
    updated_servers: int = 0

    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the metrics as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "AnalyticsMetrics":
        """Build metrics from a document."""
        return _record_from_dict(cls, data)


@dataclass
class APICallMetrics(_Record):
    """Usage of one API endpoint."""

    endpoint: str = ""
    method: str = ""
    count: int = 0
    avg_duration: float = 0.0  # milliseconds
    error_count: int = 0
    last_called: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the endpoint metrics as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "APICallMetrics":
        """Build endpoint metrics from a document."""
        return _record_from_dict(cls, data)


@dataclass
class ActivityEvent(_Record):
    """A single activity in the system: install, rating, update, search."""

    id: str = _meta(key="_id", aliases=("id",), default="")
    type: str = ""
    server_id: str = _meta(omitempty=True, default="")
    server_name: str = _meta(omitempty=True, default="")
    user_id: str = _meta(omitempty=True, default="")
    value: Any = _meta(omitempty=True, default=None)
    metadata: dict = _meta(omitempty=True, default_factory=dict)
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the event as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ActivityEvent":
        """Build an event from a document, accepting ``_id`` or ``id``."""
        return _record_from_dict(cls, data)


@dataclass
class CategoryStats(_Record):
    """Statistics for a server category."""

    category: str = ""
    server_count: int = 0
    total_installs: int = 0
    average_rating: float = 0.0
    weekly_growth: float = 0.0
    last_updated: Optional[datetime] = None


@dataclass
class ConversionFunnel(_Record):
    """User journey metrics for a period."""

    period: str = ""  # "day", "week", "month"
    date: Optional[datetime] = None
    total_searches: int = 0
    search_to_view: int = 0
    view_to_install: int = 0
    search_to_install: int = 0
    conversion_rate: float = 0.0


@dataclass
class TrendingServer(_Record):
    """A server with its trending figures."""

    server_id: str = ""
    server_name: str = ""
    trending_score: float = 0.0
    trend_score: float = 0.0
    installs_today: int = 0
    install_velocity: float = 0.0
    momentum_change: float = 0.0  # % change in velocity
    recent_installs: int = 0
    previous_installs: int = 0
    trend_period: str = ""
    category: str = _meta(omitempty=True, default="")

    def to_dict(self) -> dict:
        """Return the trending entry as a document."""
        return _record_to_dict(self)


@dataclass
class SearchAnalytics(_Record):
    """Search behaviour for one search term."""

    search_term: str = ""
    count: int = 0
    results_found: int = 0
    installs_from_search: int = 0
    success_rate: float = 0.0
    last_searched: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the search figures as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "SearchAnalytics":
        """Build search figures from a document."""
        return _record_from_dict(cls, data)


@dataclass
class ServerHealthMetrics(_Record):
    """Health of an individual server."""

    server_id: str = ""
    response_time: float = 0.0  # milliseconds
    availability: float = 0.0  # percentage
    error_rate: float = 0.0
    last_health_check: Optional[datetime] = None
    status: str = ""  # "healthy", "degraded", "down"

    def to_dict(self) -> dict:
        """Return the health figures as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ServerHealthMetrics":
        """Build health figures from a document."""
        return _record_from_dict(cls, data)


@dataclass
class TimeSeriesData(_Record):
    """Metrics at one point in time."""

    timestamp: Optional[datetime] = None
    installs: int = 0
    api_calls: int = 0
    active_users: int = 0
    new_servers: int = 0
    ratings: int = 0

    def to_dict(self) -> dict:
        """Return the data point as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "TimeSeriesData":
        """Build a data point from a document."""
        return _record_from_dict(cls, data)


@dataclass
class DataPoint(_Record):
    """A single value in a time series."""

    timestamp: Optional[datetime] = None
    value: float = 0.0

    def to_dict(self) -> dict:
        """Return the point as a document."""
        return _record_to_dict(self)


@dataclass
class GrowthMetrics(_Record):
    """Growth of one metric between two periods."""

    metric: str = ""
    period: str = ""
    current_period_start: Optional[datetime] = None
    previous_period_start: Optional[datetime] = None
    current_value: float = 0.0
    previous_value: float = 0.0
    absolute_change: float = 0.0
    growth_rate: float = 0.0  # percentage
    momentum: float = 0.0
    trend: str = ""  # "accelerating", "steady", "decelerating", "new"
    data_points: list[DataPoint] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Return the growth figures as a document."""
        return _record_to_dict(self)


@dataclass
class MilestoneEvent(_Record):
    """A significant achievement of the registry."""

    id: str = _meta(key="_id", aliases=("id",), default="")
    type: str = ""  # "installs", "servers", "users", "ratings"
    milestone: int = 0
    achieved_at: Optional[datetime] = None
    server_id: str = _meta(omitempty=True, default="")
    server_name: str = _meta(omitempty=True, default="")
    description: str = ""

    def to_dict(self) -> dict:
        """Return the milestone as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "MilestoneEvent":
        """Build a milestone from a document, accepting ``_id`` or ``id``."""
        return _record_from_dict(cls, data)


@dataclass
class AnalyticsResponse(_Record):
    """Analytics data wrapped for API responses."""

    metrics: Optional[AnalyticsMetrics] = None
    trending_servers: list[TrendingServer] = _meta(omitempty=True, default_factory=list)
    recent_activity: list[ActivityEvent] = _meta(omitempty=True, default_factory=list)
    category_breakdown: list[CategoryStats] = _meta(omitempty=True, default_factory=list)
    search_insights: list[SearchAnalytics] = _meta(omitempty=True, default_factory=list)
    milestones: list[MilestoneEvent] = _meta(omitempty=True, default_factory=list)
    time_period: str = ""
    generated_at: Optional[datetime] = None


@dataclass
class MetricWithTrend(_Record):
    """A metric value with its trend against a comparison period."""

    value: Any = None
    trend: float = 0.0  # percentage change
    trend_direction: str = ""  # "up", "down", "stable"
    comparison_period: str = ""


@dataclass
class ServerQuickStat(_Record):
    """A headline statistic about one server."""

    server_id: str = ""
    server_name: str = ""
    value: Any = None
    label: str = ""


@dataclass
class DashboardMetrics(_Record):
    """The main dashboard statistics."""

    total_installs: MetricWithTrend = field(default_factory=MetricWithTrend)
    total_api_calls: MetricWithTrend = field(default_factory=MetricWithTrend)
    active_users: MetricWithTrend = field(default_factory=MetricWithTrend)
    server_health: MetricWithTrend = field(default_factory=MetricWithTrend)

    new_servers_today: int = 0
    install_velocity: float = 0.0
    top_rated_count: int = 0
    search_success_rate: float = 0.0

    install_trend: list[int] = field(default_factory=list)  # last 7 days
    activity_trend: list[int] = field(default_factory=list)  # last 7 hours

    most_installed_today: Optional[ServerQuickStat] = _meta(omitempty=True, default=None)
    hottest_server: Optional[ServerQuickStat] = _meta(omitempty=True, default=None)
    newest_server: Optional[ServerQuickStat] = _meta(omitempty=True, default=None)

    @classmethod
    def from_dict(cls, data: Mapping) -> "DashboardMetrics":
        """Build dashboard statistics from a document."""
        return _record_from_dict(cls, data)