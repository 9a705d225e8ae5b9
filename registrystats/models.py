"""Server statistics and feedback records."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .analytics_models import _meta, _Record, _record_from_dict, _record_to_dict

SOURCE_REGISTRY = "REGISTRY"
SOURCE_COMMUNITY = "COMMUNITY"


class LeaderboardType(str, Enum):
    """Kinds of leaderboard available."""

    INSTALLS = "installs"
    RATING = "rating"
    ACTIVE = "active"
    TRENDING = "trending"


class FeedbackSortOrder(str, Enum):
    """How feedback lists are ordered."""

    NEWEST = "newest"
    OLDEST = "oldest"
    RATING_HIGH = "rating_high"
    RATING_LOW = "rating_low"


@dataclass
class ServerStats(_Record):
    """Statistics for a single server from one source (REGISTRY or COMMUNITY)."""

    server_id: str = ""
    source: str = ""
    installation_count: int = 0
    rating: float = 0.0
    rating_count: int = 0
    first_seen: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    # Synced from the analytics service.
    active_installs: int = _meta(omitempty=True, default=0)
    daily_active_users: int = _meta(omitempty=True, default=0)
    monthly_active_users: int = _meta(omitempty=True, default=0)

    # Set on servers that were claimed from another source.
    claimed_from: str = _meta(omitempty=True, default="")
    claimed_at: Optional[datetime] = _meta(omitempty=True, default=None)

    def to_dict(self) -> dict:
        """Return the stats as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ServerStats":
        """Build stats from a document."""
        return _record_from_dict(cls, data)


@dataclass
class RatingRequest(_Record):
    """A rating submission with an optional comment."""

    rating: float = 0.0
    comment: str = _meta(omitempty=True, default="")
    source: str = _meta(omitempty=True, default="")
    user_id: str = _meta(omitempty=True, default="")
    timestamp: str = _meta(omitempty=True, default="")


@dataclass
class InstallRequest(_Record):
    """An installation tracking request."""

    source: str = _meta(omitempty=True, default="")
    user_id: str = _meta(omitempty=True, default="")
    version: str = _meta(omitempty=True, default="")
    platform: str = _meta(omitempty=True, default="")
    timestamp: int = _meta(omitempty=True, default=0)


@dataclass
class StatsResponse(_Record):
    """Server stats wrapped for API responses."""

    stats: Optional[ServerStats] = None


@dataclass
class ClaimRequest(_Record):
    """A request to claim a community server."""

    publish_request: Any = None
    transfer_stats: bool = False
    community_stats: Optional[ServerStats] = _meta(omitempty=True, default=None)


@dataclass
class ClaimResponse(_Record):
    """The outcome of claiming a server."""

    success: bool = False
    server_id: str = ""
    transferred_stats: Optional[ServerStats] = _meta(omitempty=True, default=None)


@dataclass
class GlobalStats(_Record):
    """Aggregate statistics for the whole registry."""

    total_servers: int = 0
    total_installs: int = 0
    active_servers: int = 0
    average_rating: float = 0.0
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the aggregate statistics as a document."""
        return _record_to_dict(self)


@dataclass
class LeaderboardEntry(_Record):
    """One ranked entry of a leaderboard."""

    server_id: str = ""
    metric_value: Any = None
    rank: int = 0


@dataclass
class StatsUpdateRequest(_Record):
    """An update of server stats coming from analytics."""

    installation_delta: int = _meta(omitempty=True, default=0)
    active_installs: int = _meta(omitempty=True, default=0)
    daily_active_users: int = _meta(omitempty=True, default=0)
    monthly_active_users: int = _meta(omitempty=True, default=0)
    last_updated: Optional[datetime] = None


@dataclass
class BatchStatsResponse(_Record):
    """Stats of several servers keyed by server ID."""

    stats: dict[str, ServerStats] = field(default_factory=dict)


@dataclass
class StatsTransferRequest(_Record):
    """A request to move stats from one server entry to another."""

    from_server_id: str = ""
    to_server_id: str = ""
    from_source: str = ""
    to_source: str = ""


@dataclass
class AggregatedStats(_Record):
    """Stats of one server combined over all sources."""

    server_id: str = ""
    total_installs: int = 0
    average_rating: float = 0.0
    total_rating_count: int = 0
    source_breakdown: dict[str, ServerStats] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Return the combined stats as a document."""
        return _record_to_dict(self)


@dataclass
class ServerFeedback(_Record):
    """A user's rating and comment for a server."""

    id: str = _meta(key="_id", aliases=("id",), default="")
    server_id: str = ""
    source: str = ""
    user_id: str = ""
    rating: float = 0.0
    comment: str = _meta(omitempty=True, default="")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_public: bool = False

    # Display-only fields, filled in for API responses.
    username: str = _meta(omitempty=True, default="")
    user_avatar: str = _meta(omitempty=True, default="")

    def to_dict(self) -> dict:
        """Return the feedback as a document."""
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "ServerFeedback":
        """Build feedback from a document, accepting ``_id`` or ``id``."""
        return _record_from_dict(cls, data)


@dataclass
class FeedbackResponse(_Record):
    """A page of feedback for API responses."""

    feedback: list[ServerFeedback] = field(default_factory=list)
    total_count: int = 0
    has_more: bool = False


@dataclass
class UserFeedbackResponse(_Record):
    """Whether a user has rated a server, with the rating if so."""

    has_rated: bool = False
    feedback: Optional[ServerFeedback] = _meta(omitempty=True, default=None)


@dataclass
class FeedbackUpdateRequest(_Record):
    """A change to existing feedback."""

    rating: float = 0.0
    comment: str = _meta(omitempty=True, default="")
    user_id: str = ""