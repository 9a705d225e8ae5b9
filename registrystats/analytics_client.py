"""HTTP client for the external analytics service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote, quote_plus

import requests

from .analytics_models import ActivityEvent, DashboardMetrics, _Record

DEFAULT_TIMEOUT = 30.0
_PATH_SAFE = "$&+:=@"


class AnalyticsClientError(Exception):
    """Raised when the analytics service cannot be reached or answers badly."""


@dataclass
class ServerAnalyticsMetrics(_Record):
    """Analytics figures for one server."""

    server_id: str = ""
    active_installs: int = 0
    daily_active_users: int = 0
    monthly_active_users: int = 0
    weekly_growth: float = 0.0
    last_updated: Optional[datetime] = None


def _to_metrics(stat: dict[str, Any]) -> ServerAnalyticsMetrics:
    daily = int(stat.get("daily_active_users") or 0)
    return ServerAnalyticsMetrics(
        server_id=str(stat.get("server_id") or ""),
        active_installs=int(stat.get("installation_count") or 0),
        daily_active_users=daily,
        monthly_active_users=daily * 30,  # rough estimate
        weekly_growth=float(stat.get("weekly_growth_rate") or 0.0),
        last_updated=datetime.now(timezone.utc),
    )


def _basic_auth() -> Optional[tuple[str, str]]:
    for user_var, pass_var in (
        ("MCP_REGISTRY_ANALYTICS_USER", "MCP_REGISTRY_ANALYTICS_PASS"),
        ("ANALYTICS_API_USERNAME", "ANALYTICS_API_PASSWORD"),
    ):
        username = os.environ.get(user_var, "")
        secret = os.environ.get(pass_var, "")
        if username and secret:
            return username, secret
    return None


class AnalyticsClient:
    """Fetches server and dashboard metrics from the analytics service."""

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def __enter__(self) -> AnalyticsClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._session.close()

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self._session.request(method, url, auth=_basic_auth(), timeout=self.timeout, **kwargs)

    def _fetch_json(self, url: str, action: str) -> Any:
        try:
            response = self._send("GET", url)
        except requests.RequestException as exc:
            raise AnalyticsClientError(f"failed to fetch {action}: {exc}") from exc
        if response.status_code != 200:
            raise AnalyticsClientError(f"unexpected status code: {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise AnalyticsClientError(f"failed to decode response: {exc}") from exc

    def get_server_metrics(self, server_id: str) -> ServerAnalyticsMetrics:
        """Fetch metrics for a single server."""
        url = f"{self.base_url}/servers/{quote(server_id, safe=_PATH_SAFE)}/stats"
        data = self._fetch_json(url, "metrics")
        try:
            return _to_metrics(data)
        except (TypeError, ValueError, AttributeError) as exc:
            raise AnalyticsClientError(f"failed to decode response: {exc}") from exc

    def get_batch_server_metrics(self, server_ids: list[str]) -> dict[str, ServerAnalyticsMetrics]:
        """Fetch metrics for several servers.

        Uses the batch endpoint, falling back to one request per server when it
        fails; servers whose individual request fails are left out.
        """
        if not server_ids:
            return {}
        url = f"{self.base_url}/servers/stats/batch"
        try:
            response = self._send(
                "POST",
                url,
                json={"server_ids": list(server_ids)},
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException:
            return self._fetch_individually(server_ids)
        if response.status_code != 200:
            return self._fetch_individually(server_ids)
        try:
            stats = response.json().get("stats") or {}
            return {server_id: _to_metrics(stat) for server_id, stat in stats.items()}
        except (TypeError, ValueError, AttributeError) as exc:
            raise AnalyticsClientError(f"failed to decode response: {exc}") from exc

    def _fetch_individually(self, server_ids: list[str]) -> dict[str, ServerAnalyticsMetrics]:
        results: dict[str, ServerAnalyticsMetrics] = {}
        for server_id in server_ids:
            try:
                results[server_id] = self.get_server_metrics(server_id)
            except AnalyticsClientError:
                continue
        return results

    def get_dashboard_metrics(self, period: str) -> DashboardMetrics:
        """Fetch aggregated dashboard metrics for a period."""
        url = f"{self.base_url}/dashboard?period={quote_plus(period)}"
        data = self._fetch_json(url, "dashboard metrics")
        try:
            return DashboardMetrics.from_dict(data)
        except (TypeError, ValueError, AttributeError) as exc:
            raise AnalyticsClientError(f"failed to decode response: {exc}") from exc

    def get_recent_activity(self, limit: int) -> list[ActivityEvent]:
        """Fetch the most recent activity events."""
        url = f"{self.base_url}/events/recent?limit={int(limit)}"
        data = self._fetch_json(url, "activity")
        try:
            return [ActivityEvent.from_dict(item) for item in data.get("activity") or []]
        except (TypeError, ValueError, AttributeError) as exc:
            raise AnalyticsClientError(f"failed to decode response: {exc}") from exc