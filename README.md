# registrystats

Analytics for a server registry: records for server stats, feedback and
analytics figures; an expiring in-memory cache; an HTTP client for a
remote analytics service; health checks of registered servers; growth
and trending calculations; and a MongoDB store for metrics, API calls,
activity, searches, time series, categories and milestones.

MongoDB is reached through `pymongo`, HTTP through `requests`.

## Installation

```
pip install registrystats
```

With the test dependencies:

```
pip install "registrystats[test]"
```

## Modules

- `registrystats.models` – server stats and feedback records
  (`ServerStats`, `ServerFeedback`, `AggregatedStats`, `GlobalStats`,
  `RatingRequest`, `InstallRequest`, `ClaimRequest`, `FeedbackResponse`,
  ...), the enums `FeedbackSortOrder` and `LeaderboardType`, and the
  source names `SOURCE_REGISTRY` and `SOURCE_COMMUNITY`.
- `registrystats.analytics_models` – analytics records such as
  `AnalyticsMetrics`, `APICallMetrics`, `ActivityEvent`, `SearchAnalytics`,
  `TrendingServer`, `GrowthMetrics`, `MilestoneEvent`, `DashboardMetrics`
  and `DataPoint`. Records have `to_dict()` and `from_dict()`; timestamps
  stay `datetime` objects in documents and RFC 3339 strings are accepted
  when reading. Fields marked as optional are left out of a document when
  empty.
- `registrystats.cache` – `CacheService`, a thread-safe cache whose
  entries expire after a fixed time to live, with a background thread
  that purges expired entries.
- `registrystats.analytics_client` – `AnalyticsClient`, an HTTP client
  for the analytics service, returning `ServerAnalyticsMetrics`,
  `DashboardMetrics` and `ActivityEvent` records and raising
  `AnalyticsClientError` on failure.
- `registrystats.health_monitor` – `HealthMonitor`, which polls
  registered health URLs, records status and response times, and reports
  response-time percentiles and uptime; also `get_percentile`.
- `registrystats.trends` – `period_window`, `momentum_start`,
  `classify_trend`, `GrowthCalculator` and `TrendingCalculator`.
- `registrystats.analytics_database` – `AnalyticsDatabase`, the MongoDB
  store, raising `AnalyticsDatabaseError` when a database operation fails.

## Examples

Caching a value:

```python
from registrystats.cache import CacheService

with CacheService(ttl=60.0) as cache:
    cache.set("top-servers", ["alpha", "beta"])
    try:
        servers = cache.get("top-servers")
    except KeyError:
        servers = None  # missing or expired
```

Fetching metrics from the analytics service:

```python
from registrystats.analytics_client import AnalyticsClient, AnalyticsClientError

with AnalyticsClient("https://analytics.example.com/api") as client:
    try:
        metrics = client.get_server_metrics("io.example/server")
        print(metrics.active_installs, metrics.monthly_active_users)
        batch = client.get_batch_server_metrics(["a", "b"])
    except AnalyticsClientError as exc:
        print("analytics unavailable:", exc)
```

`monthly_active_users` is estimated as thirty times the daily figure.
`get_batch_server_metrics` uses the batch endpoint and, if that fails,
falls back to one request per server, leaving out servers whose request
fails. The client sends HTTP basic authentication when
`MCP_REGISTRY_ANALYTICS_USER` and `MCP_REGISTRY_ANALYTICS_PASS` are set,
falling back to `ANALYTICS_API_USERNAME` and `ANALYTICS_API_PASSWORD`.

Monitoring server health:

```python
from pymongo import MongoClient
from registrystats.health_monitor import HealthMonitor

database = MongoClient("mongodb://localhost:27017")["registry"]
with HealthMonitor(database, check_interval=300) as monitor:
    monitor.register_health_check("alpha", "https://alpha.example.com/health")
    print(monitor.perform_health_checks())  # {"alpha": "healthy"} or another status
    p50, p90, p99 = monitor.get_response_time_percentiles("", 24 * 3600)
```

A check is `healthy`, `slow` (over one second), `degraded` (HTTP 4xx),
`down` (HTTP 5xx or no connection) or `error` (an unusable URL).
`start()` runs checks every interval in a background thread; `stop()`
ends it.

Recording analytics in MongoDB:

```python
from pymongo import MongoClient
from registrystats.analytics_database import AnalyticsDatabase

database = MongoClient("mongodb://localhost:27017")["registry"]
with AnalyticsDatabase(database) as analytics:
    analytics.track_api_call("/v0/servers", "GET", 12.5, False)
    analytics.track_search("postgres", 4)
    growth = analytics.get_growth_metrics("installs", "week")
    print(growth.growth_rate, growth.trend)
    print(analytics.calculate_trending(10))
```

By default `AnalyticsDatabase` creates a `HealthMonitor` on the same
database and starts it; pass `monitor=False` to go without one, or
`health_monitor=` to supply your own. Growth periods are `day`, `week`,
`month` and `year`; any other value means the last seven days. Growth
metrics are `installs`, `users`, `api_calls`, `servers`, `ratings` and
`searches`; any other raises `ValueError`.

## Limitations

- There is no store for per-server stats or for feedback: `ServerStats`,
  `ServerFeedback` and the related records are data types only, and
  install counting, rating averages, feedback pagination and stats
  transfer between sources are not provided.
- There is no HTTP server or command-line program; the package is a
  library.
- `get_analytics_metrics` reports fixed quality figures (average rating
  4.2, 150 ratings, 25 five-star servers) rather than aggregating them.
- `get_time_series` returns stored points as they are; its `interval`
  argument does not regroup them.