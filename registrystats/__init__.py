"""Analytics records, caching, health monitoring, growth and trending for a server registry."""

__version__ = "0.1.0"

__all__ = [
    "analytics_client",
    "analytics_database",
    "analytics_models",
    "cache",
    "health_monitor",
    "models",
    "trends",
]