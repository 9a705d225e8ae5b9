from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from pymongo.errors import PyMongoError

from registrystats.analytics_database import (
    GLOBAL_METRICS_ID,
    REPORTED_AVERAGE_RATING,
    AnalyticsDatabase,
    AnalyticsDatabaseError,
)
from registrystats.analytics_models import ActivityEvent, TimeSeriesData

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def make_db(monitor=None):
    database = defaultdict(MagicMock)
    if monitor is None:
        monitor = MagicMock()
        monitor.get_response_time_percentiles.return_value = (5.0, 9.0, 12.0)
        monitor.get_uptime_percentage.return_value = 98.5
    analytics = AnalyticsDatabase(database, health_monitor=monitor, now=lambda: NOW)
    return analytics, database


def test_metrics_initialized_when_missing():
    analytics, database = make_db()
    database["analytics_metrics"].find_one.return_value = None
    database["activity_events"].count_documents.return_value = 3

    metrics = analytics.get_analytics_metrics("week")

    database["analytics_metrics"].insert_one.assert_called_once_with(
        {"_id": GLOBAL_METRICS_ID, "last_updated": NOW}
    )
    assert metrics.last_updated == NOW
    assert metrics.installs_today == 3
    assert metrics.installs_this_month == 3
    assert metrics.install_velocity == pytest.approx(3 / 24)
    assert metrics.weekly_growth == 0.0
    assert (metrics.response_time_p50, metrics.response_time_p90, metrics.response_time_p99) == (5.0, 9.0, 12.0)
    assert metrics.uptime_percentage == 98.5
    assert metrics.average_rating == REPORTED_AVERAGE_RATING


def test_metrics_today_query_starts_at_midnight():
    analytics, database = make_db()
    database["analytics_metrics"].find_one.return_value = {"_id": GLOBAL_METRICS_ID, "total_installs": 7}
    database["activity_events"].count_documents.return_value = 0

    metrics = analytics.get_analytics_metrics("all")

    first_query = database["activity_events"].count_documents.call_args_list[0].args[0]
    assert first_query == {"type": "install", "timestamp": {"$gte": NOW.replace(hour=0)}}
    assert metrics.total_installs == 7


def test_metrics_lookup_failure_raises():
    analytics, database = make_db()
    database["analytics_metrics"].find_one.side_effect = PyMongoError("down")
    with pytest.raises(AnalyticsDatabaseError):
        analytics.get_analytics_metrics("week")


def test_update_metrics_sets_fields_with_upsert():
    analytics, database = make_db()
    updates = {"active_users": 4}
    analytics.update_analytics_metrics(updates)

    call = database["analytics_metrics"].update_one.call_args
    assert call.args == ({"_id": GLOBAL_METRICS_ID}, {"$set": {"active_users": 4, "last_updated": NOW}})
    assert call.kwargs == {"upsert": True}
    assert updates == {"active_users": 4}


def test_track_new_api_call_uses_duration_as_average():
    analytics, database = make_db()
    database["api_calls"].find_one.return_value = None

    analytics.track_api_call("/v0/servers", "GET", 42.0, True)

    query, update = database["api_calls"].update_one.call_args.args
    assert query == {"endpoint": "/v0/servers", "method": "GET"}
    assert update["$inc"] == {"count": 1, "error_count": 1}
    assert update["$set"]["avg_duration"] == 42.0
    global_update = database["analytics_metrics"].update_one.call_args.args[1]
    assert global_update["$inc"] == {"total_api_calls": 1, "error_count": 1}


def test_track_existing_api_call_updates_running_average():
    analytics, database = make_db()
    database["api_calls"].find_one.return_value = {"endpoint": "/x", "method": "GET", "count": 1, "avg_duration": 10.0}

    analytics.track_api_call("/x", "GET", 20.0, False)

    update = database["api_calls"].update_one.call_args.args[1]
    assert update["$set"]["avg_duration"] == pytest.approx(15.0)
    assert "error_count" not in update["$inc"]


def test_track_api_call_write_failure_raises():
    analytics, database = make_db()
    database["api_calls"].find_one.return_value = None
    database["api_calls"].update_one.side_effect = PyMongoError("boom")
    with pytest.raises(AnalyticsDatabaseError):
        analytics.track_api_call("/x", "GET", 1.0, False)


def test_record_install_activity_bumps_counters():
    analytics, database = make_db()
    event = analytics.record_activity(ActivityEvent(type="install", server_id="srv-1"))

    assert len(event.id) == 24
    int(event.id, 16)
    assert event.timestamp == NOW
    stored = database["activity_events"].insert_one.call_args.args[0]
    assert stored["_id"] == event.id
    assert stored["server_id"] == "srv-1"
    update = database["analytics_metrics"].update_one.call_args.args[1]
    assert update["$inc"] == {"total_installs": 1, "installs_today": 1}


def test_record_other_activity_leaves_metrics_alone():
    analytics, database = make_db()
    analytics.record_activity(ActivityEvent(type="update"))
    assert database["activity_events"].insert_one.call_count == 1
    assert database["analytics_metrics"].update_one.call_count == 0


def test_track_search_records_activity():
    analytics, database = make_db()
    analytics.track_search("weather", 5)

    query, update = database["search_analytics"].update_one.call_args.args
    assert query == {"search_term": "weather"}
    assert update["$inc"] == {"count": 1, "results_found": 5}
    stored = database["activity_events"].insert_one.call_args.args[0]
    assert stored["type"] == "search"
    assert stored["value"] == "weather"
    assert stored["metadata"] == {"results_count": 5}


def test_search_conversion_updates_success_rate():
    analytics, database = make_db()
    database["search_analytics"].find_one.return_value = {"search_term": "git", "count": 4, "installs_from_search": 1}

    analytics.track_search_conversion("git", "srv-1")

    calls = database["search_analytics"].update_one.call_args_list
    assert calls[0].args == ({"search_term": "git"}, {"$inc": {"installs_from_search": 1}})
    assert calls[1].args[1] == {"$set": {"success_rate": pytest.approx(25.0)}}


def test_search_conversion_without_searches_skips_rate():
    analytics, database = make_db()
    database["search_analytics"].find_one.return_value = {"search_term": "git", "count": 0}
    analytics.track_search_conversion("git", "srv-1")
    assert database["search_analytics"].update_one.call_count == 1


def test_recent_activity_filters_by_type():
    analytics, database = make_db()
    database["activity_events"].find.return_value = [{"_id": "a1", "type": "rating", "timestamp": NOW}]

    events = analytics.get_recent_activity(10, "rating")

    assert database["activity_events"].find.call_args.args[0] == {"type": "rating"}
    assert database["activity_events"].find.call_args.kwargs["limit"] == 10
    assert [(e.id, e.type, e.timestamp) for e in events] == [("a1", "rating", NOW)]


def test_recent_activity_without_type_matches_all():
    analytics, database = make_db()
    database["activity_events"].find.return_value = []
    assert analytics.get_recent_activity(5) == []
    assert database["activity_events"].find.call_args.args[0] == {}


def test_time_series_round_trip():
    analytics, database = make_db()
    data = analytics.record_time_series(TimeSeriesData(installs=3, ratings=1))
    stored = database["time_series_data"].insert_one.call_args.args[0]
    assert stored["timestamp"] == NOW

    database["time_series_data"].find.return_value = [stored]
    start, end = NOW - timedelta(days=1), NOW
    points = analytics.get_time_series(start, end, "day")
    assert points == [data]
    assert database["time_series_data"].find.call_args.args[0] == {"timestamp": {"$gte": start, "$lte": end}}


def test_milestones_recorded_once_per_threshold():
    analytics, database = make_db()
    database["analytics_metrics"].find_one.return_value = {"_id": GLOBAL_METRICS_ID, "total_installs": 600}
    database["activity_events"].count_documents.return_value = 0
    database["milestones"].count_documents.side_effect = lambda query: 1 if query["milestone"] == 500 else 0

    recorded = analytics.check_and_record_milestones()

    assert [event.milestone for event in recorded] == [100]
    assert recorded[0].description == "Registry reached 100 total installs!"
    assert database["milestones"].insert_one.call_count == 1


def test_recent_milestones_sorted_by_achievement():
    analytics, database = make_db()
    database["milestones"].find.return_value = [{"_id": "m1", "type": "installs", "milestone": 100}]
    milestones = analytics.get_recent_milestones(3)
    assert [(m.id, m.milestone) for m in milestones] == [("m1", 100)]
    assert database["milestones"].find.call_args.kwargs["sort"] == [("achieved_at", -1)]


def test_growth_metrics_rejects_unknown_metric():
    analytics, _ = make_db()
    with pytest.raises(ValueError):
        analytics.get_growth_metrics("downloads", "week")


def test_trending_with_no_activity_is_empty():
    analytics, database = make_db()
    database["activity_events"].find.return_value = []
    database["stats"].find.return_value = []
    assert analytics.calculate_trending(5) == []


def test_trending_failure_raises():
    analytics, database = make_db()
    database["activity_events"].find.side_effect = PyMongoError("down")
    with pytest.raises(AnalyticsDatabaseError):
        analytics.calculate_trending(5)


def test_category_stats_grouped_and_stored():
    analytics, database = make_db()
    database["stats"].find.return_value = [
        {"server_id": "a", "category": "dev", "install_count": 10, "rating": 4.0},
        {"server_id": "b", "category": "dev", "install_count": 5, "rating": 0},
        {"server_id": "c", "category": "data", "install_count": 2, "rating": 3.0},
    ]

    results = {stats.category: stats for stats in analytics.update_category_stats()}

    assert set(results) == {"dev", "data"}
    assert results["dev"].server_count == 2
    assert results["dev"].total_installs == 15
    assert results["dev"].average_rating == 4.0
    assert database["category_stats"].update_one.call_count == 2

    database["category_stats"].find.return_value = [results["dev"].to_dict()]
    assert analytics.get_category_stats() == [results["dev"]]


def test_index_failures_are_logged(caplog):
    database = defaultdict(MagicMock)
    database["api_calls"].create_indexes.side_effect = PyMongoError("conflict")
    with caplog.at_level("WARNING"):
        AnalyticsDatabase(database, monitor=False, now=lambda: NOW)
    assert "Failed to create API call indexes" in caplog.text
    assert database["activity_events"].create_indexes.call_count == 1