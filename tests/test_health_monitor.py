import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest
import requests
import responses
from pymongo.errors import PyMongoError

from registrystats.health_monitor import HealthCheckConfig, HealthMonitor, get_percentile

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _matches(doc, query):
    for key, cond in (query or {}).items():
        value = doc.get(key)
        if isinstance(cond, dict):
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
        elif value != cond:
            return False
    return True


class FakeCollection:
    def __init__(self, fail_indexes=False):
        self.docs = []
        self.indexes = []
        self.fail_indexes = fail_indexes
        self._lock = threading.Lock()

    def create_indexes(self, models):
        if self.fail_indexes:
            raise PyMongoError("boom")
        self.indexes.extend(models)
        return ["ix"] * len(models)

    def find_one(self, query):
        with self._lock:
            for doc in self.docs:
                if _matches(doc, query):
                    return dict(doc)
        return None

    def find(self, query=None, projection=None, sort=None):
        with self._lock:
            found = [dict(doc) for doc in self.docs if _matches(doc, query)]
        for key, direction in reversed(sort or []):
            found.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return iter(found)

    def insert_one(self, doc):
        with self._lock:
            self.docs.append(dict(doc))

    def update_one(self, query, update, upsert=False):
        with self._lock:
            for doc in self.docs:
                if _matches(doc, query):
                    doc.update(update.get("$set", {}))
                    return
            if upsert:
                new = {k: v for k, v in query.items() if not isinstance(v, dict)}
                new.update(update.get("$set", {}))
                self.docs.append(new)


class FakeDatabase:
    def __init__(self, **collections):
        self.collections = dict(collections)

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


def make_monitor(clock=None, **kwargs):
    db = FakeDatabase()
    options = {"now": lambda: NOW}
    if clock is not None:
        options["clock"] = clock
    options.update(kwargs)
    return db, HealthMonitor(db, **options)


def test_get_percentile_empty():
    assert get_percentile([], 50) == 0


def test_get_percentile_picks_floor_index():
    values = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0]
    assert get_percentile(values, 50) == values[4]
    assert get_percentile(values, 99) == values[8]
    assert get_percentile(values, 100) == values[-1]


def test_indexes_created_on_init():
    db, _ = make_monitor()
    assert len(db["server_health"].indexes) == 2
    assert len(db["response_times"].indexes) == 2


def test_index_failure_is_logged(caplog):
    db = FakeDatabase(server_health=FakeCollection(fail_indexes=True))
    with caplog.at_level(logging.WARNING):
        HealthMonitor(db, now=lambda: NOW)
    assert "Failed to create health indexes" in caplog.text


def test_register_health_check_defaults():
    config = HealthCheckConfig("srv", "http://localhost/health")
    assert config.timeout == 10.0
    assert config.status == "unknown"


@pytest.mark.parametrize("code, expected", [(200, "healthy"), (404, "degraded"), (503, "down")])
def test_check_status_by_http_code(code, expected):
    db, monitor = make_monitor()
    config = HealthCheckConfig("srv", "http://localhost/health")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/health", status=code)
        status = monitor.check_server_health(config)
    assert status == expected
    stored = db["server_health"].find_one({"server_id": "srv"})
    assert stored["status"] == expected
    assert stored["message"] == f"HTTP {code}"
    assert stored["last_health_check"] == NOW
    times = db["response_times"].docs
    assert [doc["endpoint"] for doc in times] == ["srv"]


def test_slow_response():
    ticks = iter([0.0, 2.0])
    db, monitor = make_monitor(clock=lambda: next(ticks))
    config = HealthCheckConfig("srv", "http://localhost/health")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/health", status=200)
        status = monitor.check_server_health(config)
    assert status == "slow"
    stored = db["server_health"].find_one({"server_id": "srv"})
    assert stored["message"] == "HTTP 200 (slow response)"
    assert stored["response_time"] == 2000.0


def test_connection_error_is_down():
    db, monitor = make_monitor()
    config = HealthCheckConfig("srv", "http://localhost/health")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/health", body=requests.ConnectionError("refused"))
        status = monitor.check_server_health(config)
    assert status == "down"
    assert "refused" in db["server_health"].find_one({"server_id": "srv"})["message"]


def test_invalid_url_is_error():
    db, monitor = make_monitor()
    status = monitor.check_server_health(HealthCheckConfig("srv", "not a url"))
    assert status == "error"
    stored = db["server_health"].find_one({"server_id": "srv"})
    assert stored["response_time"] == 0.0


def test_availability_follows_previous_status():
    db, monitor = make_monitor()
    config = HealthCheckConfig("srv", "http://localhost/health")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/health", status=200)
        rsps.add(responses.GET, "http://localhost/health", status=200)
        monitor.check_server_health(config)
        first = db["server_health"].find_one({"server_id": "srv"})["availability"]
        monitor.check_server_health(config)
        second = db["server_health"].find_one({"server_id": "srv"})["availability"]
    assert first == 0.0
    assert second == 99.9
    assert len(db["server_health"].docs) == 1


def test_perform_health_checks_covers_all_servers():
    db, monitor = make_monitor()
    monitor.register_health_check("a", "http://localhost/a")
    monitor.register_health_check("b", "http://localhost/b")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/a", status=200)
        rsps.add(responses.GET, "http://localhost/b", status=500)
        result = monitor.perform_health_checks()
    assert result == {"a": "healthy", "b": "down"}
    assert {doc["server_id"] for doc in db["server_health"].docs} == {"a", "b"}


def test_perform_health_checks_without_servers():
    _, monitor = make_monitor()
    assert monitor.perform_health_checks() == {}


def test_start_runs_initial_check_and_stop():
    db, monitor = make_monitor(check_interval=3600)
    monitor.register_health_check("srv", "http://localhost/health")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "http://localhost/health", status=200)
        monitor.start()
        deadline = threading.Event()
        for _ in range(200):
            if db["server_health"].find_one({"server_id": "srv"}):
                break
            deadline.wait(0.01)
        monitor.stop()
    assert db["server_health"].find_one({"server_id": "srv"})["status"] == "healthy"


def test_server_health_unknown_default():
    _, monitor = make_monitor()
    health = monitor.get_server_health("missing")
    assert health.server_id == "missing"
    assert health.status == "unknown"
    assert health.availability == 0


def test_server_health_from_stored_document():
    db, monitor = make_monitor()
    db["server_health"].insert_one(
        {"server_id": "srv", "status": "degraded", "availability": 75.0, "message": "HTTP 404"}
    )
    health = monitor.get_server_health("srv")
    assert health.status == "degraded"
    assert health.availability == 75.0


def test_uptime_defaults_without_data():
    _, monitor = make_monitor()
    assert monitor.get_uptime_percentage() == 99.9


def test_uptime_averages_availability():
    db, monitor = make_monitor()
    for server_id in ("a", "b"):
        db["server_health"].insert_one({"server_id": server_id, "availability": 75.0})
    assert monitor.get_uptime_percentage() == 75.0


def test_percentiles_without_data():
    _, monitor = make_monitor()
    assert monitor.get_response_time_percentiles("", timedelta(hours=24)) == (0.0, 0.0, 0.0)


def test_percentiles_respect_period_and_endpoint():
    db, monitor = make_monitor()
    coll = db["response_times"]
    for value in (30.0, 10.0, 20.0):
        coll.insert_one({"endpoint": "/a", "response_time": value, "timestamp": NOW})
    coll.insert_one({"endpoint": "/a", "response_time": 9000.0, "timestamp": NOW - timedelta(days=3)})
    coll.insert_one({"endpoint": "/b", "response_time": 5000.0, "timestamp": NOW})

    p50, p90, p99 = monitor.get_response_time_percentiles("/a", timedelta(hours=24))
    assert p50 == 20.0
    assert p90 == p99 == 20.0
    assert p50 <= p90 <= p99

    _, _, p99_all = monitor.get_response_time_percentiles("", timedelta(hours=24))
    assert p99_all == 30.0


def test_track_endpoint_response_records_milliseconds():
    db, monitor = make_monitor()
    thread = monitor.track_endpoint_response("/v0/servers", timedelta(milliseconds=250))
    thread.join()
    docs = db["response_times"].docs
    assert docs == [{"endpoint": "/v0/servers", "response_time": 250.0, "timestamp": NOW}]