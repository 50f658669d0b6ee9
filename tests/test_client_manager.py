import logging
import threading
import time

import pytest

from clickstudio.core.errors import PoolError
from clickstudio.services.client_manager import (
    ClientManager,
    ConnectionConfig,
    config_fingerprint,
    run_idle_cleanup,
)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    def __init__(self, config: ConnectionConfig, *, fail_close: bool = False) -> None:
        self.config = config
        self.fail_close = fail_close
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        if self.fail_close:
            raise RuntimeError("socket already gone")


class FakeFactory:
    def __init__(self, *, fail_close_for: set[str] | None = None, delay: float = 0.0) -> None:
        self.calls: list[ConnectionConfig] = []
        self.fail_close_for = fail_close_for or set()
        self.delay = delay
        self._lock = threading.Lock()

    def __call__(self, config: ConnectionConfig) -> FakeClient:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append(config)
        return FakeClient(config, fail_close=config.url in self.fail_close_for)


BASE = {"url": "http://ch1:8123", "username": "default", "password": "s3cret", "database": "analytics"}


def test_field_equal_configs_share_one_client():
    factory = FakeFactory()
    manager = ClientManager(factory)

    first = manager.get_client(ConnectionConfig(**BASE))
    # Different object, different key order, built through a mapping.
    second = manager.get_client({"database": "analytics", "password": "s3cret", "username": "default", "url": "http://ch1:8123"})

    assert first is second
    assert len(factory.calls) == 1
    assert len(manager) == 1


def test_fingerprint_ignores_object_identity_and_key_order():
    a = config_fingerprint(ConnectionConfig(**BASE))
    b = config_fingerprint(dict(reversed(list(BASE.items()))))
    assert a == b


@pytest.mark.parametrize(
    "field,value",
    [
        ("url", "http://ch2:8123"),
        ("username", "reporting"),
        ("password", "rotated"),
        ("database", "default"),
    ],
)
def test_any_semantic_field_change_creates_a_new_client(field, value):
    factory = FakeFactory()
    manager = ClientManager(factory)

    original = manager.get_client(ConnectionConfig(**BASE))
    changed = manager.get_client(ConnectionConfig(**{**BASE, field: value}))

    assert original is not changed
    assert len(factory.calls) == 2
    assert len(manager) == 2


def test_cleanup_closes_client_idle_past_threshold():
    clock = FakeClock()
    manager = ClientManager(FakeFactory(), idle_timeout_sec=600, clock=clock)
    client = manager.get_client(ConnectionConfig(**BASE))

    clock.advance(10 * 60 + 1)

    assert manager.cleanup() == 1
    assert client.close_calls == 1
    assert len(manager) == 0


def test_cleanup_keeps_recently_used_client():
    clock = FakeClock()
    manager = ClientManager(FakeFactory(), idle_timeout_sec=600, clock=clock)
    client = manager.get_client(ConnectionConfig(**BASE))

    clock.advance(5 * 60)

    assert manager.cleanup() == 0
    assert client.close_calls == 0
    assert len(manager) == 1


def test_cleanup_boundary_is_strict():
    clock = FakeClock()
    manager = ClientManager(FakeFactory(), idle_timeout_sec=600, clock=clock)
    client = manager.get_client(ConnectionConfig(**BASE))

    clock.advance(600)
    assert manager.cleanup() == 0
    assert client.close_calls == 0

    clock.advance(0.001)
    assert manager.cleanup() == 1
    assert client.close_calls == 1


def test_get_client_refreshes_last_used():
    clock = FakeClock()
    factory = FakeFactory()
    manager = ClientManager(factory, idle_timeout_sec=600, clock=clock)
    client = manager.get_client(ConnectionConfig(**BASE))

    clock.advance(500)
    assert manager.get_client(ConnectionConfig(**BASE)) is client
    clock.advance(500)

    assert manager.cleanup() == 0
    assert client.close_calls == 0
    assert len(factory.calls) == 1


def test_cleanup_continues_after_close_failure(caplog):
    clock = FakeClock()
    factory = FakeFactory(fail_close_for={"http://bad:8123"})
    manager = ClientManager(factory, idle_timeout_sec=600, clock=clock)
    bad = manager.get_client(ConnectionConfig(**{**BASE, "url": "http://bad:8123"}))
    good = manager.get_client(ConnectionConfig(**BASE))

    clock.advance(601)
    with caplog.at_level(logging.ERROR, logger="client-manager"):
        assert manager.cleanup() == 2

    assert bad.close_calls == 1
    assert good.close_calls == 1
    assert len(manager) == 0
    assert "Failed to close idle client" in caplog.text


def test_close_all_empties_pool():
    factory = FakeFactory()
    manager = ClientManager(factory)
    clients = [
        manager.get_client(ConnectionConfig(**{**BASE, "database": f"db{i}"}))
        for i in range(3)
    ]

    assert manager.close_all() == 3
    assert len(manager) == 0
    assert all(c.close_calls == 1 for c in clients)


def test_close_all_aggregates_failures():
    factory = FakeFactory(fail_close_for={"http://bad1:8123", "http://bad2:8123"})
    manager = ClientManager(factory)
    bad1 = manager.get_client(ConnectionConfig(**{**BASE, "url": "http://bad1:8123"}))
    good = manager.get_client(ConnectionConfig(**BASE))
    bad2 = manager.get_client(ConnectionConfig(**{**BASE, "url": "http://bad2:8123"}))

    with pytest.raises(PoolError) as excinfo:
        manager.close_all()

    assert len(excinfo.value.failures) == 2
    assert excinfo.value.status_code == 502
    # Every client was attempted and the pool is empty regardless.
    assert bad1.close_calls == good.close_calls == bad2.close_calls == 1
    assert len(manager) == 0


def test_concurrent_cold_start_builds_one_client():
    factory = FakeFactory(delay=0.05)
    manager = ClientManager(factory)
    barrier = threading.Barrier(8)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        client = manager.get_client(ConnectionConfig(**BASE))
        with results_lock:
            results.append(client)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(results) == 8
    assert len(factory.calls) == 1
    assert all(r is results[0] for r in results)


def test_factory_error_propagates_and_is_not_cached():
    attempts = []

    def flaky_factory(config):
        attempts.append(config)
        if len(attempts) == 1:
            raise ConnectionRefusedError("connection refused")
        return FakeClient(config)

    manager = ClientManager(flaky_factory)

    with pytest.raises(PoolError) as excinfo:
        manager.get_client(ConnectionConfig(**BASE))
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)
    assert len(manager) == 0

    client = manager.get_client(ConnectionConfig(**BASE))
    assert isinstance(client, FakeClient)
    assert len(attempts) == 2


def test_failed_builds_do_not_leave_locks_behind():
    def refusing_factory(config):
        raise ConnectionRefusedError("connection refused")

    manager = ClientManager(refusing_factory)
    for attempt in range(50):
        with pytest.raises(PoolError):
            manager.get_client(ConnectionConfig(**{**BASE, "password": f"guess-{attempt}"}))
    assert len(manager) == 0
    assert manager._building == {}


def test_stats_reports_pool_size_and_idle_time():
    clock = FakeClock()
    manager = ClientManager(FakeFactory(), idle_timeout_sec=600, clock=clock)
    manager.get_client(ConnectionConfig(**BASE))
    clock.advance(42)

    stats = manager.stats()
    assert stats == {"clients": 1, "idleTimeoutSec": 600.0, "maxIdleSec": 42.0}


def test_connection_config_repr_hides_password():
    assert "s3cret" not in repr(ConnectionConfig(**BASE))


def test_idle_cleanup_loop_stops_on_event():
    calls = []

    class RecordingManager:
        def cleanup(self):
            calls.append(1)
            return 0

    stop_event = threading.Event()
    stop_event.set()
    # A pre-set stop event exits before the first cycle.
    run_idle_cleanup(RecordingManager(), stop_event, interval_sec=1)
    assert calls == []
