"""
Process-wide pool of live ClickHouse clients.

Clients are keyed by a fingerprint of the semantic connection fields
(url, username, password, database), so equal configurations share one
client regardless of how the config object was built. Construction is
single-flight per fingerprint: concurrent callers with a cold cache wait
for the one factory call instead of building a second client. Idle
clients are evicted by ``cleanup()``, which a background thread runs on a
fixed interval.

The manager is constructed by ``create_app`` and kept on ``app.state``;
tests build their own instances with a fake factory and clock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import clickhouse_connect

from ..core.errors import PoolError, log_exception

DEFAULT_IDLE_TIMEOUT_SEC = 10 * 60
DEFAULT_CLEANUP_INTERVAL_SEC = 5 * 60

logger = logging.getLogger("client-manager")


@dataclass(frozen=True)
class ConnectionConfig:
    url: str
    username: str
    password: str = ""
    database: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConnectionConfig":
        return cls(
            url=str(data.get("url") or ""),
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
            database=data.get("database") or None,
        )

    def __repr__(self) -> str:
        return f"ConnectionConfig(url={self.url!r}, username={self.username!r}, database={self.database!r})"


ClientFactory = Callable[[ConnectionConfig], Any]


def config_fingerprint(config: ConnectionConfig | Mapping[str, Any]) -> str:
    if not isinstance(config, ConnectionConfig):
        config = ConnectionConfig.from_mapping(config)
    material = json.dumps(
        {
            "url": config.url,
            "username": config.username,
            "password": config.password or "",
            "database": config.database or "",
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def clickhouse_client_factory(
    *,
    request_timeout_sec: int = 300,
    max_result_rows: int = 10000,
    max_result_bytes: int = 10_000_000,
) -> ClientFactory:
    """Build a factory that opens HTTP(S) clients with ``clickhouse_connect``."""

    def _factory(config: ConnectionConfig) -> Any:
        parsed = urlparse(config.url)
        secure = parsed.scheme == "https"
        return clickhouse_connect.get_client(
            host=parsed.hostname or "localhost",
            port=parsed.port or (8443 if secure else 8123),
            username=config.username,
            password=config.password or "",
            database=config.database or "default",
            secure=secure,
            send_receive_timeout=request_timeout_sec,
            settings={
                "max_result_rows": max_result_rows,
                "max_result_bytes": max_result_bytes,
                "result_overflow_mode": "break",
            },
        )

    return _factory


@dataclass
class PooledClient:
    fingerprint: str
    client: Any
    last_used_at: float
    url: str
    username: str


class ClientManager:
    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        *,
        idle_timeout_sec: float = DEFAULT_IDLE_TIMEOUT_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = client_factory or clickhouse_client_factory()
        self.idle_timeout_sec = float(idle_timeout_sec)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, PooledClient] = {}
        self._building: dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _touch(self, key: str) -> Any | None:
        # Caller holds self._lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_used_at = self._clock()
        return entry.client

    def get_client(self, config: ConnectionConfig | Mapping[str, Any]) -> Any:
        if not isinstance(config, ConnectionConfig):
            config = ConnectionConfig.from_mapping(config)
        key = config_fingerprint(config)

        with self._lock:
            client = self._touch(key)
            if client is not None:
                return client
            build_lock = self._building.setdefault(key, threading.Lock())

        with build_lock:
            with self._lock:
                client = self._touch(key)
                if client is not None:
                    return client

            logger.info("No pooled client for %s (user=%s); creating one", config.url, config.username)
            try:
                client = self._factory(config)
            except Exception as exc:
                with self._lock:
                    if self._building.get(key) is build_lock:
                        del self._building[key]
                raise PoolError(f"Failed to create ClickHouse client for {config.url}") from exc

            with self._lock:
                self._entries[key] = PooledClient(
                    fingerprint=key,
                    client=client,
                    last_used_at=self._clock(),
                    url=config.url,
                    username=config.username,
                )
                if self._building.get(key) is build_lock:
                    del self._building[key]
            return client

    def _close_entries(self, entries: list[PooledClient], reason: str) -> list[tuple[str, BaseException]]:
        failures: list[tuple[str, BaseException]] = []
        for entry in entries:
            try:
                entry.client.close()
                logger.info("Closed %s client for %s (user: %s)", reason, entry.url, entry.username)
            except Exception as exc:
                log_exception(
                    logger,
                    f"Failed to close {reason} client",
                    extra={"url": entry.url, "user": entry.username},
                    exc=exc,
                )
                failures.append((f"{entry.url} ({entry.username})", exc))
        return failures

    def cleanup(self) -> int:
        """Close clients unused for strictly longer than the idle timeout."""
        now = self._clock()
        with self._lock:
            stale = [
                entry
                for entry in self._entries.values()
                if now - entry.last_used_at > self.idle_timeout_sec
            ]
            for entry in stale:
                del self._entries[entry.fingerprint]

        failures = self._close_entries(stale, "idle")
        if failures:
            logger.warning("Idle cleanup: %d of %d client(s) failed to close", len(failures), len(stale))
        return len(stale)

    def close_all(self) -> int:
        """Close every pooled client and empty the pool; raises PoolError listing close failures."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()

        failures = self._close_entries(entries, "pooled")
        if failures:
            raise PoolError(
                f"{len(failures)} of {len(entries)} ClickHouse client(s) failed to close",
                failures=failures,
            )
        return len(entries)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            idle = [now - entry.last_used_at for entry in self._entries.values()]
        return {
            "clients": len(idle),
            "idleTimeoutSec": self.idle_timeout_sec,
            "maxIdleSec": round(max(idle), 3) if idle else 0.0,
        }


def run_idle_cleanup(manager: ClientManager, stop_event: threading.Event, interval_sec: float) -> None:
    worker_logger = logging.getLogger("ClientCleanup")
    interval_sec = max(1.0, float(interval_sec))
    worker_logger.info("Client idle cleanup started (interval=%ss)", interval_sec)
    while not stop_event.wait(interval_sec):
        try:
            closed = manager.cleanup()
            if closed:
                worker_logger.info("Evicted %d idle ClickHouse client(s)", closed)
        except Exception as exc:
            worker_logger.exception("Client idle cleanup cycle failed: %s", exc)
    worker_logger.info("Client idle cleanup stopped")
