"""Event sinks that mirror sealed audit records into a time-series backend."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import requests

from app.core.config import settings

_logger = logging.getLogger(__name__)


def _encode(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), sort_keys=True, default=str)


class EventSink(Protocol):
    """Destination for audit events once they are sealed and stored."""

    def publish(self, event: dict) -> None:  # pragma: no cover - interface
        ...

    def flush(self) -> None:  # pragma: no cover - interface
        ...

    def close(self) -> None:  # pragma: no cover - interface
        ...


class NullEventSink:
    """Discards audit events (``off``, ``none`` or ``disabled``)."""

    def publish(self, event: dict) -> None:
        return None

    def flush(self) -> None:
        return None

    def close(self) -> None:
        return None


class FileEventSink:
    """One JSON line per audit event; optionally one file per UTC day."""

    def __init__(self, path: str | Path, *, rotate_daily: bool = False) -> None:
        self._base = Path(path)
        self._base.parent.mkdir(parents=True, exist_ok=True)
        self._rotate_daily = rotate_daily
        self._lock = threading.Lock()

    def current_path(self, now: datetime | None = None) -> Path:
        if not self._rotate_daily:
            return self._base
        stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
        return self._base.with_name(f"{self._base.stem}-{stamp}{self._base.suffix}")

    def publish(self, event: dict) -> None:
        line = _encode(event) + "\n"
        with self._lock, self.current_path().open("a", encoding="utf-8") as handle:
            handle.write(line)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        return None


class ClickHouseEventSink:
    """Batches audit events into ClickHouse through its HTTP interface."""

    def __init__(
        self,
        url: str,
        table: str,
        *,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        batch_size: int = 25,
        max_pending: int = 1000,
        session: requests.Session | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._table = table
        self._database = database
        self._batch_size = max(batch_size, 1)
        self._max_pending = max(max_pending, self._batch_size)
        self._auth = (user, password) if user and password else None
        self._rows: list[str] = []
        self._lock = threading.Lock()
        self._session = session or requests.Session()

    @property
    def pending(self) -> int:
        return len(self._rows)

    def _qualified_table(self) -> str:
        if self._database and "." not in self._table:
            return f"{self._database}.{self._table}"
        return self._table

    def publish(self, event: dict) -> None:
        row = {
            "event_time": event.get("created_at"),
            "audit_event_id": event.get("audit_event_id"),
            "action_type": event.get("action_type"),
            "repository": event.get("repository"),
            "payload": _encode(event),
        }
        with self._lock:
            self._rows.append(json.dumps(row, separators=(",", ":"), default=str))
            overflow = len(self._rows) - self._max_pending
            if overflow > 0:
                # Oldest rows go first; Redis keeps the full audit log.
                del self._rows[:overflow]
                _logger.warning("ClickHouse backlog full; dropped %d oldest audit row(s)", overflow)
            if len(self._rows) >= self._batch_size:
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def close(self) -> None:
        self.flush()
        self._session.close()

    def _flush_locked(self) -> None:
        if not self._rows:
            return
        body = "\n".join(self._rows)
        query = f"INSERT INTO {self._qualified_table()} FORMAT JSONEachRow\n{body}\n"
        response = self._session.post(
            self._url,
            data=query.encode("utf-8"),
            auth=self._auth,
            headers={"Content-Type": "application/json"},
            timeout=30,
        )
        if response.status_code >= 400:
            raise RuntimeError(f"ClickHouse insert failed ({response.status_code}): {response.text}")
        self._rows.clear()


def sink_from_settings() -> EventSink:
    """Build the audit mirror sink selected by ``REMEDIATION_TIMESERIES_BACKEND``."""

    backend = settings.timeseries_backend.lower().strip()
    if backend == "file":
        return FileEventSink(settings.timeseries_path, rotate_daily=settings.timeseries_rotate_daily)
    if backend == "clickhouse":
        if not (settings.clickhouse_url and settings.timeseries_table):
            raise ValueError(
                "ClickHouse backend requires REMEDIATION_CLICKHOUSE_URL and REMEDIATION_TIMESERIES_TABLE"
            )
        return ClickHouseEventSink(
            url=settings.clickhouse_url,
            table=settings.timeseries_table,
            database=settings.clickhouse_database,
            user=settings.clickhouse_user,
            password=settings.clickhouse_password,
            batch_size=settings.timeseries_batch_size,
            max_pending=settings.timeseries_max_pending,
        )
    if backend in {"off", "none", "disabled"}:
        return NullEventSink()
    raise ValueError(f"Unsupported timeseries backend: {settings.timeseries_backend}")
