"""Persistencia SQLite para configuracion y sesiones de carga."""

from __future__ import annotations

import json
import sqlite3
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from hashlib import sha256
from pathlib import Path
from typing import Any

import pandas as pd

from glucolink.model import UploadEvent
from glucolink.upload import DEFAULT_SOURCE, ProgressSink, SessionManifest, UploadClient

CLIENT_VERSION = "0.1.0"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS upload_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    group_id TEXT NOT NULL,
    source TEXT NOT NULL,
    device_id TEXT NOT NULL,
    manifest TEXT NOT NULL,
    events_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS uploaded_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    event_hash TEXT NOT NULL,
    type TEXT NOT NULL,
    device_time TEXT,
    time TEXT,
    value REAL,
    units TEXT,
    payload TEXT NOT NULL,
    FOREIGN KEY(session_id) REFERENCES upload_sessions(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_uploaded_events_hash
ON uploaded_events(event_hash);
"""

EVENT_COLUMNS = ["type", "device_time", "time", "value", "units", "payload"]


@dataclass(frozen=True)
class AppConfig:
    """Configuracion persistida del driver."""

    timezone: str
    group_id: str
    version: str
    connect_timeout_seconds: float
    bluetooth_id: str


@dataclass(frozen=True)
class UploadReceipt:
    """Outcome of storing one upload session."""

    session_id: int | None
    new_events: int
    duplicate_events: int


class SQLiteStore:
    """Repositorio SQLite para configuracion y eventos subidos."""

    def __init__(self, db_path: Path) -> None:
        """Create store and ensure schema exists."""
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def load_config(self) -> AppConfig:
        """Devuelve configuracion guardada o defaults."""
        defaults = _default_config()
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM app_config").fetchall()
        values = {row["key"]: row["value"] for row in rows}
        merged = {**defaults, **values}
        return AppConfig(
            timezone=merged["timezone"],
            group_id=merged["group_id"],
            version=merged["version"],
            connect_timeout_seconds=_parse_float(
                merged["connect_timeout_seconds"],
                float(defaults["connect_timeout_seconds"]),
            ),
            bluetooth_id=merged["bluetooth_id"],
        )

    def save_config(self, config: AppConfig) -> None:
        """Guarda la configuracion en tabla key/value."""
        payload = {
            "timezone": config.timezone,
            "group_id": config.group_id,
            "version": config.version,
            "connect_timeout_seconds": str(config.connect_timeout_seconds),
            "bluetooth_id": config.bluetooth_id,
        }
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO app_config(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                payload.items(),
            )
            conn.commit()

    def save_upload_session(
        self,
        events: Sequence[UploadEvent],
        manifest: SessionManifest,
        *,
        group_id: str,
        source: str,
    ) -> UploadReceipt:
        """Store a session and its events not seen before.

        Events already stored by an earlier session are skipped; if none are
        new, no session row is written.
        """
        created_at = datetime.now().isoformat(timespec="seconds")
        rows = _rows_from_events(events)
        with self._connect() as conn:
            existing_hashes = _existing_hashes(conn, [row[0] for row in rows])
            new_rows = [row for row in rows if row[0] not in existing_hashes]
            duplicates = len(rows) - len(new_rows)
            if not new_rows:
                return UploadReceipt(None, 0, duplicates)

            cur = conn.execute(
                """
                INSERT INTO upload_sessions(
                    created_at, group_id, source, device_id, manifest, events_count
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    created_at,
                    group_id,
                    source,
                    manifest.device_id,
                    json.dumps(manifest.to_payload()),
                    len(new_rows),
                ),
            )
            session_id = int(cur.lastrowid)
            conn.executemany(
                """
                INSERT INTO uploaded_events(
                    session_id, event_hash, type, device_time, time, value,
                    units, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [(session_id, *row) for row in new_rows],
            )
            conn.commit()
        return UploadReceipt(session_id, len(new_rows), duplicates)

    def load_session_manifest(self, session_id: int) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT manifest FROM upload_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["manifest"])

    def load_session_dataframe(self, session_id: int) -> pd.DataFrame:
        """Carga los eventos de una sesion como DataFrame."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT type, device_time, time, value, units, payload
                FROM uploaded_events
                WHERE session_id = ?
                ORDER BY id
                """,
                (session_id,),
            ).fetchall()

        records = [dict(row) for row in rows]
        out = pd.DataFrame(records)
        if out.empty:
            return pd.DataFrame(columns=EVENT_COLUMNS)
        out["payload"] = out["payload"].map(json.loads)
        out["time"] = pd.to_datetime(out["time"], errors="coerce", utc=True)
        return out

    def latest_session_id(self) -> int | None:
        """Obtiene id de la sesion mas reciente."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM upload_sessions ORDER BY id DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return int(row["id"])


class SQLiteUploadClient(UploadClient):
    """Upload client that writes sessions to a local SQLite store."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    async def submit(
        self,
        events: Sequence[UploadEvent],
        manifest: SessionManifest,
        progress: ProgressSink,
        group_id: str,
        source: str = DEFAULT_SOURCE,
    ) -> UploadReceipt:
        progress(50)
        return self._store.save_upload_session(
            events, manifest, group_id=group_id, source=source
        )


def _default_config() -> dict[str, str]:
    return {
        "timezone": "UTC",
        "group_id": "",
        "version": CLIENT_VERSION,
        "connect_timeout_seconds": "10.0",
        "bluetooth_id": "",
    }


def _parse_float(raw: str, default: float) -> float:
    try:
        return float(raw)
    except ValueError:
        return default


def _rows_from_events(events: Sequence[UploadEvent]) -> list[tuple[object, ...]]:
    """Build event rows keyed by payload hash and occurrence within the batch.

    Identical payloads in one batch are distinct readings and get distinct keys.
    """
    out: list[tuple[object, ...]] = []
    occurrences: Counter[str] = Counter()
    for event in events:
        payload = event.to_payload()
        encoded = json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str)
        occurrences[encoded] += 1
        out.append(
            (
                _event_hash(f"{encoded}#{occurrences[encoded]}"),
                payload["type"],
                payload.get("deviceTime"),
                payload.get("time"),
                payload.get("value"),
                payload.get("units"),
                encoded,
            )
        )
    return out


def _event_hash(encoded: str) -> str:
    return sha256(encoded.encode("utf-8")).hexdigest()


def _existing_hashes(conn: sqlite3.Connection, hashes: list[object]) -> set[str]:
    valid_hashes = [h for h in hashes if isinstance(h, str)]
    if not valid_hashes:
        return set()
    placeholders = ",".join("?" for _ in valid_hashes)
    rows = conn.execute(
        f"SELECT event_hash FROM uploaded_events WHERE event_hash IN ({placeholders})",
        tuple(valid_hashes),
    ).fetchall()
    return {str(row["event_hash"]) for row in rows if row["event_hash"]}
