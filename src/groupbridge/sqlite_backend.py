from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass
class IdentityRow:
    address: str
    inbox_id: str
    installation_id: str
    registered: bool


class SQLiteBackend:
    """Owns the per-identity SQLite file and applies local store migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        try:
            self._conn.row_factory = sqlite3.Row
            self._configure()
            self._apply_migrations()
        except Exception:
            self._conn.close()
            raise

    def close(self) -> None:
        self._conn.close()

    def load_identity(self, address: str) -> IdentityRow | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT address, inbox_id, installation_id, registered FROM identity WHERE address=?",
                (address,),
            ).fetchone()
        if row is None:
            return None
        return IdentityRow(
            address=row["address"],
            inbox_id=row["inbox_id"],
            installation_id=row["installation_id"],
            registered=bool(row["registered"]),
        )

    def save_identity(self, identity: IdentityRow) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO identity (address, inbox_id, installation_id, registered)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET registered=excluded.registered
                """,
                (identity.address, identity.inbox_id, identity.installation_id, int(identity.registered)),
            )

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute("PRAGMA user_version = 1")
        elif user_version != 1:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS identity (
                address TEXT PRIMARY KEY,
                inbox_id TEXT NOT NULL,
                installation_id TEXT NOT NULL,
                registered INTEGER NOT NULL DEFAULT 0
            )
            """
        )
