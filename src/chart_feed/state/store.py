from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from chart_feed.core.errors import AuthenticationRequiredError

API_KEY_KEY = "oa_apikey"


class SQLiteCredentialStore:
    """Client-side persistent key/value store holding the backend API key."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def _connect(self, *, timeout: float = 5.0) -> Iterator[sqlite3.Connection]:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self._db_path, timeout=timeout)
        try:
            yield connection
        finally:
            connection.close()

    def _initialize(self) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            connection.commit()

    def get_api_key(self) -> str | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT value FROM credentials WHERE key = ?",
                (API_KEY_KEY,),
            ).fetchone()
        if row is None:
            return None
        value = str(row[0]).strip()
        return value or None

    def require_api_key(self) -> str:
        api_key = self.get_api_key()
        if api_key is None:
            raise AuthenticationRequiredError("No API key stored; log in first")
        return api_key

    def set_api_key(self, api_key: str) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO credentials(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (API_KEY_KEY, api_key.strip()),
            )
            connection.commit()

    def clear(self) -> None:
        with self._connect() as connection:
            connection.execute("DELETE FROM credentials WHERE key = ?", (API_KEY_KEY,))
            connection.commit()

    def is_authenticated(self) -> bool:
        return self.get_api_key() is not None
