"""Persistence interfaces and implementations for engine state."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from typing import Any, Protocol

from attendtracker.engine.models import Scope, StoreError


class StateStore(Protocol):
    def get(self, scope: Scope, key: str) -> Any | None:
        """Return the stored value or None."""

    def set(self, scope: Scope, key: str, value: Any) -> None:
        """Persist a JSON-serialisable value."""

    def delete(self, scope: Scope, key: str) -> None:
        """Remove a key if present."""

    def keys(self, scope: Scope, prefix: str = "") -> list[str]:
        """List keys in scope starting with prefix."""


@dataclass
class InMemoryStateStore:
    def __post_init__(self) -> None:
        self._scopes: dict[Scope, dict[str, Any]] = {Scope.SYNC: {}, Scope.LOCAL: {}}

    def get(self, scope: Scope, key: str) -> Any | None:
        value = self._scopes[scope].get(key)
        return copy.deepcopy(value)

    def set(self, scope: Scope, key: str, value: Any) -> None:
        self._scopes[scope][key] = copy.deepcopy(value)

    def delete(self, scope: Scope, key: str) -> None:
        self._scopes[scope].pop(key, None)

    def keys(self, scope: Scope, prefix: str = "") -> list[str]:
        return sorted(key for key in self._scopes[scope] if key.startswith(prefix))


@dataclass
class PostgresStateStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def get(self, scope: Scope, key: str) -> Any | None:
        row = self._fetch_one(
            """
            SELECT value
            FROM state_entries
            WHERE scope = %s AND key = %s
            """,
            (scope.value, key),
        )
        if row is None:
            return None
        value = row[0]
        return json.loads(value) if isinstance(value, str) else value

    def set(self, scope: Scope, key: str, value: Any) -> None:
        self._execute(
            """
            INSERT INTO state_entries (scope, key, value, updated_at)
            VALUES (%s, %s, %s::jsonb, now())
            ON CONFLICT (scope, key)
            DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
            """,
            (scope.value, key, json.dumps(value)),
        )

    def delete(self, scope: Scope, key: str) -> None:
        self._execute(
            """
            DELETE FROM state_entries
            WHERE scope = %s AND key = %s
            """,
            (scope.value, key),
        )

    def keys(self, scope: Scope, prefix: str = "") -> list[str]:
        rows = self._fetch_all(
            """
            SELECT key
            FROM state_entries
            WHERE scope = %s AND key LIKE %s
            ORDER BY key
            """,
            (scope.value, _like_prefix(prefix)),
        )
        return [row[0] for row in rows]

    def _execute(self, sql: str, params: tuple) -> None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                conn.commit()
        except Exception as exc:
            raise StoreError(f"state store write failed: {exc}") from exc

    def _fetch_one(self, sql: str, params: tuple) -> tuple | None:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return cur.fetchone()
        except Exception as exc:
            raise StoreError(f"state store read failed: {exc}") from exc

    def _fetch_all(self, sql: str, params: tuple) -> list[tuple]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return list(cur.fetchall())
        except Exception as exc:
            raise StoreError(f"state store read failed: {exc}") from exc


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


def create_store(database_url: str | None) -> StateStore:
    if database_url:
        return PostgresStateStore(database_url=database_url)
    return InMemoryStateStore()
