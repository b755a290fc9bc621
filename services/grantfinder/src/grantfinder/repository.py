from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from common.utils import normalize_terms, normalize_whitespace, now_utc_iso, to_utc_iso
from fastapi.concurrency import run_in_threadpool

from grantfinder.errors import TransientBackendError
from grantfinder.models import (
    Condition,
    GrantItem,
    GrantQuery,
    InteractionRecord,
    PreferenceProfile,
    UserPreferences,
)

# Query field -> column. Anything outside this map is rejected.
QUERY_COLUMNS = {
    "id": "id",
    "title": "title",
    "description": "description",
    "agency_name": "agency_name",
    "categories": "categories_json",
    "award_ceiling": "award_ceiling",
    "award_floor": "award_floor",
    "close_date": "close_date",
    "post_date": "post_date",
    "cost_sharing": "cost_sharing",
}

GRANT_COLUMNS = """
    id,
    title,
    description,
    agency_name,
    agency_code,
    categories_json,
    award_ceiling,
    award_floor,
    close_date,
    post_date,
    cost_sharing,
    source_url
"""


T = TypeVar("T")


async def run_storage(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking repository call off the event loop."""
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except sqlite3.Error as exc:
        raise TransientBackendError(f"storage unavailable: {exc}") from exc


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


def compile_condition(condition: Condition) -> tuple[str, list[Any]]:
    column = QUERY_COLUMNS.get(condition.field)
    if column is None:
        raise ValueError(f"Unsupported query field: {condition.field}")

    op = condition.op
    value = condition.value
    if op == "is_null":
        return f"{column} IS NULL", []
    if op == "not_null":
        return f"{column} IS NOT NULL", []
    if op == "eq":
        return f"{column} = ?", [int(value) if isinstance(value, bool) else value]
    if op in ("gt", "gte", "lt", "lte"):
        symbol = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<="}[op]
        return f"{column} {symbol} ?", [value]
    if op in ("in", "not_in"):
        values = list(value or [])
        if not values:
            return ("0" if op == "in" else "1"), []
        keyword = "IN" if op == "in" else "NOT IN"
        return f"{column} {keyword} ({_placeholders(values)})", values
    if op == "overlaps":
        values = list(value or [])
        if not values:
            return "0", []
        return (
            f"EXISTS (SELECT 1 FROM json_each({column}) WHERE json_each.value "
            f"IN ({_placeholders(values)}))",
            values,
        )
    if op == "contains":
        return f"LOWER({column}) LIKE ?", [f"%{str(value).lower()}%"]
    raise ValueError(f"Unsupported query operator: {op}")


def compile_where(query: GrantQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for group in query.where:
        parts: list[str] = []
        for condition in group.any_of:
            sql, values = compile_condition(condition)
            parts.append(sql)
            params.extend(values)
        if parts:
            clauses.append("(" + " OR ".join(parts) + ")")
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def compile_order(query: GrantQuery) -> str:
    terms: list[str] = []
    for order in query.order_by:
        column = QUERY_COLUMNS.get(order.field)
        if column is None:
            raise ValueError(f"Unsupported sort field: {order.field}")
        direction = "DESC" if order.descending else "ASC"
        nulls = "NULLS LAST" if order.nulls_last else "NULLS FIRST"
        terms.append(f"{column} {direction} {nulls}")
    if not terms:
        return ""
    return " ORDER BY " + ", ".join(terms)


class GrantRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS grants (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    agency_name TEXT,
                    agency_code TEXT,
                    categories_json TEXT NOT NULL DEFAULT '[]',
                    award_ceiling REAL,
                    award_floor REAL,
                    close_date TEXT,
                    post_date TEXT,
                    cost_sharing INTEGER NOT NULL DEFAULT 0,
                    source_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS grants_agency_name_idx ON grants (agency_name);
                CREATE INDEX IF NOT EXISTS grants_close_date_idx ON grants (close_date);

                CREATE TABLE IF NOT EXISTS user_preferences (
                    user_id TEXT PRIMARY KEY,
                    config_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_interactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    grant_id TEXT NOT NULL,
                    action TEXT CHECK (action IN ('saved', 'applied', 'ignored')),
                    cleared_action TEXT,
                    timestamp TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS user_interactions_pair_idx
                    ON user_interactions (user_id, grant_id, timestamp);
                """
            )
            self._ensure_grants_columns()
            self._ensure_user_interactions_columns()
            self._connection.commit()

    def _ensure_grants_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(grants)").fetchall()
        existing = {row["name"] for row in column_rows}
        required_definitions = {
            "agency_code": "TEXT",
            "award_floor": "REAL",
            "post_date": "TEXT",
            "cost_sharing": "INTEGER NOT NULL DEFAULT 0",
            "source_url": "TEXT",
        }
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(f"ALTER TABLE grants ADD COLUMN {column_name} {definition}")

    def _ensure_user_interactions_columns(self) -> None:
        column_rows = self.connection.execute("PRAGMA table_info(user_interactions)").fetchall()
        existing = {row["name"] for row in column_rows}
        if "cleared_action" not in existing:
            self.connection.execute("ALTER TABLE user_interactions ADD COLUMN cleared_action TEXT")

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def upsert_grants(self, grants: list[GrantItem]) -> int:
        with self._lock:
            if not grants:
                return 0

            now = now_utc_iso()
            for grant in grants:
                self.connection.execute(
                    """
                    INSERT INTO grants (
                        id,
                        title,
                        description,
                        agency_name,
                        agency_code,
                        categories_json,
                        award_ceiling,
                        award_floor,
                        close_date,
                        post_date,
                        cost_sharing,
                        source_url,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        description = excluded.description,
                        agency_name = excluded.agency_name,
                        agency_code = excluded.agency_code,
                        categories_json = excluded.categories_json,
                        award_ceiling = excluded.award_ceiling,
                        award_floor = excluded.award_floor,
                        close_date = excluded.close_date,
                        post_date = excluded.post_date,
                        cost_sharing = excluded.cost_sharing,
                        source_url = excluded.source_url,
                        updated_at = excluded.updated_at
                    """,
                    (
                        grant.id,
                        normalize_whitespace(grant.title),
                        normalize_whitespace(grant.description),
                        normalize_whitespace(grant.agency_name or "") or None,
                        (grant.agency_code or "").strip() or None,
                        json.dumps(normalize_terms(grant.categories)),
                        grant.award_ceiling,
                        grant.award_floor,
                        to_utc_iso(grant.close_date),
                        to_utc_iso(grant.post_date),
                        int(grant.cost_sharing),
                        (grant.source_url or "").strip() or None,
                        now,
                        now,
                    ),
                )

            self.connection.commit()
            return len(grants)

    def get_grant(self, grant_id: str) -> GrantItem | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {GRANT_COLUMNS} FROM grants WHERE id = ?",
                (grant_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_grant(row)

    def get_grants(self, grant_ids: list[str]) -> dict[str, GrantItem]:
        if not grant_ids:
            return {}
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {GRANT_COLUMNS} FROM grants WHERE id IN ({_placeholders(grant_ids)})",
                tuple(grant_ids),
            )
            return {row["id"]: self._to_grant(row) for row in cursor.fetchall()}

    def query(self, query: GrantQuery) -> tuple[list[GrantItem], int]:
        where_sql, params = compile_where(query)
        order_sql = compile_order(query)
        with self._lock:
            total = int(
                self.connection.execute(
                    f"SELECT COUNT(1) AS c FROM grants{where_sql}",
                    tuple(params),
                ).fetchone()["c"]
            )
            cursor = self.connection.execute(
                f"SELECT {GRANT_COLUMNS} FROM grants{where_sql}{order_sql} LIMIT ? OFFSET ?",
                (*params, query.limit, query.offset),
            )
            return [self._to_grant(row) for row in cursor.fetchall()], total

    def upsert_preference_profile(self, user_id: str, profile: PreferenceProfile) -> UserPreferences:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO user_preferences (user_id, config_json, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    config_json = excluded.config_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, profile.config_json(), now, now),
            )
            self.connection.commit()
            stored = self.get_preference_profile(user_id)
            if stored is None:
                raise KeyError(f"Unknown user_id: {user_id}")
            return stored

    def get_preference_profile(self, user_id: str) -> UserPreferences | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT user_id, config_json, created_at, updated_at
                FROM user_preferences
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            return UserPreferences(
                user_id=row["user_id"],
                profile=PreferenceProfile(**json.loads(row["config_json"])),
                is_default=False,
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )

    def delete_preference_profile(self, user_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM user_preferences WHERE user_id = ?",
                (user_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def append_interaction(
        self,
        user_id: str,
        grant_id: str,
        action: str | None,
        *,
        cleared_action: str | None = None,
    ) -> InteractionRecord:
        with self._lock:
            timestamp = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO user_interactions (user_id, grant_id, action, cleared_action, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, grant_id, action, cleared_action, timestamp),
            )
            self.connection.commit()
            return InteractionRecord(
                record_id=int(cursor.lastrowid),
                user_id=user_id,
                grant_id=grant_id,
                action=action,
                cleared_action=cleared_action,
                timestamp=timestamp,
            )

    def list_current_interactions(
        self,
        user_id: str,
        grant_id: str | None = None,
    ) -> list[InteractionRecord]:
        """Latest record per (user, grant), including clearing records."""
        query = """
            SELECT id, user_id, grant_id, action, cleared_action, timestamp
            FROM (
                SELECT
                    *,
                    ROW_NUMBER() OVER (
                        PARTITION BY grant_id
                        ORDER BY timestamp DESC, id DESC
                    ) AS position
                FROM user_interactions
                WHERE user_id = ?
        """
        params: list[Any] = [user_id]
        if grant_id is not None:
            query += " AND grant_id = ?"
            params.append(grant_id)
        query += """
            )
            WHERE position = 1
            ORDER BY timestamp DESC, id DESC
        """
        with self._lock:
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_interaction(row) for row in cursor.fetchall()]

    def list_interaction_history(self, user_id: str, grant_id: str) -> list[InteractionRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id, user_id, grant_id, action, cleared_action, timestamp
                FROM user_interactions
                WHERE user_id = ? AND grant_id = ?
                ORDER BY timestamp ASC, id ASC
                """,
                (user_id, grant_id),
            )
            return [self._to_interaction(row) for row in cursor.fetchall()]

    def _to_grant(self, row: sqlite3.Row) -> GrantItem:
        categories: list[str] = json.loads(row["categories_json"] or "[]")
        return GrantItem(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            agency_name=row["agency_name"],
            agency_code=row["agency_code"],
            categories=categories,
            award_ceiling=row["award_ceiling"],
            award_floor=row["award_floor"],
            close_date=row["close_date"],
            post_date=row["post_date"],
            cost_sharing=bool(row["cost_sharing"]),
            source_url=row["source_url"],
        )

    def _to_interaction(self, row: sqlite3.Row) -> InteractionRecord:
        return InteractionRecord(
            record_id=row["id"],
            user_id=row["user_id"],
            grant_id=row["grant_id"],
            action=row["action"],
            cleared_action=row["cleared_action"],
            timestamp=row["timestamp"],
        )
