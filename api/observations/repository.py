"""
Observation persistence.
This module is where observation-related SQL lives.

Schema comes from `core/schema.py`:
- paths(id, string UNIQUE)
- observation_sets(id, sources text[], analyzer, metadata jsonb)
- observation_set_to_conditions(set_id, condition_id)
- observations(id, set_id, start, "end", path_id, condition_id, value)
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from core import db


def _json_arg(value: dict[str, Any] | None) -> str | None:
    """
    asyncpg does not automatically encode Python dicts for json/jsonb parameters.
    We pass JSON as a string and cast to jsonb in SQL.
    """
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True)


def _json_value(raw: Any) -> dict[str, Any]:
    # jsonb comes back as text unless a codec is registered on the connection.
    if raw is None:
        return {}
    if isinstance(raw, str):
        return json.loads(raw)
    return dict(raw)


async def upsert_path(conn: asyncpg.Connection, string: str) -> int:
    """
    Return the id of the path `string`, creating it if needed (one statement).
    """
    with db.store_errors(f"upserting path {string!r}"):
        row = await db.fetch_one(
            conn,
            """
            INSERT INTO paths (string)
            VALUES ($1)
            ON CONFLICT (string) DO UPDATE
            SET string = EXCLUDED.string
            RETURNING id
            """,
            string,
        )
    if row is None or "id" not in row:
        raise RuntimeError(f"Failed to upsert path {string!r}.")
    return int(row["id"])


async def insert_set_row(
    conn: asyncpg.Connection,
    *,
    sources: list[str],
    analyzer: str,
    metadata: dict[str, str],
) -> int:
    with db.store_errors("inserting observation set"):
        row = await db.fetch_one(
            conn,
            """
            INSERT INTO observation_sets (sources, analyzer, metadata)
            VALUES ($1, $2, COALESCE($3::jsonb, '{}'::jsonb))
            RETURNING id
            """,
            sources,
            analyzer,
            _json_arg(metadata),
        )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert observation set.")
    return int(row["id"])


async def insert_set_conditions(conn: asyncpg.Connection, set_id: int, condition_ids: list[int]) -> None:
    """
    Link a set to its declared conditions. Repeated ids collapse to one row.
    """
    if not condition_ids:
        return
    records = [(set_id, condition_id) for condition_id in condition_ids]
    with db.store_errors(f"linking conditions to set {set_id}"):
        await conn.executemany(
            """
            INSERT INTO observation_set_to_conditions (set_id, condition_id)
            VALUES ($1, $2)
            ON CONFLICT DO NOTHING
            """,
            records,
        )


async def update_set_row(
    conn: asyncpg.Connection,
    set_id: int,
    *,
    sources: list[str],
    analyzer: str,
    metadata: dict[str, str],
) -> bool:
    with db.store_errors(f"updating observation set {set_id}"):
        row = await db.fetch_one(
            conn,
            """
            UPDATE observation_sets
            SET sources = $2,
                analyzer = $3,
                metadata = COALESCE($4::jsonb, '{}'::jsonb)
            WHERE id = $1
            RETURNING id
            """,
            set_id,
            sources,
            analyzer,
            _json_arg(metadata),
        )
    return row is not None


async def get_set(conn: asyncpg.Connection, set_id: int) -> dict[str, Any] | None:
    with db.store_errors(f"selecting observation set {set_id}"):
        row = await db.fetch_one(
            conn,
            """
            SELECT id, sources, analyzer, metadata
            FROM observation_sets
            WHERE id = $1
            """,
            set_id,
        )
    if row is not None:
        row["metadata"] = _json_value(row.get("metadata"))
    return row


async def get_set_conditions(conn: asyncpg.Connection, set_id: int) -> list[dict[str, Any]]:
    with db.store_errors(f"selecting conditions of set {set_id}"):
        return await db.fetch_all(
            conn,
            """
            SELECT c.id, c.name
            FROM observation_set_to_conditions sc
            JOIN conditions c ON c.id = sc.condition_id
            WHERE sc.set_id = $1
            ORDER BY c.id
            """,
            set_id,
        )


async def list_set_ids(conn: asyncpg.Connection) -> list[int]:
    with db.store_errors("listing observation sets"):
        rows = await db.fetch_all(conn, "SELECT id FROM observation_sets ORDER BY id")
    return [int(r["id"]) for r in rows]


async def insert_observation(
    conn: asyncpg.Connection,
    *,
    set_id: int,
    start: datetime,
    end: datetime,
    path_id: int,
    condition_id: int,
    value: int,
) -> int:
    with db.store_errors(f"inserting observation in set {set_id}"):
        row = await db.fetch_one(
            conn,
            """
            INSERT INTO observations (set_id, start, "end", path_id, condition_id, value)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            set_id,
            start,
            end,
            path_id,
            condition_id,
            value,
        )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert observation.")
    return int(row["id"])


async def count_observations(conn: asyncpg.Connection, set_id: int) -> int:
    with db.store_errors(f"counting observations in set {set_id}"):
        row = await db.fetch_one(
            conn,
            "SELECT count(*) AS n FROM observations WHERE set_id = $1",
            set_id,
        )
    return int((row or {}).get("n", 0))


async def list_observations(conn: asyncpg.Connection, set_id: int) -> list[dict[str, Any]]:
    with db.store_errors(f"selecting observations in set {set_id}"):
        return await db.fetch_all(
            conn,
            """
            SELECT
              o.id,
              o.set_id,
              o.start,
              o."end",
              o.path_id,
              p.string AS path,
              o.condition_id,
              c.name AS condition,
              o.value
            FROM observations o
            JOIN paths p ON p.id = o.path_id
            JOIN conditions c ON c.id = o.condition_id
            WHERE o.set_id = $1
            ORDER BY o.id
            """,
            set_id,
        )
