"""
Condition persistence helpers.
"""

from __future__ import annotations

import asyncpg

from core import db


async def upsert_condition(conn: asyncpg.Connection, name: str) -> int:
    """
    Return the id of the condition called `name`, creating it if needed.

    A single statement: concurrent callers racing on a new name all get the
    same row back, and the unique index never sees a duplicate.
    """
    with db.store_errors(f"upserting condition {name!r}"):
        row = await db.fetch_one(
            conn,
            """
            INSERT INTO conditions (name)
            VALUES ($1)
            ON CONFLICT (name) DO UPDATE
            SET name = EXCLUDED.name
            RETURNING id
            """,
            name,
        )
    if row is None or "id" not in row:
        raise RuntimeError(f"Failed to upsert condition {name!r}.")
    return int(row["id"])


async def list_conditions(conn: asyncpg.Connection) -> list[dict]:
    with db.store_errors("listing conditions"):
        return await db.fetch_all(conn, "SELECT id, name FROM conditions ORDER BY id")
