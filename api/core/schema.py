"""
Observation store schema.

Four entity tables plus the set/condition association table. Both directions
are idempotent and run in a single transaction, so they are safe to call on
every application start (create) or every test teardown (drop).
"""

from __future__ import annotations

import logging

import asyncpg

from . import db

logger = logging.getLogger(__name__)

_CREATE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conditions (
      id bigserial PRIMARY KEY,
      name text NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS paths (
      id bigserial PRIMARY KEY,
      string text NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS observation_sets (
      id bigserial PRIMARY KEY,
      sources text[] NOT NULL,
      analyzer text NOT NULL,
      metadata jsonb NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS observations (
      id bigserial PRIMARY KEY,
      set_id bigint NOT NULL REFERENCES observation_sets (id),
      start timestamptz NOT NULL,
      "end" timestamptz NOT NULL,
      path_id bigint NOT NULL REFERENCES paths (id),
      condition_id bigint NOT NULL REFERENCES conditions (id),
      value bigint NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS observations_set_id_idx ON observations (set_id)",
    """
    CREATE TABLE IF NOT EXISTS observation_set_to_conditions (
      set_id bigint NOT NULL REFERENCES observation_sets (id),
      condition_id bigint NOT NULL REFERENCES conditions (id),
      PRIMARY KEY (set_id, condition_id)
    )
    """,
)

# Dependents first.
_DROP_STATEMENTS = (
    "DROP TABLE IF EXISTS observations",
    "DROP TABLE IF EXISTS observation_set_to_conditions",
    "DROP TABLE IF EXISTS observation_sets",
    "DROP TABLE IF EXISTS paths",
    "DROP TABLE IF EXISTS conditions",
)


async def _run_all(conn: asyncpg.Connection, statements: tuple[str, ...], action: str) -> None:
    with db.store_errors(action):
        async with conn.transaction():
            for sql in statements:
                await db.execute(conn, sql)


async def create_tables(conn: asyncpg.Connection) -> None:
    await _run_all(conn, _CREATE_STATEMENTS, "creating tables")
    logger.info("schema_created tables=%s", 5)


async def drop_tables(conn: asyncpg.Connection) -> None:
    """
    Remove every observation store table. Tests only, please.
    """
    await _run_all(conn, _DROP_STATEMENTS, "dropping tables")
    logger.info("schema_dropped tables=%s", 5)
