"""
Observation persistence engine.

This file holds the insert protocol that sits between the wire codec and the
SQL in `repository.py`:
- dimension dedup (conditions, paths) through atomic upserts
- set insertion (set row + association rows) as one transaction
- observation insertion, checked against the set's declared conditions
- derived presentation fields (links, observation count)

Every operation takes an explicit connection and awaits its store round trips
in order. Nothing here retries; the first failure is raised to the caller.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urljoin

import asyncpg

from conditions import repository as condition_repository
from conditions.cache import ConditionCache, condition_cache
from core import db
from core.errors import NotFoundError, ReferentialError

from . import repository
from .models import Condition, Observation, ObservationSet, Path

DEFAULT_BASE_URL = "http://localhost:8000/"
DEFAULT_INGEST_BATCH_SIZE = 1000

_SET_ID_RE = re.compile(r"[0-9a-fA-F]{1,16}")
MAX_SET_ID = 2**63 - 1

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def base_url() -> str:
    return os.environ.get("PTO_BASE_URL", DEFAULT_BASE_URL).strip() or DEFAULT_BASE_URL


def ingest_batch_size() -> int:
    size = _env_int("OBS_INGEST_BATCH_SIZE", DEFAULT_INGEST_BATCH_SIZE)
    return size if size > 0 else DEFAULT_INGEST_BATCH_SIZE


# ── Dimensions ────────────────────────────────────────────


async def insert_once(conn: asyncpg.Connection, dimension: Condition | Path) -> int:
    """
    Make sure a Condition or Path has a row, and fill in its id.

    Entities that already carry an id are left alone.
    """
    if dimension.id is None:
        if isinstance(dimension, Condition):
            dimension.id = await condition_repository.upsert_condition(conn, dimension.name)
        elif isinstance(dimension, Path):
            dimension.id = await repository.upsert_path(conn, dimension.string)
        else:
            raise TypeError(f"insert_once() cannot store {type(dimension).__name__}")
    return dimension.id


# ── Observation sets ──────────────────────────────────────


async def insert_set(conn: asyncpg.Connection, obset: ObservationSet, force: bool = False) -> None:
    """
    Persist a set and its condition links in a single transaction.

    A set that already has an id is not written again unless `force` is set.
    Declared conditions must already be resolved (see
    `ConditionCache.resolve_all_in_set`).
    """
    if force:
        obset.assign_id(None)
    if obset.id is not None:
        return

    condition_ids: list[int] = []
    for condition in obset.conditions:
        if condition.id is None:
            raise RuntimeError(f"insert_set called with unresolved condition {condition.name!r}.")
        condition_ids.append(condition.id)

    with db.store_errors("inserting observation set"):
        async with conn.transaction():
            set_id = await repository.insert_set_row(
                conn,
                sources=obset.sources,
                analyzer=obset.analyzer,
                metadata=obset.metadata,
            )
            await repository.insert_set_conditions(conn, set_id, condition_ids)

    # Only a committed set gets an identity.
    obset.assign_id(set_id)
    logger.info("set_created set_id=%s conditions=%s", set_id, len(condition_ids))


async def create_set(
    conn: asyncpg.Connection,
    obset: ObservationSet,
    *,
    cache: ConditionCache | None = None,
) -> ObservationSet:
    """
    Resolve a freshly decoded set's conditions, then insert it.
    """
    if cache is None:
        cache = condition_cache()
    await cache.resolve_all_in_set(conn, obset)
    await insert_set(conn, obset, force=False)
    return obset


async def select_set_by_id(conn: asyncpg.Connection, set_id: int) -> ObservationSet:
    row = await repository.get_set(conn, set_id)
    if row is None:
        raise NotFoundError(f"observation set {set_id} not found")

    condition_rows = await repository.get_set_conditions(conn, set_id)
    obset = ObservationSet(
        sources=list(row["sources"] or []),
        analyzer=str(row["analyzer"]),
        conditions=[Condition(name=str(r["name"]), id=int(r["id"])) for r in condition_rows],
        metadata={str(k): str(v) for k, v in row["metadata"].items()},
    )
    obset.assign_id(int(row["id"]))
    return obset


async def update_set(conn: asyncpg.Connection, obset: ObservationSet) -> None:
    """
    Rewrite sources, analyzer and metadata of a persisted set.

    Declared conditions are fixed at creation and are not touched.
    """
    if obset.id is None:
        raise RuntimeError("update_set called on a set without an id.")
    updated = await repository.update_set_row(
        conn,
        obset.id,
        sources=obset.sources,
        analyzer=obset.analyzer,
        metadata=obset.metadata,
    )
    if not updated:
        raise NotFoundError(f"observation set {obset.id} not found")


async def list_set_ids(conn: asyncpg.Connection) -> list[int]:
    return await repository.list_set_ids(conn)


# ── Derived fields ────────────────────────────────────────


async def count(conn: asyncpg.Connection, obset: ObservationSet) -> int:
    """
    Number of observations in the set, queried once per set instance.
    """
    if obset.count is None:
        if obset.id is None:
            return 0
        obset.count = await repository.count_observations(conn, obset.id)
    return obset.count


def link_for_set_id(base: str, set_id: int) -> str:
    return urljoin(base, f"obs/{set_id:016x}")


def parse_set_id(text: str) -> int:
    """
    Inverse of the id part of `link_for_set_id`.
    """
    set_id = int(text, 16) if _SET_ID_RE.fullmatch(text) else None
    if set_id is None or set_id > MAX_SET_ID:
        raise NotFoundError(f"observation set {text!r} not found")
    return set_id


def derive_links(obset: ObservationSet, base: str) -> tuple[str, str]:
    """
    Compute (link, data_link) for a persisted set; the first answer sticks.
    """
    if obset.link is None or obset.data_link is None:
        if obset.id is None:
            raise RuntimeError("derive_links called on a set without an id.")
        obset.link = link_for_set_id(base, obset.id)
        obset.data_link = obset.link + "/data"
    return obset.link, obset.data_link


# ── Observations ──────────────────────────────────────────


async def insert_observation_in_set(
    conn: asyncpg.Connection,
    obs: Observation,
    obset: ObservationSet,
    *,
    cache: ConditionCache | None = None,
) -> None:
    """
    Insert one observation into `obset`, writing the set first if needed.

    Raises ReferentialError when the observation's condition is not one the
    set declared, and RuntimeError when the set's own conditions have not been
    resolved yet.
    """
    if cache is None:
        cache = condition_cache()
    declared = obset.declared_condition_ids()

    undeclared = f"cannot insert observation with undeclared condition {obs.condition.name}"

    if obs.condition.id is None:
        # Undeclared names never reach the store, so nothing is created for them.
        if obs.condition.name not in obset.condition_names():
            raise ReferentialError(undeclared)
        obs.condition.id = await cache.resolve(conn, obs.condition.name)

    if obs.condition.id not in declared:
        raise ReferentialError(undeclared)

    await insert_once(conn, obs.path)
    await insert_set(conn, obset, force=False)
    obs.set_id = obset.id

    obs.id = await repository.insert_observation(
        conn,
        set_id=obs.set_id,
        start=obs.start,
        end=obs.end,
        path_id=obs.path.id,
        condition_id=obs.condition.id,
        value=obs.value,
    )


@dataclass(frozen=True)
class IngestStats:
    set_id: int | None
    inserted: int
    batches: int


async def ingest_observations(
    conn: asyncpg.Connection,
    obset: ObservationSet,
    observations: Iterable[Observation],
    *,
    batch_size: int | None = None,
    cache: ConditionCache | None = None,
) -> IngestStats:
    """
    Insert a decoded observation stream into `obset`, one transaction per batch.

    Decode the whole stream before calling this, so malformed input never
    leaves a partial write behind. A failure inside a batch rolls back that
    batch only; earlier batches stay committed.
    """
    if cache is None:
        cache = condition_cache()
    bs = batch_size or ingest_batch_size()
    path_ids: dict[str, int] = {}

    # The set gets its own transaction so a failed first batch cannot roll it back.
    await insert_set(conn, obset, force=False)

    inserted = 0
    batches = 0
    batch: list[Observation] = []

    async def flush() -> None:
        nonlocal inserted, batches
        with db.store_errors(f"ingesting observations into set {obset.id}"):
            async with conn.transaction():
                for obs in batch:
                    known = path_ids.get(obs.path.string)
                    if obs.path.id is None and known is not None:
                        obs.path.id = known
                    await insert_observation_in_set(conn, obs, obset, cache=cache)
                    path_ids[obs.path.string] = obs.path.id
        inserted += len(batch)
        batches += 1
        batch.clear()

    for obs in observations:
        batch.append(obs)
        if len(batch) >= bs:
            await flush()
    if batch:
        await flush()

    logger.info(
        "ingest_complete set_id=%s inserted=%s batches=%s",
        obset.id,
        inserted,
        batches,
    )
    return IngestStats(set_id=obset.id, inserted=inserted, batches=batches)


async def select_observations(conn: asyncpg.Connection, obset: ObservationSet) -> list[Observation]:
    if obset.id is None:
        return []
    rows = await repository.list_observations(conn, obset.id)
    return [
        Observation(
            id=int(r["id"]),
            set_id=int(r["set_id"]),
            start=r["start"],
            end=r["end"],
            path=Path(string=str(r["path"]), id=int(r["path_id"])),
            condition=Condition(name=str(r["condition"]), id=int(r["condition_id"])),
            value=int(r["value"]),
        )
        for r in rows
    ]
