"""
Process-wide condition name -> id cache.

Read-mostly memoization in front of the `conditions` table. The store is the
source of truth: misses go to an atomic upsert, and lookups that miss force a
reload, so a cache that went stale under concurrent writers heals itself.

The mapping is guarded by a plain lock that is only held for dict access,
never across an `await`. That keeps it correct for many tasks on one event
loop and for several threads sharing the same instance.
"""

from __future__ import annotations

import logging
import threading

import asyncpg

from core.errors import NotFoundError
from observations.models import Condition, ObservationSet

from . import repository

logger = logging.getLogger(__name__)

WILDCARD_SUFFIX = ".*"


class ConditionCache:
    """Maps condition names to condition ids for one store."""

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._ids

    def get(self, name: str) -> int | None:
        with self._lock:
            return self._ids.get(name)

    def _put(self, name: str, condition_id: int) -> None:
        with self._lock:
            self._ids[name] = condition_id

    async def resolve(self, conn: asyncpg.Connection, name: str) -> int:
        """
        Return the id for `name`, creating the condition on a miss.
        """
        cached = self.get(name)
        if cached is not None:
            return cached

        condition_id = await repository.upsert_condition(conn, name)
        self._put(name, condition_id)
        return condition_id

    async def resolve_all_in_set(self, conn: asyncpg.Connection, obset: ObservationSet) -> None:
        """
        Fill in the id of every declared condition, in declaration order.

        Stops at the first failure; the set is then only partly resolved and
        must not be persisted.
        """
        for condition in obset.conditions:
            condition.id = await self.resolve(conn, condition.name)

    async def reload(self, conn: asyncpg.Connection) -> None:
        """
        Pull every condition row into the cache. Nothing is evicted.
        """
        rows = await repository.list_conditions(conn)
        with self._lock:
            for row in rows:
                self._ids[str(row["name"])] = int(row["id"])
        logger.debug("condition_cache_reloaded rows=%s", len(rows))

    async def lookup_by_name(self, conn: asyncpg.Connection, pattern: str) -> list[Condition]:
        """
        Find conditions by exact name, or by prefix when `pattern` ends in `.*`.

        A wildcard always reloads first and may match nothing. An exact name
        reloads at most once and raises NotFoundError if it is still unknown.
        """
        if pattern.endswith(WILDCARD_SUFFIX):
            await self.reload(conn)
            prefix = pattern[:-1]
            with self._lock:
                return [
                    Condition(name=name, id=condition_id)
                    for name, condition_id in self._ids.items()
                    if name.startswith(prefix)
                ]

        condition_id = self.get(pattern)
        if condition_id is None:
            await self.reload(conn)
            condition_id = self.get(pattern)
        if condition_id is None:
            raise NotFoundError(f"unknown condition {pattern}", status_code=400)
        return [Condition(name=pattern, id=condition_id)]


async def load_condition_cache(conn: asyncpg.Connection) -> ConditionCache:
    """
    Build a new cache holding every condition currently in the store.
    """
    cache = ConditionCache()
    await cache.reload(conn)
    return cache


_cache = ConditionCache()


def condition_cache() -> ConditionCache:
    return _cache


def reset_condition_cache(cache: ConditionCache | None = None) -> ConditionCache:
    global _cache
    _cache = cache if cache is not None else ConditionCache()
    return _cache
