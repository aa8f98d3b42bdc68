"""Shared fixtures: an in-memory stand-in for the SQL repositories."""

from __future__ import annotations

import itertools
from collections import Counter
from datetime import datetime

import pytest

from conditions import repository as condition_repository
from conditions.cache import ConditionCache, reset_condition_cache
from observations import repository as observation_repository


class FakeTransaction:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._conn.rollbacks += 1
        return False


class FakeConnection:
    """Counts transactions; the data itself lives in FakeStore."""

    def __init__(self):
        self.transactions = 0
        self.rollbacks = 0

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)


class FakeStore:
    """Mimics the repository functions, including upsert and ON CONFLICT semantics."""

    def __init__(self):
        self.conditions: dict[str, int] = {}
        self.paths: dict[str, int] = {}
        self.sets: dict[int, dict] = {}
        self.set_conditions: set[tuple[int, int]] = set()
        self.observations: list[dict] = []
        self.calls: Counter[str] = Counter()
        self._ids = {name: itertools.count(1) for name in ("condition", "path", "set", "observation")}

    @property
    def writes(self) -> int:
        return sum(
            n for name, n in self.calls.items()
            if name.startswith(("insert", "upsert", "update"))
        )

    def add_condition(self, name: str) -> int:
        """Insert behind the cache's back, as another process would."""
        if name not in self.conditions:
            self.conditions[name] = next(self._ids["condition"])
        return self.conditions[name]

    # conditions.repository

    async def upsert_condition(self, conn, name: str) -> int:
        self.calls["upsert_condition"] += 1
        return self.add_condition(name)

    async def list_conditions(self, conn) -> list[dict]:
        self.calls["list_conditions"] += 1
        return [{"id": i, "name": n} for n, i in self.conditions.items()]

    # observations.repository

    async def upsert_path(self, conn, string: str) -> int:
        self.calls["upsert_path"] += 1
        if string not in self.paths:
            self.paths[string] = next(self._ids["path"])
        return self.paths[string]

    async def insert_set_row(self, conn, *, sources, analyzer, metadata) -> int:
        self.calls["insert_set_row"] += 1
        set_id = next(self._ids["set"])
        self.sets[set_id] = {
            "id": set_id,
            "sources": list(sources),
            "analyzer": analyzer,
            "metadata": dict(metadata),
        }
        return set_id

    async def insert_set_conditions(self, conn, set_id: int, condition_ids: list[int]) -> None:
        self.calls["insert_set_conditions"] += 1
        for condition_id in condition_ids:
            self.set_conditions.add((set_id, condition_id))

    async def update_set_row(self, conn, set_id: int, *, sources, analyzer, metadata) -> bool:
        self.calls["update_set_row"] += 1
        if set_id not in self.sets:
            return False
        self.sets[set_id].update(sources=list(sources), analyzer=analyzer, metadata=dict(metadata))
        return True

    async def get_set(self, conn, set_id: int) -> dict | None:
        self.calls["get_set"] += 1
        row = self.sets.get(set_id)
        return dict(row) if row is not None else None

    async def get_set_conditions(self, conn, set_id: int) -> list[dict]:
        self.calls["get_set_conditions"] += 1
        names = {i: n for n, i in self.conditions.items()}
        return [
            {"id": cid, "name": names[cid]}
            for sid, cid in sorted(self.set_conditions)
            if sid == set_id
        ]

    async def list_set_ids(self, conn) -> list[int]:
        self.calls["list_set_ids"] += 1
        return sorted(self.sets)

    async def insert_observation(
        self,
        conn,
        *,
        set_id: int,
        start: datetime,
        end: datetime,
        path_id: int,
        condition_id: int,
        value: int,
    ) -> int:
        self.calls["insert_observation"] += 1
        obs_id = next(self._ids["observation"])
        self.observations.append(
            {
                "id": obs_id,
                "set_id": set_id,
                "start": start,
                "end": end,
                "path_id": path_id,
                "condition_id": condition_id,
                "value": value,
            }
        )
        return obs_id

    async def count_observations(self, conn, set_id: int) -> int:
        self.calls["count_observations"] += 1
        return sum(1 for o in self.observations if o["set_id"] == set_id)

    async def list_observations(self, conn, set_id: int) -> list[dict]:
        self.calls["list_observations"] += 1
        paths = {i: s for s, i in self.paths.items()}
        names = {i: n for n, i in self.conditions.items()}
        return [
            {**o, "path": paths[o["path_id"]], "condition": names[o["condition_id"]]}
            for o in self.observations
            if o["set_id"] == set_id
        ]


_CONDITION_FUNCS = ("upsert_condition", "list_conditions")
_OBSERVATION_FUNCS = (
    "upsert_path",
    "insert_set_row",
    "insert_set_conditions",
    "update_set_row",
    "get_set",
    "get_set_conditions",
    "list_set_ids",
    "insert_observation",
    "count_observations",
    "list_observations",
)


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> FakeStore:
    fake = FakeStore()
    for name in _CONDITION_FUNCS:
        monkeypatch.setattr(condition_repository, name, getattr(fake, name))
    for name in _OBSERVATION_FUNCS:
        monkeypatch.setattr(observation_repository, name, getattr(fake, name))
    return fake


@pytest.fixture
def conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture(autouse=True)
def cache() -> ConditionCache:
    # A fresh process-wide cache for every test.
    return reset_condition_cache()
