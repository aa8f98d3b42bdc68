"""
In-memory entities for the observation store.

Identity fields are `None` until the persistence layer assigns them. Condition
and Path are shared dimension values: many observations point at the same row,
and only the store decides which row that is.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Condition:
    name: str
    id: int | None = None


@dataclass
class Path:
    string: str
    id: int | None = None


@dataclass
class ObservationSet:
    sources: list[str]
    analyzer: str
    conditions: list[Condition] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    id: int | None = None

    # Derived, process-local state. Never persisted, never compared.
    link: str | None = field(default=None, init=False, repr=False, compare=False)
    data_link: str | None = field(default=None, init=False, repr=False, compare=False)
    count: int | None = field(default=None, init=False, repr=False, compare=False)
    _declared: frozenset[int] | None = field(default=None, init=False, repr=False, compare=False)

    def assign_id(self, set_id: int | None) -> None:
        """
        Change identity and forget everything derived from the old one.
        """
        self.id = set_id
        self.link = None
        self.data_link = None
        self.count = None

    def declared_condition_ids(self) -> frozenset[int]:
        """
        Ids of the declared conditions, built on first use.

        Conditions must be resolved before the first call; later changes to
        `conditions` are not picked up.
        """
        if self._declared is None:
            for c in self.conditions:
                if c.id is None:
                    raise RuntimeError(f"observation set has unresolved condition {c.name!r}.")
            self._declared = frozenset(c.id for c in self.conditions)
        return self._declared

    def condition_names(self) -> list[str]:
        return [c.name for c in self.conditions]


@dataclass
class Observation:
    start: datetime
    end: datetime
    path: Path
    condition: Condition
    value: int = 0
    set_id: int | None = None
    id: int | None = None

    @property
    def path_id(self) -> int | None:
        return self.path.id

    @property
    def condition_id(self) -> int | None:
        return self.condition.id
