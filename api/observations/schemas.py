"""
Pydantic schemas for observation endpoints.

Observation sets and observations themselves use the hand-written wire codec
(`codec.py`); these models only cover the small listing responses.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class SetListResponse(BaseModel):
    sets: list[str] = Field(default_factory=list)
    count: int = 0


class ConditionResponse(BaseModel):
    id: int
    name: str


class ConditionListResponse(BaseModel):
    conditions: list[ConditionResponse] = Field(default_factory=list)
    count: int = 0


class IngestResponse(BaseModel):
    set_id: str
    inserted: int
    batches: int
    link: str
