"""
FastAPI router for observation set endpoints.

Bodies are read raw and handed to the wire codec; codec and store errors are
`ObsError`s and get rendered by the handler registered in `api/main.py`.
"""

from __future__ import annotations

import asyncpg
from fastapi import APIRouter, Depends, Query, Request, Response, status

from conditions.cache import condition_cache
from core import db

from . import codec, schemas, service

OBS_CONTENT_TYPE = "application/json"
NDJSON_CONTENT_TYPE = "application/vnd.mami.ndjson"

router = APIRouter()


def _set_response(obset, status_code: int = status.HTTP_200_OK) -> Response:
    return Response(
        content=codec.encode_set(obset),
        media_type=OBS_CONTENT_TYPE,
        status_code=status_code,
    )


@router.get("/obs")
async def list_sets(conn: asyncpg.Connection = Depends(db.get_connection)) -> schemas.SetListResponse:
    base = service.base_url()
    links = [service.link_for_set_id(base, set_id) for set_id in await service.list_set_ids(conn)]
    return schemas.SetListResponse(sets=links, count=len(links))


@router.post("/obs/create")
async def create_set(
    request: Request,
    conn: asyncpg.Connection = Depends(db.get_connection),
) -> Response:
    """
    Create an observation set from its metadata object. Data is uploaded separately.
    """
    obset = codec.decode_set(await request.body())
    await service.create_set(conn, obset)
    service.derive_links(obset, service.base_url())
    return _set_response(obset, status_code=status.HTTP_201_CREATED)


@router.get("/obs/{set_id}")
async def get_set(set_id: str, conn: asyncpg.Connection = Depends(db.get_connection)) -> Response:
    obset = await service.select_set_by_id(conn, service.parse_set_id(set_id))
    service.derive_links(obset, service.base_url())
    await service.count(conn, obset)
    return _set_response(obset)


@router.put("/obs/{set_id}")
async def update_set(
    set_id: str,
    request: Request,
    conn: asyncpg.Connection = Depends(db.get_connection),
) -> Response:
    """
    Replace sources, analyzer and metadata. Declared conditions stay as created.
    """
    obset = await service.select_set_by_id(conn, service.parse_set_id(set_id))
    incoming = codec.decode_set(await request.body())

    obset.sources = incoming.sources
    obset.analyzer = incoming.analyzer
    obset.metadata = incoming.metadata
    await service.update_set(conn, obset)

    service.derive_links(obset, service.base_url())
    return _set_response(obset)


@router.get("/obs/{set_id}/data")
async def get_set_data(set_id: str, conn: asyncpg.Connection = Depends(db.get_connection)) -> Response:
    obset = await service.select_set_by_id(conn, service.parse_set_id(set_id))
    observations = await service.select_observations(conn, obset)
    return Response(content=codec.write_observations(observations), media_type=NDJSON_CONTENT_TYPE)


@router.put("/obs/{set_id}/data")
async def put_set_data(
    set_id: str,
    request: Request,
    conn: asyncpg.Connection = Depends(db.get_connection),
) -> schemas.IngestResponse:
    """
    Append newline-delimited observations to a set.

    The whole body is decoded before anything is written.
    """
    obset = await service.select_set_by_id(conn, service.parse_set_id(set_id))
    observations = codec.read_observations(await request.body())
    stats = await service.ingest_observations(conn, obset, observations)
    link, _ = service.derive_links(obset, service.base_url())
    return schemas.IngestResponse(
        set_id=f"{obset.id:016x}",
        inserted=stats.inserted,
        batches=stats.batches,
        link=link,
    )


@router.get("/conditions")
async def list_conditions(
    q: str = Query(..., min_length=1, max_length=500),
    conn: asyncpg.Connection = Depends(db.get_connection),
) -> schemas.ConditionListResponse:
    """
    Look up a condition by exact name, or every condition under `prefix.*`.
    """
    conditions = await condition_cache().lookup_by_name(conn, q)
    rows = [schemas.ConditionResponse(id=c.id, name=c.name) for c in sorted(conditions, key=lambda c: c.name)]
    return schemas.ConditionListResponse(conditions=rows, count=len(rows))
