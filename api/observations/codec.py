"""
Wire codec for observation sets and observations.

Two shapes:

- Observation set: a JSON object. `_sources`, `_analyzer` and `_conditions`
  are reserved; `__link`, `__data` and `__obs_count` are computed on encode and
  ignored on decode; every other key is string-valued metadata.
- Observation: a positional JSON array
  `[set_id, start, end, path, condition, value?]`. `value` is left out when 0.

Timestamps are RFC3339 UTC with a mandatory trailing `Z`
(`2020-01-01T00:00:00Z`). Offsets are rejected.

An Observation Set File is newline-delimited JSON: one set object line and any
number of observation array lines.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable

from core.errors import ValidationError

from .models import Condition, Observation, ObservationSet, Path

SOURCES_KEY = "_sources"
ANALYZER_KEY = "_analyzer"
CONDITIONS_KEY = "_conditions"
LINK_KEY = "__link"
DATA_KEY = "__data"
COUNT_KEY = "__obs_count"

MIN_OBSERVATION_FIELDS = 5

# Observation values are stored in a bigint column.
MIN_VALUE = -(2**63)
MAX_VALUE = 2**63 - 1

_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?Z$")
_VALUE_RE = re.compile(r"[+-]?[0-9]+")


def _json_dumps(value: object) -> bytes:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":")).encode("utf-8")


def _json_loads(data: bytes | str, what: str) -> Any:
    try:
        return json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"{what} is not valid JSON: {e}") from e


def _string_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ValidationError(f"{key} not a string array")
    if not value:
        raise ValidationError(f"{key} is empty")
    return list(value)


def _metadata_value(key: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, dict)):
        raise ValidationError(f"metadata key {key!r} must have a scalar value")
    return json.dumps(value)


def format_timestamp(ts: datetime) -> str:
    """
    Canonical wire form of a timestamp. Naive datetimes are taken to be UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    text = ts.strftime("%Y-%m-%dT%H:%M:%S")
    if ts.microsecond:
        text += f".{ts.microsecond:06d}".rstrip("0")
    return text + "Z"


def parse_timestamp(text: Any, field_name: str = "timestamp") -> datetime:
    if not isinstance(text, str) or not _TIMESTAMP_RE.match(text):
        raise ValidationError(f"{field_name} {text!r} is not an RFC3339 UTC timestamp (YYYY-MM-DDTHH:MM:SSZ)")
    try:
        ts = datetime.fromisoformat(text[:-1])
    except ValueError as e:
        raise ValidationError(f"{field_name} {text!r} is not a valid timestamp: {e}") from e
    return ts.replace(tzinfo=timezone.utc)


def _parse_value(raw: Any) -> int:
    # bool is an int subclass; true/false are not observation values.
    if isinstance(raw, bool):
        raise ValidationError(f"observation value {raw!r} is not an integer")
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str) and _VALUE_RE.fullmatch(raw):
        value = int(raw, 10)
    else:
        raise ValidationError(f"observation value {raw!r} is not an integer")
    if not MIN_VALUE <= value <= MAX_VALUE:
        raise ValidationError(f"observation value {raw!r} is out of range")
    return value


def _parse_set_id(raw: Any) -> int | None:
    """
    The set id in an observation line is advisory; anything unusable is unassigned.
    """
    if isinstance(raw, bool):
        return None
    try:
        set_id = int(raw) if isinstance(raw, int) else int(str(raw).strip(), 10)
    except ValueError:
        return None
    return set_id if set_id > 0 else None


# ── Observation sets ──────────────────────────────────────


def set_to_dict(obset: ObservationSet) -> dict[str, Any]:
    out: dict[str, Any] = dict(obset.metadata)
    out[SOURCES_KEY] = list(obset.sources)
    out[ANALYZER_KEY] = obset.analyzer

    if obset.conditions:
        out[CONDITIONS_KEY] = obset.condition_names()

    if obset.link:
        out[LINK_KEY] = obset.link
    if obset.data_link:
        out[DATA_KEY] = obset.data_link
    if obset.count:
        out[COUNT_KEY] = obset.count

    return out


def set_from_dict(jmap: Any) -> ObservationSet:
    if not isinstance(jmap, dict):
        raise ValidationError("ObservationSet must be a JSON object")

    sources: list[str] | None = None
    analyzer: str | None = None
    conditions: list[Condition] | None = None
    metadata: dict[str, str] = {}

    for k, v in jmap.items():
        if k == SOURCES_KEY:
            sources = _string_list(v, SOURCES_KEY)
        elif k == ANALYZER_KEY:
            if not isinstance(v, str):
                raise ValidationError(f"{ANALYZER_KEY} not a string")
            analyzer = v
        elif k == CONDITIONS_KEY:
            # Placeholders only; ids come from the condition cache.
            conditions = [Condition(name=name) for name in _string_list(v, CONDITIONS_KEY)]
        elif k.startswith("__"):
            continue
        else:
            metadata[k] = _metadata_value(k, v)

    if sources is None:
        raise ValidationError(f"ObservationSet missing {SOURCES_KEY}")
    if not analyzer:
        raise ValidationError(f"ObservationSet missing {ANALYZER_KEY}")
    if conditions is None:
        raise ValidationError(f"ObservationSet missing {CONDITIONS_KEY}")

    return ObservationSet(
        sources=sources,
        analyzer=analyzer,
        conditions=conditions,
        metadata=metadata,
    )


def decode_set(data: bytes | str) -> ObservationSet:
    """
    Decode an observation set metadata object.

    Identity is always unassigned on the result, whatever the input says.
    """
    return set_from_dict(_json_loads(data, "ObservationSet"))


def encode_set(obset: ObservationSet) -> bytes:
    return _json_dumps(set_to_dict(obset))


# ── Observations ──────────────────────────────────────────


def observation_to_list(obs: Observation) -> list[Any]:
    out: list[Any] = [
        str(obs.set_id or 0),
        format_timestamp(obs.start),
        format_timestamp(obs.end),
        obs.path.string,
        obs.condition.name,
    ]
    if obs.value != 0:
        out.append(obs.value)
    return out


def observation_from_list(jslice: Any) -> Observation:
    if not isinstance(jslice, list):
        raise ValidationError("Observation must be a JSON array")
    if len(jslice) < MIN_OBSERVATION_FIELDS:
        raise ValidationError(
            f"Observation requires at least {MIN_OBSERVATION_FIELDS} elements, got {len(jslice)}"
        )

    path_string, condition_name = jslice[3], jslice[4]
    if not isinstance(path_string, str) or not path_string:
        raise ValidationError(f"observation path {path_string!r} is not a non-empty string")
    if not isinstance(condition_name, str) or not condition_name:
        raise ValidationError(f"observation condition {condition_name!r} is not a non-empty string")

    return Observation(
        set_id=_parse_set_id(jslice[0]),
        start=parse_timestamp(jslice[1], "start"),
        end=parse_timestamp(jslice[2], "end"),
        path=Path(string=path_string),
        condition=Condition(name=condition_name),
        value=_parse_value(jslice[5]) if len(jslice) > MIN_OBSERVATION_FIELDS else 0,
    )


def decode_observation(data: bytes | str) -> Observation:
    """
    Decode one observation line. Path and condition come back as placeholders.
    """
    return observation_from_list(_json_loads(data, "Observation"))


def encode_observation(obs: Observation) -> bytes:
    return _json_dumps(observation_to_list(obs))


# ── Streams ───────────────────────────────────────────────


def _lines(data: bytes | str | Iterable[bytes | str]) -> Iterable[bytes | str]:
    if isinstance(data, bytes):
        return data.splitlines()
    if isinstance(data, str):
        # Only \n ends a line; JSON strings may hold other line separators raw.
        return data.split("\n")
    return data


def read_observations(data: bytes | str | Iterable[bytes | str]) -> list[Observation]:
    """
    Decode newline-delimited observations. Blank lines are skipped.
    """
    out: list[Observation] = []
    for lineno, line in enumerate(_lines(data), start=1):
        if not line.strip():
            continue
        try:
            out.append(decode_observation(line))
        except ValidationError as e:
            raise ValidationError(f"line {lineno}: {e}") from e
    return out


def write_observations(observations: Iterable[Observation]) -> bytes:
    return b"".join(encode_observation(obs) + b"\n" for obs in observations)


def read_observation_set_file(
    data: bytes | str | Iterable[bytes | str],
) -> tuple[ObservationSet, list[Observation]]:
    """
    Split an Observation Set File into its set and its observations.

    Object lines are set metadata (exactly one is allowed), array lines are
    observations.
    """
    obset: ObservationSet | None = None
    observations: list[Observation] = []

    for lineno, line in enumerate(_lines(data), start=1):
        if not line.strip():
            continue
        try:
            parsed = _json_loads(line, "Observation Set File line")
            if isinstance(parsed, dict):
                if obset is not None:
                    raise ValidationError("more than one observation set object")
                obset = set_from_dict(parsed)
            else:
                observations.append(observation_from_list(parsed))
        except ValidationError as e:
            raise ValidationError(f"line {lineno}: {e}") from e

    if obset is None:
        raise ValidationError("Observation Set File has no observation set object")
    return obset, observations


def write_observation_set_file(obset: ObservationSet, observations: Iterable[Observation]) -> bytes:
    return encode_set(obset) + b"\n" + write_observations(observations)
