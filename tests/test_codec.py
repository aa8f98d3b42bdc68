"""Tests for the observation set / observation wire codec."""

import json
from datetime import datetime, timezone

import pytest

from core.errors import ValidationError
from observations import codec
from observations.models import Condition, Observation, ObservationSet, Path

UTC = timezone.utc


def _set(**overrides) -> ObservationSet:
    fields = dict(
        sources=["agentA", "agentB"],
        analyzer="pto-basic",
        conditions=[Condition(name="icmp.unreachable"), Condition(name="ecn.negotiated")],
        metadata={"campaign": "test-2020", "description": "a test set"},
    )
    fields.update(overrides)
    return ObservationSet(**fields)


def _obs(**overrides) -> Observation:
    fields = dict(
        set_id=42,
        start=datetime(2020, 1, 1, 0, 0, 0, tzinfo=UTC),
        end=datetime(2020, 1, 1, 0, 5, 0, tzinfo=UTC),
        path=Path(string="1.2.3.0/24"),
        condition=Condition(name="icmp.unreachable"),
        value=0,
    )
    fields.update(overrides)
    return Observation(**fields)


class TestDecodeSet:
    def test_example_set(self):
        obset = codec.decode_set(
            b'{"_sources":["agentA"],"_analyzer":"pto-basic","_conditions":["icmp.unreachable"]}'
        )
        assert obset.sources == ["agentA"]
        assert obset.analyzer == "pto-basic"
        assert obset.conditions == [Condition(name="icmp.unreachable", id=None)]
        assert obset.metadata == {}
        assert obset.id is None

    def test_metadata_and_computed_keys(self):
        obset = codec.decode_set(
            json.dumps(
                {
                    "_sources": ["a"],
                    "_analyzer": "x",
                    "_conditions": ["c"],
                    "__link": "http://elsewhere/obs/1",
                    "__obs_count": 99,
                    "campaign": "spring",
                    "priority": 3,
                }
            )
        )
        assert obset.metadata == {"campaign": "spring", "priority": "3"}
        assert obset.link is None
        assert obset.count is None

    def test_incoming_id_is_never_honoured(self):
        obset = codec.decode_set(b'{"_sources":["a"],"_analyzer":"x","_conditions":["c"],"id":7}')
        assert obset.id is None
        assert obset.metadata == {"id": "7"}

    @pytest.mark.parametrize(
        "body, message",
        [
            ({"_analyzer": "x", "_conditions": ["c"]}, "missing _sources"),
            ({"_sources": ["a"], "_conditions": ["c"]}, "missing _analyzer"),
            ({"_sources": ["a"], "_analyzer": "x"}, "missing _conditions"),
            ({"_sources": "a", "_analyzer": "x", "_conditions": ["c"]}, "_sources not a string array"),
            ({"_sources": ["a", 1], "_analyzer": "x", "_conditions": ["c"]}, "_sources not a string array"),
            ({"_sources": [], "_analyzer": "x", "_conditions": ["c"]}, "_sources is empty"),
            ({"_sources": ["a"], "_analyzer": 5, "_conditions": ["c"]}, "_analyzer not a string"),
            ({"_sources": ["a"], "_analyzer": "", "_conditions": ["c"]}, "missing _analyzer"),
            ({"_sources": ["a"], "_analyzer": "x", "_conditions": []}, "_conditions is empty"),
            ({"_sources": ["a"], "_analyzer": "x", "_conditions": [None]}, "_conditions not a string array"),
            ({"_sources": ["a"], "_analyzer": "x", "_conditions": ["c"], "m": {"a": 1}}, "scalar value"),
        ],
    )
    def test_shape_errors(self, body, message):
        with pytest.raises(ValidationError, match=message):
            codec.decode_set(json.dumps(body))

    def test_not_json(self):
        with pytest.raises(ValidationError, match="not valid JSON"):
            codec.decode_set(b"{nope")

    def test_not_an_object(self):
        with pytest.raises(ValidationError, match="JSON object"):
            codec.decode_set(b'["a"]')


class TestEncodeSet:
    def test_round_trip(self):
        obset = _set()
        assert codec.decode_set(codec.encode_set(obset)) == obset

    def test_computed_keys(self):
        obset = _set(id=1)
        obset.link = "http://pto/obs/0000000000000001"
        obset.data_link = obset.link + "/data"
        obset.count = 12

        out = json.loads(codec.encode_set(obset))
        assert out["__link"] == "http://pto/obs/0000000000000001"
        assert out["__data"] == "http://pto/obs/0000000000000001/data"
        assert out["__obs_count"] == 12
        assert out["_conditions"] == ["icmp.unreachable", "ecn.negotiated"]
        assert out["campaign"] == "test-2020"

    def test_zero_count_is_omitted(self):
        obset = _set(id=1)
        obset.count = 0
        out = json.loads(codec.encode_set(obset))
        assert "__obs_count" not in out
        assert "__link" not in out


class TestObservations:
    def test_example_observation(self):
        obs = codec.decode_observation(
            b'["0","2020-01-01T00:00:00Z","2020-01-01T00:05:00Z","1.2.3.0/24","icmp.unreachable"]'
        )
        assert obs.set_id is None
        assert obs.start == datetime(2020, 1, 1, tzinfo=UTC)
        assert obs.end == datetime(2020, 1, 1, 0, 5, tzinfo=UTC)
        assert obs.path == Path(string="1.2.3.0/24")
        assert obs.condition == Condition(name="icmp.unreachable")
        assert obs.value == 0
        assert obs.id is None

    def test_zero_value_is_omitted(self):
        out = json.loads(codec.encode_observation(_obs(value=0)))
        assert out == ["42", "2020-01-01T00:00:00Z", "2020-01-01T00:05:00Z", "1.2.3.0/24", "icmp.unreachable"]

    def test_nonzero_value_is_kept(self):
        out = json.loads(codec.encode_observation(_obs(value=-3)))
        assert len(out) == 6
        assert out[5] == -3

    @pytest.mark.parametrize("value", [0, 1, -7, 1500])
    def test_round_trip(self, value):
        obs = _obs(value=value)
        assert codec.decode_observation(codec.encode_observation(obs)) == obs

    def test_round_trip_unassigned_set(self):
        obs = _obs(set_id=None)
        assert codec.decode_observation(codec.encode_observation(obs)) == obs

    def test_value_as_text(self):
        obs = codec.decode_observation(
            b'["1","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p","c","17"]'
        )
        assert obs.value == 17
        assert obs.set_id == 1

    @pytest.mark.parametrize(
        "value",
        ['"seven"', '"1.5"', "1.5", "true", "null", '"1_000"', '" 12 "', '"\\u0663"', '"0x10"', '""'],
    )
    def test_bad_value(self, value):
        with pytest.raises(ValidationError, match="not an integer"):
            codec.decode_observation(
                f'["1","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p","c",{value}]'
            )

    @pytest.mark.parametrize(
        "value",
        ["9223372036854775808", '"1180591620717411303424"', "-9223372036854775809"],
    )
    def test_value_out_of_range(self, value):
        with pytest.raises(ValidationError, match="out of range"):
            codec.decode_observation(
                f'["1","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p","c",{value}]'
            )

    @pytest.mark.parametrize(
        ("value", "expected"),
        [('"9223372036854775807"', 2**63 - 1), ("-9223372036854775808", -(2**63)), ('"+5"', 5)],
    )
    def test_value_limits(self, value, expected):
        obs = codec.decode_observation(
            f'["1","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p","c",{value}]'
        )
        assert obs.value == expected

    def test_too_short(self):
        with pytest.raises(ValidationError, match="at least 5 elements"):
            codec.decode_observation(b'["1","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p"]')

    def test_not_an_array(self):
        with pytest.raises(ValidationError, match="JSON array"):
            codec.decode_observation(b'{"a": 1}')

    @pytest.mark.parametrize(
        "ts",
        [
            "2020-01-01T00:00:00",
            "2020-01-01T00:00:00+00:00",
            "2020-01-01T00:00:00+01:00Z",
            "2020-01-01 00:00:00Z",
            "2020-13-01T00:00:00Z",
            "yesterday",
        ],
    )
    def test_bad_timestamp(self, ts):
        with pytest.raises(ValidationError, match="start"):
            codec.decode_observation(json.dumps(["1", ts, "2020-01-01T00:00:00Z", "p", "c"]))

    def test_fractional_seconds(self):
        obs = codec.decode_observation(
            b'["1","2020-01-01T00:00:00.25Z","2020-01-01T00:00:01Z","p","c"]'
        )
        assert obs.start.microsecond == 250000
        assert codec.format_timestamp(obs.start) == "2020-01-01T00:00:00.25Z"

    def test_unparseable_set_id_is_unassigned(self):
        obs = codec.decode_observation(b'["abc","2020-01-01T00:00:00Z","2020-01-01T00:00:00Z","p","c"]')
        assert obs.set_id is None

    def test_start_after_end_is_not_rejected(self):
        obs = codec.decode_observation(b'["1","2020-01-02T00:00:00Z","2020-01-01T00:00:00Z","p","c"]')
        assert obs.start > obs.end


class TestStreams:
    def test_read_write_observations(self):
        observations = [_obs(value=v) for v in (0, 5)]
        data = codec.write_observations(observations)
        assert data.count(b"\n") == 2
        assert codec.read_observations(data + b"\n\n") == observations

    @pytest.mark.parametrize("sep", ["\u2028", "\u2029", "\x85"])
    def test_text_splits_on_newline_only(self, sep):
        text = (
            f'["1","2020-01-01T00:00:00Z","2020-01-01T00:05:00Z","10.0.0.0/8{sep}x","c"]\n'
            '["1","2020-01-01T00:00:00Z","2020-01-01T00:05:00Z","10.0.0.0/8","c"]\r\n'
        )
        got = codec.read_observations(text)
        assert [o.path.string for o in got] == [f"10.0.0.0/8{sep}x", "10.0.0.0/8"]

    def test_error_names_line(self):
        data = codec.write_observations([_obs()]) + b'["too","short"]\n'
        with pytest.raises(ValidationError, match="line 2"):
            codec.read_observations(data)

    def test_observation_set_file(self):
        obset = _set()
        observations = [_obs(value=1), _obs(path=Path(string="10.0.0.0/8"))]
        data = codec.write_observation_set_file(obset, observations)

        got_set, got_obs = codec.read_observation_set_file(data)
        assert got_set == obset
        assert got_obs == observations

    def test_observation_set_file_needs_one_set(self):
        with pytest.raises(ValidationError, match="no observation set"):
            codec.read_observation_set_file(codec.write_observations([_obs()]))

        line = codec.encode_set(_set())
        with pytest.raises(ValidationError, match="line 2: more than one"):
            codec.read_observation_set_file(line + b"\n" + line + b"\n")
