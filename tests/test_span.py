import datetime
import json

import pytest

from zipkinproxy.span import Endpoint
from zipkinproxy.span import Span
from zipkinproxy.span import convert_duration
from zipkinproxy.span import convert_timestamp
from zipkinproxy.span import fold_endpoint
from zipkinproxy.span import guess_tag_value
from zipkinproxy.span import hex_to_int64
from zipkinproxy.span import id_to_hex
from zipkinproxy.span import span_json_default


@pytest.mark.parametrize(
    "value, expected",
    [
        ("true", True),
        ("false", False),
        ("136", 136),
        ("-22", -22),
        ("0.192", 0.192),
        ("1e3", 1000.0),
        ("poodle", "poodle"),
        ("True", "True"),
        ("", ""),
        (" 12", " 12"),
        ("1_000", "1_000"),
        ("99999999999999999999", 1e20),
        ("7AREu8scycJ", "7AREu8scycJ"),
        ("1e500", "1e500"),
        ("nan", "nan"),
        ("inf", "inf"),
        ("-Infinity", "-Infinity"),
    ],
)
def test_guess_tag_value(value, expected):
    result = guess_tag_value(value)
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.parametrize("value", [True, 12, 0.5, None, [1, 2], {"a": 1}])
def test_guess_tag_value_non_string(value):
    assert guess_tag_value(value) is value


@pytest.mark.parametrize("value", ["true", "false", "136", "0.192", "poodle", "", "1e3"])
def test_guess_tag_value_idempotent(value):
    once = guess_tag_value(value)
    assert guess_tag_value(once) == once


def test_fold_endpoint_last_wins():
    a = Endpoint(ipv4="10.0.0.1", service_name="a")
    b = Endpoint(ipv4="10.0.0.2", service_name="b")
    assert fold_endpoint([("x", a), ("y", None), ("z", b)]) == b
    assert fold_endpoint([("x", b), ("y", a), ("z", None)]) == a


@pytest.mark.parametrize("key", ["ca", "sa", "cs", "sr"])
def test_fold_endpoint_skips_remote_keys(key):
    local = Endpoint(ipv4="10.0.0.1", service_name="local")
    remote = Endpoint(ipv4="10.0.0.9", service_name="remote")
    assert fold_endpoint([("lc", local), (key, remote)]) == local
    assert fold_endpoint([(key, remote)]) is None


def test_fold_endpoint_empty():
    assert fold_endpoint([]) is None


@pytest.mark.parametrize("ts", [0, None])
def test_convert_timestamp_missing(ts):
    before = datetime.datetime.now(datetime.timezone.utc)
    converted = convert_timestamp(ts)
    after = datetime.datetime.now(datetime.timezone.utc)
    assert before <= converted <= after


def test_convert_timestamp():
    assert convert_timestamp(1506629717286440) == datetime.datetime(
        2017, 9, 28, 20, 15, 17, 286440, tzinfo=datetime.timezone.utc
    )


def test_convert_timestamp_out_of_range():
    before = datetime.datetime.now(datetime.timezone.utc)
    assert convert_timestamp(2**62) >= before


@pytest.mark.parametrize(
    "duration, expected",
    [(192, 0.192), (222, 0.222), (9980, 9.98), (0, 0.0), (None, 0.0)],
)
def test_convert_duration(duration, expected):
    assert convert_duration(duration) == expected


@pytest.mark.parametrize(
    "i, expected",
    [
        (0x350565B6A90D4C8C, "350565b6a90d4c8c"),
        (1, "1"),
        (0, "0"),
        (-1, "ffffffffffffffff"),
    ],
)
def test_id_to_hex(i, expected):
    assert id_to_hex(i) == expected


@pytest.mark.parametrize(
    "trace_id, expected",
    [
        ("350565b6a90d4c8c", 3820571694088408204),
        ("ffffffffffffffff", -1),
        ("463ac35c9f6413ad48485a3953bb6124", 0x48485A3953BB6124),
        ("zzz", 0),
        ("not-a-trace-id-0000000000000001", 0),
        ("", 0),
    ],
)
def test_hex_to_int64(trace_id, expected):
    assert hex_to_int64(trace_id) == expected


def test_span_to_dict_omits_empty_fields():
    ts = convert_timestamp(1506629717286440)
    span = Span(trace_id="abc", span_id="def", name="op", timestamp=ts)
    assert span.to_dict() == {
        "trace_id": "abc",
        "name": "op",
        "span_id": "def",
        "timestamp": "2017-09-28T20:15:17.286440+00:00",
    }


def test_span_to_dict():
    ts = convert_timestamp(1506629717286440)
    span = Span(
        trace_id="abc",
        span_id="def",
        name="op",
        parent_span_id="123",
        service_name="poodle",
        host_ipv4="10.0.0.1",
        port=8080,
        debug=True,
        duration_ms=0.192,
        timestamp=ts,
        tags={"lc": "poodle", "raw": b"\x01\x02"},
    )
    d = span.to_dict()
    assert d["parent_span_id"] == "123"
    assert d["service_name"] == "poodle"
    assert d["host_ipv4"] == "10.0.0.1"
    assert d["port"] == 8080
    assert d["debug"] is True
    assert d["duration_ms"] == 0.192
    assert d["tags"] == {"lc": "poodle", "raw": b"\x01\x02"}
    assert json.loads(json.dumps(d, default=span_json_default))["tags"]["raw"] == "AQI="


def test_span_with_endpoint():
    span = Span(trace_id="abc", span_id="def")
    assert span.with_endpoint(None) is span
    updated = span.with_endpoint(Endpoint(ipv4="10.0.0.1", port=80, service_name="svc"))
    assert (updated.host_ipv4, updated.port, updated.service_name) == ("10.0.0.1", 80, "svc")
    assert updated.trace_id == "abc"


def test_span_json_default_rejects_unknown():
    with pytest.raises(TypeError):
        span_json_default(object())
