"""Normalized span model and the helpers shared by the wire-format decoders."""

import base64
import dataclasses
from dataclasses import dataclass
from dataclasses import field
import datetime
import logging
import math
import re
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Optional
from typing import Tuple
from typing import Union


log = logging.getLogger(__name__)


TagValue = Union[bool, int, float, str, bytes]
Tags = Dict[str, TagValue]

# Binary annotation keys and annotation values describing the *remote* side of
# an RPC. Their endpoint is another machine than the one reporting the span.
# https://github.com/openzipkin/zipkin/blob/c7b341b9b421e7a57c/zipkin/src/main/java/zipkin/Endpoint.java#L35
CLIENT_ADDR = "ca"
SERVER_ADDR = "sa"
CLIENT_SEND = "cs"
SERVER_RECV = "sr"
REMOTE_ENDPOINT_KEYS = frozenset([CLIENT_ADDR, SERVER_ADDR, CLIENT_SEND, SERVER_RECV])

KIND_TAG = "kind"

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_UINT64_MASK = 2**64 - 1

_DECIMAL_INT = re.compile(r"[+-]?[0-9]+\Z")
_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class DecodeError(ValueError):
    """Raised when a payload does not parse as its declared wire format."""


@dataclass(frozen=True)
class Endpoint:
    ipv4: str = ""
    port: int = 0
    service_name: str = ""

    def is_empty(self) -> bool:
        return self == Endpoint()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class Span:
    """A Zipkin span in a shape convenient for event sinks.

    - Binary annotations (or v2 tags) are turned into a key: value map.
    - The endpoint representing the reporting service is lifted into the
      top-level ``host_ipv4``/``port``/``service_name`` fields.
    - Timestamps become aware UTC datetimes, durations become milliseconds.
    """

    trace_id: str
    span_id: str
    name: str = ""
    trace_id_numeric: int = 0
    parent_span_id: str = ""
    service_name: str = ""
    host_ipv4: str = ""
    port: int = 0
    debug: bool = False
    duration_ms: float = 0.0
    timestamp: datetime.datetime = field(default_factory=_now)
    tags: Tags = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Return the serializable form of the span, omitting empty optional fields."""
        d: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "name": self.name,
            "span_id": self.span_id,
        }
        for attr in ("parent_span_id", "service_name", "host_ipv4", "port", "debug", "duration_ms"):
            value = getattr(self, attr)
            if value:
                d[attr] = value
        d["timestamp"] = self.timestamp.isoformat()
        if self.tags:
            d["tags"] = dict(self.tags)
        return d

    def with_endpoint(self, endpoint: Optional[Endpoint]) -> "Span":
        if endpoint is None:
            return self
        return dataclasses.replace(
            self, host_ipv4=endpoint.ipv4, port=endpoint.port, service_name=endpoint.service_name
        )


def span_json_default(o: Any) -> Any:
    """``json.dumps`` hook for values found in ``Span.to_dict()``."""
    if isinstance(o, (bytes, bytearray)):
        return base64.b64encode(o).decode("ascii")
    raise TypeError("Object of type %s is not JSON serializable" % type(o).__name__)


def _parse_int64(s: str) -> Optional[int]:
    if not _DECIMAL_INT.match(s):
        return None
    i = int(s)
    if i < _INT64_MIN or i > _INT64_MAX:
        return None
    return i


def _parse_float(s: str) -> Optional[float]:
    if s != s.strip() or "_" in s:
        return None
    try:
        f = float(s)
    except ValueError:
        return None
    if not math.isfinite(f):
        return None
    return f


def guess_tag_value(v: Any) -> Any:
    """Return the most specific value for a text encoded tag value.

    Zipkin v1 binary annotation values are always transmitted as strings, so
    ``"true"``/``"false"`` become booleans and numeric strings become ints or
    floats. Values that are not strings are returned untouched since some
    clients send already typed values.

    >>> guess_tag_value("true"), guess_tag_value("136"), guess_tag_value("0.192")
    (True, 136, 0.192)
    >>> guess_tag_value("poodle")
    'poodle'
    """
    if not isinstance(v, str):
        return v
    if v == "false":
        return False
    if v == "true":
        return True
    i = _parse_int64(v)
    if i is not None:
        return i
    f = _parse_float(v)
    if f is not None:
        return f
    return v


def fold_endpoint(records: Iterable[Tuple[str, Optional[Endpoint]]]) -> Optional[Endpoint]:
    """Return the endpoint of the last eligible record, in source order.

    Records keyed by a remote endpoint designator never contribute since
    they describe the other side of the call.
    """
    endpoint = None
    for key, ep in records:
        if ep is None or key in REMOTE_ENDPOINT_KEYS:
            continue
        endpoint = ep
    return endpoint


def convert_timestamp(ts_micros: Optional[int]) -> datetime.datetime:
    """Turn a Zipkin timestamp (epoch microseconds) into an aware UTC datetime.

    A missing or zero timestamp falls back to the current time so that the
    span still lands somewhere sensible on a time series.
    """
    if not ts_micros:
        return _now()
    try:
        return _EPOCH + datetime.timedelta(microseconds=ts_micros)
    except OverflowError:
        log.debug("timestamp %r out of range, using the current time", ts_micros)
        return _now()


def convert_duration(duration_micros: Optional[int]) -> float:
    if not duration_micros:
        return 0.0
    return duration_micros / 1000.0


def id_to_hex(i: int) -> str:
    """Return the lowercase hex form of a 64-bit id, negative ids as unsigned."""
    return "%x" % (i & _UINT64_MASK)


def hex_to_int64(trace_id: str) -> int:
    """Return the signed 64-bit form of a hex trace id, 0 if it can't be parsed.

    128-bit ids are reduced to their low 64 bits so that the value matches the
    one carried natively by thrift payloads.
    """
    if not trace_id or not all(c in "0123456789abcdefABCDEF" for c in trace_id):
        log.debug("unparseable trace id %r, using 0", trace_id)
        return 0
    i = int(trace_id[-16:], 16)
    if i > _INT64_MAX:
        i -= 2**64
    return i
