"""Zipkin JSON v1 and v2 span decoding."""

import json
import logging
from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Tuple
from typing import Type
from typing import Union
from typing import cast

from typing_extensions import NotRequired
from typing_extensions import TypedDict

from .span import KIND_TAG
from .span import DecodeError
from .span import Endpoint
from .span import Span
from .span import Tags
from .span import convert_duration
from .span import convert_timestamp
from .span import fold_endpoint
from .span import guess_tag_value
from .span import hex_to_int64


log = logging.getLogger(__name__)


class JSONEndpoint(TypedDict):
    ipv4: NotRequired[str]
    port: NotRequired[int]
    serviceName: NotRequired[str]


class V1Annotation(TypedDict):
    timestamp: NotRequired[int]
    value: NotRequired[str]
    endpoint: NotRequired[Optional[JSONEndpoint]]


class V1BinaryAnnotation(TypedDict):
    key: NotRequired[str]
    value: NotRequired[Any]
    endpoint: NotRequired[Optional[JSONEndpoint]]


class V1Span(TypedDict):
    traceId: str
    name: str
    id: str
    parentId: NotRequired[str]
    annotations: NotRequired[List[Optional[V1Annotation]]]
    binaryAnnotations: NotRequired[List[Optional[V1BinaryAnnotation]]]
    debug: NotRequired[bool]
    timestamp: NotRequired[int]
    duration: NotRequired[int]


class V2Span(TypedDict):
    traceId: str
    name: str
    id: str
    parentId: NotRequired[str]
    kind: NotRequired[str]
    localEndpoint: NotRequired[Optional[JSONEndpoint]]
    remoteEndpoint: NotRequired[Optional[JSONEndpoint]]
    tags: NotRequired[Optional[Dict[str, Any]]]
    debug: NotRequired[bool]
    timestamp: NotRequired[int]
    duration: NotRequired[int]


_TYPE_NAMES = {str: "string", int: "integer", bool: "boolean", dict: "object", list: "array"}


def _check_type(obj: Dict[str, Any], key: str, expected: Type[Any], where: str) -> None:
    """Assert that obj[key], when present and not null, is of the expected JSON type."""
    if key not in obj or obj[key] is None:
        return
    value = obj[key]
    # bool is an int subclass, JSON true/false is not a number
    ok = isinstance(value, expected) and not (expected is int and isinstance(value, bool))
    if not ok:
        raise DecodeError(
            "Expected '%s.%s' to be of type: '%s', got: %r" % (where, key, _TYPE_NAMES[expected], type(value))
        )


def _check_span(obj: Any, string_fields: Tuple[str, ...]) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        raise DecodeError("Expected span to be of type: 'object', got: %r" % type(obj))
    for key in string_fields:
        _check_type(obj, key, str, "span")
    _check_type(obj, "debug", bool, "span")
    _check_type(obj, "timestamp", int, "span")
    _check_type(obj, "duration", int, "span")
    return obj


def _verify_endpoint(maybe_endpoint: Any, where: str) -> Optional[JSONEndpoint]:
    if maybe_endpoint is None:
        return None
    if not isinstance(maybe_endpoint, dict):
        raise DecodeError("Expected '%s' to be of type: 'object', got: %r" % (where, type(maybe_endpoint)))
    _check_type(maybe_endpoint, "ipv4", str, where)
    _check_type(maybe_endpoint, "port", int, where)
    _check_type(maybe_endpoint, "serviceName", str, where)
    return cast(JSONEndpoint, maybe_endpoint)


def _convert_endpoint(e: Optional[JSONEndpoint]) -> Optional[Endpoint]:
    if e is None:
        return None
    return Endpoint(
        ipv4=e.get("ipv4") or "",
        port=e.get("port") or 0,
        service_name=e.get("serviceName") or "",
    )


def _load_array(data: Union[bytes, str]) -> List[Any]:
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError("Invalid JSON span payload: %s" % e) from e
    if not isinstance(payload, list):
        raise DecodeError("Span payload must be a list, got type %r." % type(payload))
    return payload


def _verify_list(obj: Dict[str, Any], key: str) -> List[Any]:
    _check_type(obj, key, list, "span")
    return cast(List[Any], obj.get(key) or [])


def _verify_v1_span(maybe_span: Any) -> V1Span:
    d = _check_span(maybe_span, ("traceId", "name", "id", "parentId"))
    annotations = []
    for a in _verify_list(d, "annotations"):
        if a is None:
            continue
        if not isinstance(a, dict):
            raise DecodeError("Expected annotation to be of type: 'object', got: %r" % type(a))
        _check_type(a, "value", str, "annotation")
        _check_type(a, "timestamp", int, "annotation")
        _verify_endpoint(a.get("endpoint", a.get("host")), "annotation.endpoint")
        annotations.append(a)
    binary_annotations = []
    for ba in _verify_list(d, "binaryAnnotations"):
        if ba is None:
            continue
        if not isinstance(ba, dict):
            raise DecodeError("Expected binary annotation to be of type: 'object', got: %r" % type(ba))
        _check_type(ba, "key", str, "binaryAnnotation")
        _verify_endpoint(ba.get("endpoint", ba.get("host")), "binaryAnnotation.endpoint")
        binary_annotations.append(ba)
    d["annotations"] = annotations
    d["binaryAnnotations"] = binary_annotations
    return cast(V1Span, d)


def _annotation_endpoint(a: Union[V1Annotation, V1BinaryAnnotation]) -> Optional[Endpoint]:
    # Older clients send the endpoint under "host".
    raw = a.get("endpoint", cast(Dict[str, Any], a).get("host"))
    return _convert_endpoint(cast(Optional[JSONEndpoint], raw))


def _v1_endpoint_records(zs: V1Span) -> Iterator[Tuple[str, Optional[Endpoint]]]:
    for ba in zs.get("binaryAnnotations", []):
        if ba is not None:
            yield ba.get("key") or "", _annotation_endpoint(ba)
    for a in zs.get("annotations", []):
        if a is not None:
            yield a.get("value") or "", _annotation_endpoint(a)


def convert_json_v1_span(zs: V1Span) -> Span:
    trace_id = zs.get("traceId") or ""
    tags: Tags = {}
    for ba in zs.get("binaryAnnotations", []):
        if ba is not None:
            tags[ba.get("key") or ""] = guess_tag_value(ba.get("value"))
    span = Span(
        trace_id=trace_id,
        trace_id_numeric=hex_to_int64(trace_id),
        name=zs.get("name") or "",
        span_id=zs.get("id") or "",
        parent_span_id=zs.get("parentId") or "",
        debug=bool(zs.get("debug")),
        duration_ms=convert_duration(zs.get("duration")),
        timestamp=convert_timestamp(zs.get("timestamp")),
        tags=tags,
    )
    return span.with_endpoint(fold_endpoint(_v1_endpoint_records(zs)))


def decode_json_v1(data: Union[bytes, str]) -> List[Span]:
    """Decode a JSON array of Zipkin v1 spans.

    The payload is validated in full before any span is converted so that a
    malformed document never yields a partial result.
    """
    zipkin_spans = [_verify_v1_span(s) for s in _load_array(data)]
    return [convert_json_v1_span(zs) for zs in zipkin_spans]


def _verify_v2_span(maybe_span: Any) -> V2Span:
    d = _check_span(maybe_span, ("traceId", "name", "id", "parentId", "kind"))
    _verify_endpoint(d.get("localEndpoint"), "span.localEndpoint")
    _verify_endpoint(d.get("remoteEndpoint"), "span.remoteEndpoint")
    _check_type(d, "tags", dict, "span")
    _check_type(d, "annotations", list, "span")
    return cast(V2Span, d)


def convert_json_v2_span(zs: V2Span) -> Span:
    trace_id = zs.get("traceId") or ""
    tags: Tags = dict(zs.get("tags") or {})
    tags[KIND_TAG] = zs.get("kind") or ""
    span = Span(
        trace_id=trace_id,
        trace_id_numeric=hex_to_int64(trace_id),
        name=zs.get("name") or "",
        span_id=zs.get("id") or "",
        parent_span_id=zs.get("parentId") or "",
        debug=bool(zs.get("debug")),
        duration_ms=convert_duration(zs.get("duration")),
        timestamp=convert_timestamp(zs.get("timestamp")),
        tags=tags,
    )
    # remoteEndpoint describes the other side of the call and is left out.
    local = _convert_endpoint(zs.get("localEndpoint"))
    if local is None or local.is_empty():
        return span
    return span.with_endpoint(local)


def decode_json_v2(data: Union[bytes, str]) -> List[Span]:
    """Decode a JSON array of Zipkin v2 spans.

    v2 tags are natively typed and copied as-is, the span kind is always
    recorded under the ``kind`` tag.
    """
    zipkin_spans = [_verify_v2_span(s) for s in _load_array(data)]
    return [convert_json_v2_span(zs) for zs in zipkin_spans]
