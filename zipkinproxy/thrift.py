"""Zipkin v1 Thrift span decoding."""

import ipaddress
import logging
import os
import struct
from typing import Any
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

import thriftpy2
from thriftpy2.protocol.binary import TBinaryProtocol
from thriftpy2.protocol.binary import read_list_begin
from thriftpy2.protocol.binary import write_list_begin
from thriftpy2.thrift import TType
from thriftpy2.transport import TMemoryBuffer

from .span import DecodeError
from .span import Endpoint
from .span import Span
from .span import TagValue
from .span import Tags
from .span import convert_duration
from .span import convert_timestamp
from .span import fold_endpoint
from .span import guess_tag_value
from .span import id_to_hex


log = logging.getLogger(__name__)


zipkin_core = thriftpy2.load(
    os.path.join(os.path.dirname(__file__), "zipkinCore.thrift"),
    module_name="zipkinCore_thrift",
)

# Big-endian layouts of the fixed width binary annotation types.
_NUMERIC_FORMATS = {
    zipkin_core.AnnotationType.I16: ">h",
    zipkin_core.AnnotationType.I32: ">i",
    zipkin_core.AnnotationType.I64: ">q",
    zipkin_core.AnnotationType.DOUBLE: ">d",
}


def _convert_ipv4(ip: Optional[int]) -> str:
    if ip is None:
        return ""
    return str(ipaddress.IPv4Address(ip & 0xFFFFFFFF))


def _convert_endpoint(host: Any) -> Optional[Endpoint]:
    if host is None:
        return None
    return Endpoint(
        ipv4=_convert_ipv4(host.ipv4),
        port=(host.port or 0) & 0xFFFF,
        service_name=_as_text(host.service_name),
    )


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return bytes(value).decode("utf-8", errors="replace")


def convert_binary_annotation_value(ba: Any) -> TagValue:
    """Decode the payload of a binary annotation according to its declared type."""
    value = _as_bytes(ba.value)
    annotation_type = ba.annotation_type
    if annotation_type == zipkin_core.AnnotationType.BOOL:
        return value > b"\x00"
    elif annotation_type == zipkin_core.AnnotationType.BYTES:
        return value
    elif annotation_type in _NUMERIC_FORMATS:
        fmt = _NUMERIC_FORMATS[annotation_type]
        if len(value) != struct.calcsize(fmt):
            log.debug(
                "binary annotation %r has %d bytes, expected %d for type %r; keeping raw bytes",
                ba.key,
                len(value),
                struct.calcsize(fmt),
                annotation_type,
            )
            return value
        number: TagValue = struct.unpack(fmt, value)[0]
        return number
    elif annotation_type == zipkin_core.AnnotationType.STRING:
        return guess_tag_value(value.decode("utf-8", errors="replace"))
    return value


def _endpoint_records(ts: Any) -> Iterator[Tuple[str, Optional[Endpoint]]]:
    for ba in ts.binary_annotations or []:
        yield _as_text(ba.key), _convert_endpoint(ba.host)
    for a in ts.annotations or []:
        yield _as_text(a.value), _convert_endpoint(a.host)


def convert_thrift_span(ts: Any) -> Span:
    tags: Tags = {}
    for ba in ts.binary_annotations or []:
        tags[_as_text(ba.key)] = convert_binary_annotation_value(ba)

    trace_id = ts.trace_id or 0
    parent_id = ""
    if ts.parent_id:
        parent_id = id_to_hex(ts.parent_id)

    span = Span(
        trace_id=id_to_hex(trace_id),
        trace_id_numeric=trace_id,
        name=_as_text(ts.name),
        span_id=id_to_hex(ts.id or 0),
        parent_span_id=parent_id,
        debug=bool(ts.debug),
        duration_ms=convert_duration(ts.duration),
        timestamp=convert_timestamp(ts.timestamp),
        tags=tags,
    )
    return span.with_endpoint(fold_endpoint(_endpoint_records(ts)))


def decode_thrift(data: bytes) -> List[Span]:
    """Decode a binary protocol list of Zipkin thrift spans.

    The element count in the list header is not trusted: malformed input can
    report an unreasonably large size, so spans are appended one at a time
    and the first unreadable struct fails the whole payload.
    """
    transport = TMemoryBuffer(data)
    # strings come back as bytes and are decoded leniently
    protocol = TBinaryProtocol(transport, decode_response=False)
    thrift_spans = []
    try:
        _, size = read_list_begin(transport)
        for _ in range(size):
            ts = zipkin_core.Span()
            ts.read(protocol)
            thrift_spans.append(ts)
    except Exception as e:
        raise DecodeError("Invalid thrift span payload: %r" % e) from e
    return [convert_thrift_span(ts) for ts in thrift_spans]


def encode_thrift(spans: Sequence[Any]) -> bytes:
    """Encode zipkin_core.Span structs as a binary protocol list."""
    transport = TMemoryBuffer()
    write_list_begin(transport, TType.STRUCT, len(spans))
    protocol = TBinaryProtocol(transport)
    for s in spans:
        protocol.write_struct(s)
    return bytes(transport.getvalue())
