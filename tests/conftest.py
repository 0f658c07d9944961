from typing import Any
from typing import Dict
from typing import Generator
from typing import List
from typing import Optional

from aiohttp import web
import pytest

from zipkinproxy.mirror import Mirror
from zipkinproxy.proxy import make_app
from zipkinproxy.thrift import encode_thrift

from .span_utils import RecordingSink
from .span_utils import thrift_endpoint
from .span_utils import thrift_span


REFERENCE_TRACE_ID = 0x350565B6A90D4C8C


@pytest.fixture
def sink() -> Generator[RecordingSink, None, None]:
    yield RecordingSink()


@pytest.fixture
def mirror() -> Generator[Optional[Mirror], None, None]:
    yield None


@pytest.fixture
def origins_allowed() -> Generator[List[str], None, None]:
    yield []


@pytest.fixture
async def proxy_app(aiohttp_server, sink, mirror, origins_allowed):
    app = await aiohttp_server(make_app(sink, mirror=mirror, origins_allowed=origins_allowed))
    yield app


@pytest.fixture
async def proxy(proxy_app, aiohttp_client):
    client = await aiohttp_client(proxy_app)
    yield client


@pytest.fixture
async def downstream(aiohttp_server):
    """A Zipkin collector recording the payloads it receives."""
    payloads: List[Dict[str, Any]] = []

    async def handle(request: web.Request) -> web.Response:
        payloads.append({"content_type": request.headers.get("Content-Type"), "body": await request.read()})
        return web.Response(status=202)

    app = web.Application()
    app.add_routes([web.post("/api/v1/spans", handle)])
    server = await aiohttp_server(app)
    server.app["payloads"] = payloads
    yield server


@pytest.fixture
async def honeycomb(aiohttp_server):
    """A Honeycomb batch API recording the events it receives per dataset."""
    events: Dict[str, List[Dict[str, Any]]] = {}
    headers: List[Dict[str, str]] = []

    async def handle(request: web.Request) -> web.Response:
        batch = await request.json()
        events.setdefault(request.match_info["dataset"], []).extend(batch)
        headers.append(dict(request.headers))
        return web.json_response([{"status": 202} for _ in batch])

    app = web.Application()
    app.add_routes([web.post("/1/batch/{dataset}", handle)])
    server = await aiohttp_server(app)
    server.app["events"] = events
    server.app["headers"] = headers
    yield server


@pytest.fixture
def reference_thrift_spans() -> List[Any]:
    host = thrift_endpoint("10.129.211.111", service_name="poodle")
    return [
        thrift_span(
            name="/api.RetrieverService/Fetch",
            trace_id=REFERENCE_TRACE_ID,
            span_id=0x3BA1D9A5451F81C4,
            parent_id=REFERENCE_TRACE_ID,
            tags={"component": "gRPC"},
            host=host,
            timestamp=1506629717286440,
            duration=2155,
        ),
        thrift_span(
            name="persist",
            trace_id=REFERENCE_TRACE_ID,
            span_id=0x34472E70CB669B31,
            parent_id=REFERENCE_TRACE_ID,
            tags={"lc": "poodle", "responseLength": "136"},
            host=host,
            timestamp=1506629717288651,
            duration=192,
        ),
        thrift_span(
            name="markAsDone",
            trace_id=REFERENCE_TRACE_ID,
            span_id=0x2EB1B7009815C803,
            parent_id=REFERENCE_TRACE_ID,
            tags={"lc": "poodle"},
            host=host,
            timestamp=1506629717288847,
            duration=5134,
        ),
        thrift_span(
            name="executeQuery",
            trace_id=REFERENCE_TRACE_ID,
            span_id=REFERENCE_TRACE_ID,
            parent_id=0,
            tags={
                "lc": "poodle",
                "dataset_id": "90",
                "hidden_reason": "0",
                "hostname": "sea-of-dreams",
                "jaeger.version": "Go-2.8.0",
                "query_hash": "fca2835dced5d6fafb4eb9dd",
                "query_run_pk": "7AREu8scycJ",
                "sampler.param": "true",
                "sampler.type": "const",
                "team_id": "12",
                "user_id": "15",
            },
            host=host,
            timestamp=1506629717284010,
            duration=9980,
        ),
    ]


@pytest.fixture
def reference_thrift_payload(reference_thrift_spans) -> bytes:
    return encode_thrift(reference_thrift_spans)


@pytest.fixture
def reference_json_v1_span() -> Dict[str, Any]:
    endpoint = {"ipv4": "10.129.211.121", "serviceName": "shepherd"}
    return {
        "traceId": "8fe5ac327a4a4a88",
        "name": "persist",
        "id": "bb433fd338b2cecb",
        "parentId": "",
        "binaryAnnotations": [
            {"key": "lc", "value": "shepherd", "endpoint": endpoint},
            {"key": "keyToDrop", "value": "secret", "endpoint": endpoint},
            {"key": "honeycomb.dataset", "value": "write-traces", "endpoint": endpoint},
            {"key": "honeycomb.samplerate", "value": "22", "endpoint": endpoint},
        ],
        "timestamp": 1506629747288651,
        "duration": 222,
    }


@pytest.fixture
def reference_json_v2_span() -> Dict[str, Any]:
    return {
        "traceId": "5af7183fb1d4cf5f",
        "parentId": "6b221d5bc9e6496c",
        "id": "352bff9a74ca9ad2",
        "kind": "SERVER",
        "name": "get /api",
        "timestamp": 1556604172355737,
        "duration": 1431,
        "localEndpoint": {"serviceName": "backend", "ipv4": "192.168.99.1", "port": 3306},
        "remoteEndpoint": {"ipv4": "172.19.0.2", "port": 58648},
        "tags": {"http.method": "GET", "http.path": "/api", "http.status_code": "200"},
    }
