import argparse
import asyncio
import logging
import os
import sys
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from aiohttp import web
from aiohttp.web import HTTPException
from aiohttp.web import Request
from aiohttp.web import RequestPayloadError
from aiohttp.web import middleware

from . import _get_version
from .mirror import DEFAULT_BUFFER_SIZE
from .mirror import DEFAULT_MAX_CONCURRENCY
from .mirror import Mirror
from .mirror import MirrorError
from .mirror import Payload
from .sinks import DEFAULT_API_HOST
from .sinks import CompositeSink
from .sinks import HoneycombSink
from .sinks import Sink
from .sinks import StdoutSink
from .span import DecodeError
from .span import Span
from .thrift import decode_thrift
from .zipkin_json import decode_json_v1
from .zipkin_json import decode_json_v2


DEFAULT_PORT = 9411

V1_SPANS_ENDPOINT = "/api/v1/spans"
V2_SPANS_ENDPOINT = "/api/v2/spans"

_Handler = Callable[[Request], Awaitable[web.Response]]
_Decoder = Callable[[bytes], List[Span]]

# Decoder per endpoint and content type.
DECODERS: Dict[str, Dict[str, _Decoder]] = {
    V1_SPANS_ENDPOINT: {
        "application/json": decode_json_v1,
        "application/x-thrift": decode_thrift,
    },
    V2_SPANS_ENDPOINT: {
        "application/json": decode_json_v2,
    },
}

CORS_ALLOWED_METHODS = ("POST", "OPTIONS")
CORS_ALLOWED_HEADERS = ("X-Requested-With", "Content-Type")


log = logging.getLogger(__name__)


def _parse_csv(s: str) -> List[str]:
    """Return the values of a csv string.

    >>> _parse_csv("a,b,c")
    ['a', 'b', 'c']
    >>> _parse_csv(" a, b ,c ")
    ['a', 'b', 'c']
    >>> _parse_csv("a, ")
    ['a']
    """
    return [s.strip() for s in s.split(",") if s.strip() != ""]


def _parse_origins(s: str) -> List[str]:
    """Return the origins of a ';' separated list.

    >>> _parse_origins("http://a.com;http://b.com")
    ['http://a.com', 'http://b.com']
    >>> _parse_origins("")
    []
    """
    return [o.strip() for o in s.split(";") if o.strip() != ""]


def _parse_bool(s: str) -> bool:
    """
    >>> _parse_bool("1"), _parse_bool("true"), _parse_bool("0"), _parse_bool("")
    (True, True, False, False)
    """
    return s.strip().lower() in ("1", "true", "yes", "on")


@middleware
async def handle_exception_middleware(request: Request, handler: _Handler) -> web.Response:
    """Turn exceptions into 400s with the reason from the exception."""
    try:
        response = await handler(request)
        return response
    except HTTPException:
        raise
    except Exception as e:
        # aiohttp rejects reasons spanning several lines
        raise web.HTTPBadRequest(reason=" ".join(str(e).splitlines()))


def _allowed_origin(request: Request) -> Optional[str]:
    """Return the value of the Access-Control-Allow-Origin header for the request, if any."""
    origin = request.headers.get("Origin")
    if not origin:
        return None
    origins_allowed = request.app["origins_allowed"]
    if "*" in origins_allowed:
        return "*"
    if origin in origins_allowed:
        return origin
    return None


@middleware
async def cors_middleware(request: Request, handler: _Handler) -> web.Response:
    """Answer CORS preflight requests and tag responses for the allowed origins.

    With no allowed origins configured the header is never sent and browsers
    refuse cross origin submissions.
    """
    allow_origin = _allowed_origin(request)
    requested_method = request.headers.get("Access-Control-Request-Method")
    if request.method == "OPTIONS" and requested_method:
        resp = web.Response(status=200)
        if allow_origin and requested_method.upper() in CORS_ALLOWED_METHODS:
            requested_headers = _parse_csv(request.headers.get("Access-Control-Request-Headers", ""))
            allowed = {h.lower() for h in CORS_ALLOWED_HEADERS}
            if all(h.lower() in allowed for h in requested_headers):
                resp.headers["Access-Control-Allow-Origin"] = allow_origin
                resp.headers["Access-Control-Allow-Methods"] = ", ".join(CORS_ALLOWED_METHODS)
                resp.headers["Access-Control-Allow-Headers"] = ", ".join(CORS_ALLOWED_HEADERS)
        return resp

    response = await handler(request)
    if allow_origin:
        response.headers["Access-Control-Allow-Origin"] = allow_origin
    return response


async def handle_spans(request: Request) -> web.Response:
    """Decode the spans in the request body and hand them to the sink.

    The raw body is mirrored before decoding so the downstream collector sees
    exactly what was received, whether or not it parses here.
    """
    try:
        data = await request.read()
    except RequestPayloadError as e:
        log.info("error reading %s request body: %s", request.path, e)
        return web.Response(status=400, text="error ungzipping span data")
    content_type = request.headers.get("Content-Type", "")

    mirror: Optional[Mirror] = request.app["mirror"]
    if mirror is not None:
        try:
            mirror.send(Payload(content_type=content_type, body=data))
        except MirrorError as e:
            log.info("error mirroring data: %s", e)

    decoder = DECODERS[request.path].get(request.content_type)
    if decoder is None:
        log.info("unknown content type %r for %s", content_type, request.path)
        return web.Response(status=400, text="unknown content type")

    try:
        spans = await asyncio.get_running_loop().run_in_executor(None, decoder, data)
    except DecodeError as e:
        log.info("error unmarshaling %s spans: %s", content_type, e)
        return web.Response(status=400, text="error unmarshaling span data")

    log.info("received %d spans on %s", len(spans), request.path)
    sink: Sink = request.app["sink"]
    try:
        await sink.send(spans)
    except Exception:
        log.warning("error forwarding spans", exc_info=True)
    return web.Response(status=202)


async def _on_startup(app: web.Application) -> None:
    await app["sink"].start()
    if app["mirror"] is not None:
        await app["mirror"].start()


async def _on_cleanup(app: web.Application) -> None:
    if app["mirror"] is not None:
        await app["mirror"].stop()
    await app["sink"].stop()


def make_app(
    sink: Sink,
    mirror: Optional[Mirror] = None,
    origins_allowed: Iterable[str] = (),
) -> web.Application:
    app = web.Application(
        client_max_size=int(100e6),  # 100MB - arbitrary
        middlewares=[
            cors_middleware,  # type: ignore
            handle_exception_middleware,  # type: ignore
        ],
    )
    app["sink"] = sink
    app["mirror"] = mirror
    app["origins_allowed"] = frozenset(origins_allowed)
    app.add_routes([web.post(path, handle_spans) for path in DECODERS])
    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def make_sink(parsed_args: argparse.Namespace) -> CompositeSink:
    sink = CompositeSink()
    if parsed_args.writekey:
        sink.add(
            HoneycombSink(
                writekey=parsed_args.writekey,
                dataset=parsed_args.dataset,
                api_host=parsed_args.api_host,
                sample_rate=parsed_args.sample_rate,
                drop_fields=parsed_args.drop_fields,
            )
        )
    if parsed_args.debug:
        sink.add(StdoutSink())
    return sink


def main(args: Optional[List[str]] = None) -> None:
    if args is None:
        args = sys.argv[1:]
    parser = argparse.ArgumentParser(
        description="Zipkin compatible span collector forwarding to Honeycomb",
        prog="zipkinproxy",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="store_true",
        dest="version",
        help="Print version info and exit.",
    )
    parser.add_argument("-p", "--port", type=int, default=int(os.environ.get("PORT", DEFAULT_PORT)))
    parser.add_argument(
        "-k",
        "--writekey",
        type=str,
        default=os.environ.get("HONEYCOMB_WRITEKEY", ""),
        help="Honeycomb write key for your account.",
    )
    parser.add_argument(
        "-d",
        "--dataset",
        type=str,
        default=os.environ.get("HONEYCOMB_DATASET", ""),
        help="Name of the Honeycomb dataset to send spans to.",
    )
    parser.add_argument(
        "--api-host",
        type=str,
        default=os.environ.get("HONEYCOMB_API_HOST", DEFAULT_API_HOST),
        help="Hostname for the Honeycomb API server.",
    )
    parser.add_argument(
        "--sample-rate",
        type=int,
        default=int(os.environ.get("SAMPLE_RATE", 1)),
        help="Only keep 1 out of every N traces.",
    )
    parser.add_argument(
        "--drop-fields",
        type=_parse_csv,
        default=_parse_csv(os.environ.get("DROP_FIELDS", "")),
        help="Comma-separated span tags to leave out of Honeycomb events.",
    )
    parser.add_argument(
        "--downstream",
        type=str,
        default=os.environ.get("DOWNSTREAM_URL", ""),
        help="Zipkin collector URL to mirror received payloads to.",
    )
    parser.add_argument(
        "--mirror-buffer-size",
        type=int,
        default=int(os.environ.get("MIRROR_BUFFER_SIZE", DEFAULT_BUFFER_SIZE)),
        help="Number of payloads queued for the downstream collector before new ones are dropped.",
    )
    parser.add_argument(
        "--mirror-concurrency",
        type=int,
        default=int(os.environ.get("MIRROR_CONCURRENCY", DEFAULT_MAX_CONCURRENCY)),
        help="Number of concurrent requests to the downstream collector.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_parse_bool(os.environ.get("DEBUG", "")),
        help="Also print received spans to stdout.",
    )
    parser.add_argument(
        "--origins-allowed",
        type=_parse_origins,
        default=_parse_origins(os.environ.get("ORIGINS_ALLOWED", "")),
        help="';' separated origins allowed to submit spans from a browser. '*' allows any origin.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Set the log level. DEBUG, INFO, WARNING, ERROR, CRITICAL.",
    )
    parsed_args = parser.parse_args(args=args)
    logging.basicConfig(level=parsed_args.log_level)

    if parsed_args.version:
        print(_get_version())
        sys.exit(0)

    if parsed_args.writekey and not parsed_args.dataset:
        parser.error("--dataset is required with --writekey")
    sink = make_sink(parsed_args)
    if not sink.sinks:
        parser.error("--writekey and --dataset are required unless --debug is set")

    mirror = None
    if parsed_args.downstream:
        mirror = Mirror(
            parsed_args.downstream,
            buffer_size=parsed_args.mirror_buffer_size,
            max_concurrency=parsed_args.mirror_concurrency,
        )

    app = make_app(sink, mirror=mirror, origins_allowed=parsed_args.origins_allowed)

    async def run_server():
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, port=parsed_args.port)
        await site.start()
        log.info("listening on port %d", parsed_args.port)
        print(f"======== Running Zipkin proxy on port {parsed_args.port} ========")
        print("(Press CTRL+C to quit)")

        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
