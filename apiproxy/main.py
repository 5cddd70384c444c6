import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from apiproxy.config import get_settings, reload_settings, settings_loaded
from apiproxy.errors import InvalidJSON, ProxyError, RequestTooLarge, UpstreamError
from apiproxy.forwarder import (
    HttpxTransport,
    ProxyRequest,
    Transport,
    close_client,
    dispatch,
    get_client,
    prepare,
    relay,
)
from apiproxy.logging_conf import configure_logging
from apiproxy.metrics import FORWARD_LATENCY_SECONDS, FORWARD_TOTAL, REQUESTS_TOTAL


configure_logging()
logger = logging.getLogger("apiproxy")

PROXY_PATH = "/api/proxy"
ERROR_CONTENT_TYPE = "application/json; charset=utf-8"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_client()
    reload_settings()
    try:
        yield
    finally:
        await close_client()


app = FastAPI(title="apiproxy-lite", version="1.0.0", lifespan=lifespan)


def get_transport() -> Transport:
    return HttpxTransport(get_client())


def error_response(status_code: int, message: str) -> Response:
    return JSONResponse(
        {"ok": False, "error": {"message": message}},
        status_code=status_code,
        media_type=ERROR_CONTENT_TYPE,
    )


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    return error_response(exc.status_code, str(exc))


@app.middleware("http")
async def cors_headers_middleware(request: Request, call_next) -> Response:
    response: Response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.target_host = None
    request.state.forward_result = None

    start_time = time.monotonic()
    try:
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
    except Exception:
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        logger.exception(
            "request_failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "target_host": getattr(request.state, "target_host", None),
                "forward_result": getattr(request.state, "forward_result", None),
                "http_status": 500,
                "duration_ms": duration_ms,
            },
        )
        raise

    duration_ms = round((time.monotonic() - start_time) * 1000, 2)
    if request.url.path == PROXY_PATH:
        REQUESTS_TOTAL.labels(method=request.method, status=str(response.status_code)).inc()
    logger.info(
        "request",
        extra={
            "request_id": request_id,
            "method": request.method,
            "target_host": getattr(request.state, "target_host", None),
            "forward_result": getattr(request.state, "forward_result", None),
            "http_status": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


@app.api_route(PROXY_PATH, methods=["GET", "POST", "OPTIONS"])
async def proxy(request: Request, transport: Transport = Depends(get_transport)) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=204)

    body = None
    if request.method == "POST":
        body = await _get_request_json(request, get_settings().max_body_bytes)

    outbound = prepare(
        ProxyRequest(
            method=request.method,
            base=request.query_params.get("base"),
            path=request.query_params.get("path"),
            authorization=request.headers.get("Authorization"),
            body=body,
        )
    )
    request.state.target_host = outbound.target_host

    start = time.monotonic()
    try:
        upstream = await dispatch(transport, outbound)
    except UpstreamError as exc:
        duration = time.monotonic() - start
        FORWARD_LATENCY_SECONDS.observe(duration)
        FORWARD_TOTAL.labels(result="fail").inc()
        request.state.forward_result = "fail"
        logger.error(
            "forward_failed",
            extra={
                "request_id": request.state.request_id,
                "method": outbound.method,
                "target_host": outbound.target_host,
                "forward_result": "fail",
                "http_status": exc.status_code,
                "duration_ms": round(duration * 1000, 2),
                "error_type": type(exc.cause).__name__ if exc.cause else None,
            },
        )
        raise
    FORWARD_LATENCY_SECONDS.observe(time.monotonic() - start)
    FORWARD_TOTAL.labels(result="success").inc()
    request.state.forward_result = "success"

    result = relay(upstream)
    return Response(
        content=result.content,
        status_code=result.status_code,
        headers={"Content-Type": result.content_type},
    )


@app.get("/healthz")
async def healthz() -> Response:
    return JSONResponse({"ok": True})


@app.get("/readyz")
async def readyz() -> Response:
    loaded = settings_loaded()
    client_ready = get_client() is not None
    return JSONResponse(
        {"ready": loaded and client_ready, "settings_loaded": loaded, "http_client_ready": client_ready}
    )


@app.get("/metrics")
async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


async def _read_body_with_limit(request: Request, max_bytes: int) -> bytes:
    """Read request body with size limit. Raises RequestTooLarge (413) if exceeded."""
    body = b""
    async for chunk in request.stream():
        body += chunk
        if len(body) > max_bytes:
            raise RequestTooLarge("Request body too large")
    return body


async def _get_request_json(request: Request, max_bytes: int) -> Any:
    body = await _read_body_with_limit(request, max_bytes)
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise InvalidJSON(f"Invalid JSON body: {exc}") from exc
