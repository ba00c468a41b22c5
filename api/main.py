#!/usr/bin/env python3
import functools
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Optional

import anyio
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config import settings as defaults
from engine.errors import (
    AdmissionRejected,
    ClientAborted,
    DeliveryError,
    ExtractionError,
    ExtractionTimeout,
    FormatNotFound,
    StreamgateError,
    StreamTimeout,
    UpstreamHTTPError,
)
from engine.paths import LOG_DIR, ensure_dir
from engine.runtime import get_runtime_info
from engine.settings import load_settings_from_env
from engine.streaming_manager import build_streaming_manager

APP_NAME = "Streamgate API"
STATUS_SCHEMA_VERSION = 1
_TRUST_PROXY = os.environ.get("STREAMGATE_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}

PRESET_QUALITIES = {
    "proxy": "best",
    "proxy-best": "bestvideo+bestaudio",
    "proxy-720": "bv*[height<=720]+ba/b[height<=720]",
    "proxy-360": "bv*[height<=360]+ba/b[height<=360]",
}

# Most specific first: subclasses before their bases.
_ERROR_STATUS = (
    (AdmissionRejected, 503),
    (UpstreamHTTPError, 502),
    (StreamTimeout, 504),
    (ExtractionTimeout, 504),
    (FormatNotFound, 404),
    (ClientAborted, 499),
    (ExtractionError, 502),
    (DeliveryError, 502),
)


def _setup_logging(log_dir, level="INFO"):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "streamgate.log")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def _status_for(exc):
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def _asgi_spec_version(scope):
    raw = str(scope.get("asgi", {}).get("spec_version", "2.0"))
    try:
        return tuple(int(part) for part in raw.split("."))
    except ValueError:
        return (2, 0)


def _delivery_body(delivery):
    try:
        yield from delivery.iter_body()
    except ClientAborted as exc:
        # Nobody is left to receive an error; the delivery already recorded it.
        logging.info("Delivery stopped: %s", exc)


class DeliveryResponse(StreamingResponse):
    """Streams a ``Delivery`` body and always cancels it once the response ends.

    A client disconnect cancels the delivery as soon as it is received, which
    closes the upstream response and unblocks a worker thread stuck in a read.
    Whether the body completed, failed or the client went away, the upstream
    connection is closed and the admission slot is released exactly once.
    """

    def __init__(self, delivery):
        super().__init__(_delivery_body(delivery), status_code=200, headers=delivery.headers)
        self.delivery = delivery

    async def __call__(self, scope, receive, send):
        async def receive_or_cancel():
            message = await receive()
            if message["type"] == "http.disconnect":
                logging.info("Client disconnected during delivery of %s", scope.get("path"))
                self.delivery.cancel()
            return message

        try:
            if _asgi_spec_version(scope) >= (2, 4):
                # Starlette stops listening for disconnects on ASGI 2.4 servers.
                await self._stream_watching(scope, receive_or_cancel, send)
            else:
                await super().__call__(scope, receive_or_cancel, send)
        finally:
            self.delivery.cancel()

    async def _stream_watching(self, scope, receive, send):
        async def watch():
            while (await receive())["type"] != "http.disconnect":
                pass

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(watch)
            await super().__call__(scope, receive, send)
            task_group.cancel_scope.cancel()


app = FastAPI(
    title=APP_NAME,
    description="Streamgate API for media search, format resolution and proxied stream delivery.",
)

if _TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.exception_handler(StreamgateError)
async def streamgate_error_handler(request: Request, exc: StreamgateError):
    status = _status_for(exc)
    if status >= 500:
        logging.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_payload())


@app.on_event("startup")
async def startup():
    settings = load_settings_from_env()
    _setup_logging(LOG_DIR, settings.log_level)
    app.state.settings = settings
    app.state.streaming = build_streaming_manager(settings)
    app.state.started_at = datetime.now(timezone.utc).isoformat()
    await anyio.to_thread.run_sync(app.state.streaming.initialize)
    logging.info(
        "Streamgate started public_url=%s max_streams=%s",
        settings.public_url,
        settings.max_concurrent_streams,
    )


@app.on_event("shutdown")
async def shutdown():
    streaming = getattr(app.state, "streaming", None)
    if streaming:
        streaming.shutdown()


def _streaming():
    streaming = getattr(app.state, "streaming", None)
    if streaming is None:
        raise HTTPException(status_code=503, detail="Streaming manager not initialized")
    return streaming


async def _run(func, *args, **kwargs):
    return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))


async def _open(session, open_func, *args, **kwargs):
    """Open a delivery in a worker thread without leaking it if the request dies."""
    opened = []

    def _open_sync():
        delivery = open_func(*args, **kwargs)
        opened.append(delivery)
        return delivery

    try:
        return await anyio.to_thread.run_sync(_open_sync)
    except BaseException:
        for delivery in opened:
            delivery.cancel()
        if session is not None:
            session.close("aborted")
        raise


async def _deliver_media(channel_id, video_id, quality, format_id=None):
    streaming = _streaming()
    session = streaming.admit(channel_id, video_id, quality)
    logging.info("Proxy request channel=%s video=%s quality=%s", channel_id, video_id, quality)
    delivery = await _open(
        session,
        streaming.open_delivery,
        channel_id,
        video_id,
        quality,
        format_id,
        threading.Event(),
        session,
    )
    return DeliveryResponse(delivery)


def _split_stream_id(stream_id):
    channel_id, sep, video_id = stream_id.partition(":")
    if not sep or not channel_id or not video_id:
        raise HTTPException(status_code=400, detail="Invalid video ID format")
    return channel_id, video_id


@app.get("/health")
async def health():
    return _streaming().health()


@app.get("/api/status")
async def api_status():
    streaming = _streaming()
    stats = streaming.get_global_stats()
    return {
        "schema_version": STATUS_SCHEMA_VERSION,
        "server_time": datetime.now(timezone.utc).isoformat(),
        "started_at": getattr(app.state, "started_at", None),
        "ytdlp": streaming.invoker.stats(),
        "streams": {
            "active": stats["activeStreams"],
            "max": stats["maxConcurrentStreams"],
            "rejected": stats["admission"]["rejected"],
        },
        "caches": {name: cache["size"] for name, cache in stats["caches"].items()},
        "plugins": {
            channel_id: {
                "operations": plugin["operations"],
                "lastActivity": plugin["lastActivity"],
            }
            for channel_id, plugin in stats["plugins"].items()
        },
        "runtime": get_runtime_info(streaming.invoker),
    }


@app.get("/api/streaming/stats")
async def api_streaming_stats():
    return _streaming().get_global_stats()


@app.get("/api/streaming/{channel_id}/stats")
async def api_streaming_channel_stats(channel_id: str):
    return _streaming().get_plugin_stats(channel_id)


@app.get("/api/streaming/{channel_id}/search")
async def api_search(
    channel_id: str,
    query: str = Query(..., min_length=1),
    limit: int = Query(defaults.DEFAULT_SEARCH_LIMIT, ge=1, le=100),
    skip: int = Query(0, ge=0),
    searchType: str = "video",
    dateFilter: str = "all",
    durationFilter: str = "all",
):
    try:
        return await _run(
            _streaming().search,
            channel_id,
            query,
            limit=limit,
            skip=skip,
            search_type=searchType,
            date_filter=dateFilter,
            duration_filter=durationFilter,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/streaming/{channel_id}/info/{video_id}")
async def api_info(channel_id: str, video_id: str):
    result = await _run(_streaming().get_info, channel_id, video_id)
    if result.get("error"):
        return JSONResponse(status_code=502, content=result)
    return result


@app.get("/api/streaming/{channel_id}/formats/{video_id}")
async def api_formats(channel_id: str, video_id: str, source: str = "youtube"):
    return await _run(_streaming().get_formats, channel_id, video_id, source)


@app.get("/api/streaming/{channel_id}/channel/{channel_ref}")
async def api_channel_videos(channel_id: str, channel_ref: str, limit: int = Query(defaults.DEFAULT_CHANNEL_LIMIT, ge=1, le=200)):
    return await _run(_streaming().get_channel_videos, channel_id, channel_ref, limit)


@app.get("/api/streaming/{channel_id}/stream/{video_id}")
async def api_stream_info(channel_id: str, video_id: str, format: str = "bestvideo+bestaudio"):
    return await _run(_streaming().get_stream_info, channel_id, video_id, format)


@app.get("/api/streaming/{channel_id}/proxy/{video_id}")
async def api_proxy(channel_id: str, video_id: str, quality: str = "best", format: Optional[str] = None):
    return await _deliver_media(channel_id, video_id, quality, format)


@app.get("/api/streaming/{channel_id}/thumbnail/{video_id}")
async def api_thumbnail(channel_id: str, video_id: str):
    streaming = _streaming()
    delivery = await _open(None, streaming.open_thumbnail, channel_id, video_id, threading.Event())
    return DeliveryResponse(delivery)


@app.get("/api/streaming/{channel_id}/subtitles/{video_id}")
async def api_subtitles(channel_id: str, video_id: str, language: str = "en"):
    streaming = _streaming()
    delivery = await _open(
        None,
        streaming.open_subtitles,
        channel_id,
        video_id,
        language,
        threading.Event(),
    )
    return DeliveryResponse(delivery)


@app.get("/api/streaming/{channel_id}/combine/{video_id}")
async def api_combine(channel_id: str, video_id: str, video: Optional[str] = None, audio: Optional[str] = None):
    if not video or not audio:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Missing video or audio format ID",
                "required": ["video", "audio"],
                "received": {"video": video, "audio": audio},
            },
        )
    streaming = _streaming()
    session = streaming.admit(channel_id, video_id, "combined")
    logging.info("Combine request channel=%s video=%s video_fmt=%s audio_fmt=%s", channel_id, video_id, video, audio)
    delivery = await _open(
        session,
        streaming.open_combined,
        channel_id,
        video_id,
        video,
        audio,
        threading.Event(),
        session,
    )
    return DeliveryResponse(delivery)


@app.get("/{preset}/{media_type}/{stream_id}")
async def api_preset_proxy(preset: str, media_type: str, stream_id: str):
    quality = PRESET_QUALITIES.get(preset)
    if quality is None:
        raise HTTPException(status_code=404, detail="Not Found")
    channel_id, video_id = _split_stream_id(stream_id)
    return await _deliver_media(channel_id, video_id, quality)


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("STREAMGATE_HOST") or "0.0.0.0"
    port = int(os.environ.get("STREAMGATE_PORT") or "3100")
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
