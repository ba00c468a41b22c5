from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from conftest import FakeInvoker, FakeResponse, FakeSession, json_lines, video_json
from engine.errors import (
    AdmissionRejected,
    ClientAborted,
    ExtractionTimeout,
    FormatNotFound,
    UpstreamHTTPError,
)
from engine.stream_proxy import StreamProxy
from engine.streaming_manager import CACHE_SWEEP_JOB_ID, StreamingManager

MEDIA_720 = "https://media.example.com/22.mp4"
MEDIA_1080_VIDEO = "https://media.example.com/137.mp4"


def _manager(settings, handler, responses, *, max_streams=None):
    if max_streams is not None:
        settings = replace(settings, max_concurrent_streams=max_streams)
    session = FakeSession(responses)
    invoker = FakeInvoker(handler)
    manager = StreamingManager(
        settings,
        invoker=invoker,
        proxy=StreamProxy(timeout_sec=5, chunk_size=4, session_factory=lambda: session),
    )
    return manager, invoker, session


def _operations(manager, channel_id="yt"):
    return [entry["operation"] for entry in manager.usage.history(channel_id)]


def test_delivery_streams_best_format_and_releases(settings, combined_info, make_handler) -> None:
    response = FakeResponse(chunks=[b"abcd", b"ef"], headers={"Content-Length": "6"})
    manager, _, _ = _manager(settings, make_handler(info=combined_info), {MEDIA_720: response})

    delivery = manager.open_delivery("yt", "abc", "best")
    assert manager.admission.active == 1
    assert delivery.headers["Content-Length"] == "6"

    assert b"".join(delivery.iter_body()) == b"abcdef"
    assert manager.admission.active == 0
    assert delivery.outcome == "completed"
    assert _operations(manager) == ["stream_start", "stream_complete"]


def test_client_disconnect_releases_slot_and_aborts_upstream(settings, combined_info, make_handler) -> None:
    response = FakeResponse(chunks=[b"abcd", b"efgh", b"ijkl"])
    manager, _, _ = _manager(settings, make_handler(info=combined_info), {MEDIA_720: response})
    token = threading.Event()

    delivery = manager.open_delivery("yt", "abc", "best", cancel_token=token)
    body = delivery.iter_body()
    assert next(body) == b"abcd"

    token.set()
    with pytest.raises(ClientAborted):
        next(body)

    assert manager.admission.active == 0
    assert delivery.stream.aborted
    assert response.closed
    assert response.reads == 1
    assert delivery.outcome == "aborted"
    assert _operations(manager)[-1] == "stream_error"


def test_external_cancel_is_idempotent(settings, combined_info, make_handler) -> None:
    response = FakeResponse(chunks=[b"abcd"])
    manager, _, _ = _manager(settings, make_handler(info=combined_info), {MEDIA_720: response})

    delivery = manager.open_delivery("yt", "abc")
    delivery.cancel()
    delivery.cancel()

    assert manager.admission.active == 0
    assert response.closed
    assert delivery.session.outcome == "aborted"


def test_rejection_happens_before_any_resolution(settings, combined_info, make_handler) -> None:
    manager, invoker, _ = _manager(
        settings,
        make_handler(info=combined_info),
        {MEDIA_720: FakeResponse(chunks=[b"abcd"])},
        max_streams=1,
    )
    held = manager.open_delivery("yt", "abc")
    calls_before = len(invoker.calls)

    with pytest.raises(AdmissionRejected):
        manager.open_delivery("yt", "abc")

    assert len(invoker.calls) == calls_before
    assert manager.admission.active == 1
    assert manager.admission.stats()["rejected"] == 1
    held.cancel()
    assert manager.admission.active == 0


def test_upstream_error_releases_slot(settings, combined_info, make_handler) -> None:
    manager, _, _ = _manager(
        settings,
        make_handler(info=combined_info),
        {MEDIA_720: FakeResponse(status_code=404, reason="Not Found")},
    )

    with pytest.raises(UpstreamHTTPError):
        manager.open_delivery("yt", "abc")

    assert manager.admission.active == 0
    last = manager.usage.history("yt")[-1]
    assert last["operation"] == "stream_error"
    assert last["params"]["error"] == "upstream_http_error"


def test_resolution_failure_releases_slot(settings) -> None:
    def handler(args):
        raise ExtractionTimeout(30.0)

    manager, _, _ = _manager(settings, handler, {})
    with pytest.raises(ExtractionTimeout):
        manager.open_delivery("yt", "abc")
    assert manager.admission.active == 0


def test_unlisted_quality_resolves_direct_selector(settings, combined_info, make_handler) -> None:
    direct = "https://media.example.com/direct-1440.mp4"
    handler = make_handler(info=combined_info, direct_urls={"best[height<=1440]/best": direct})
    manager, invoker, session = _manager(settings, handler, {direct: FakeResponse(chunks=[b"x"])})

    delivery = manager.open_delivery("yt", "abc", "1440p")

    assert session.requests[-1][0] == direct
    assert "--get-url" in invoker.calls[-1][0]
    delivery.cancel()


def test_format_hint_selects_exact_format(settings, combined_info, make_handler) -> None:
    manager, _, session = _manager(
        settings,
        make_handler(info=combined_info),
        {MEDIA_1080_VIDEO: FakeResponse(chunks=[b"x"])},
    )
    delivery = manager.open_delivery("yt", "abc", "best", format_id="137")
    assert session.requests[-1][0] == MEDIA_1080_VIDEO
    delivery.cancel()

    with pytest.raises(FormatNotFound):
        manager.open_delivery("yt", "abc", "best", format_id="999")
    assert manager.admission.active == 0


def test_combine_proxies_video_track(settings, make_handler) -> None:
    info = video_json(
        "abc",
        formats=[
            {"format_id": "137", "url": MEDIA_1080_VIDEO, "height": 1080, "vcodec": "avc1", "acodec": "none"},
            {"format_id": "140", "url": "https://media.example.com/140.m4a", "vcodec": "none", "acodec": "mp4a"},
        ],
    )
    manager, _, session = _manager(settings, make_handler(info=info), {MEDIA_1080_VIDEO: FakeResponse(chunks=[b"vid"])})

    delivery = manager.open_combined("yt", "abc", "137", "140")

    assert session.requests[-1][0] == MEDIA_1080_VIDEO
    assert b"".join(delivery.iter_body()) == b"vid"
    assert manager.admission.active == 0


def test_combine_falls_back_to_best_video_url(settings, make_handler) -> None:
    best_video = "https://media.example.com/best-video.mp4"
    handler = make_handler(
        info=video_json("abc", formats=[]),
        direct_urls={"bestvideo": best_video, "bestaudio": "https://media.example.com/best-audio.m4a"},
    )
    manager, _, session = _manager(settings, handler, {best_video: FakeResponse(chunks=[b"v"])})

    delivery = manager.open_combined("yt", "abc", "137", "140")

    assert session.requests[-1][0] == best_video
    delivery.cancel()


def test_thumbnail_and_subtitles(settings, combined_info, make_handler) -> None:
    thumb_url = combined_info["thumbnail"]
    subs_url = "https://subs.example.com/abc.en.vtt"
    manager, _, _ = _manager(
        settings,
        make_handler(info=combined_info),
        {
            thumb_url: FakeResponse(chunks=[b"jpg"]),
            subs_url: FakeResponse(chunks=[b"WEBVTT"], headers={"Content-Type": "text/vtt"}),
        },
    )

    thumbnail = manager.open_thumbnail("yt", "abc")
    assert thumbnail.headers["Content-Type"] == "image/jpeg"
    assert b"".join(thumbnail.iter_body()) == b"jpg"

    subtitles = manager.open_subtitles("yt", "abc", "en")
    assert subtitles.headers["Content-Type"] == "text/vtt"
    assert b"".join(subtitles.iter_body()) == b"WEBVTT"

    with pytest.raises(FormatNotFound):
        manager.open_subtitles("yt", "abc", "fr")
    assert manager.admission.active == 0


def test_search_degrades_on_extraction_failure(settings) -> None:
    def handler(args):
        raise ExtractionTimeout(45.0)

    manager, _, _ = _manager(settings, handler, {})
    result = manager.search("yt", "cats", limit=10, skip=0)

    assert result["videos"] == []
    assert result["hasMore"] is False
    assert result["error"] == "extraction_timeout"
    assert "45s" in result["details"]


def test_resolution_results_are_json_ready(settings, combined_info, make_handler) -> None:
    handler = make_handler(info=combined_info, search=json_lines([video_json("v1"), video_json("v2")]))
    manager, _, _ = _manager(settings, handler, {})

    page = manager.search("yt", "cats")
    assert [v["id"] for v in page["videos"]] == ["v1", "v2"]
    assert page["videos"][0]["tags"] == ["example"]

    info = manager.get_info("yt", "abc")
    assert info["subtitles"] == {"en": "https://subs.example.com/abc.en.vtt"}

    formats = manager.get_formats("yt", "abc")
    assert formats["formats"][0]["kind"] == "combined"

    stats = manager.get_plugin_stats("yt")
    assert stats["operations"] == 3
    assert [op["operation"] for op in stats["recentOperations"]] == ["search", "info", "formats"]


def test_info_and_formats_degrade(settings) -> None:
    manager, _, _ = _manager(settings, lambda args: "", {})
    assert manager.get_info("yt", "abc")["error"] == "extraction_parse_error"
    assert manager.get_formats("yt", "abc")["formats"] == []
    assert manager.get_channel_videos("yt", "@example")["videos"] == []


def test_initialize_schedules_sweep_and_shutdown_resets(settings) -> None:
    manager, _, _ = _manager(settings, lambda args: "", {})
    manager.initialize()
    try:
        assert manager.scheduler.get_job(CACHE_SWEEP_JOB_ID) is not None
        manager.admission.try_admit()
        manager.usage.track("yt", "search", {})
    finally:
        manager.shutdown()

    assert not manager.scheduler.running
    assert manager.admission.active == 0
    assert manager.usage.channels() == []


def test_health_and_global_stats(settings) -> None:
    manager, _, _ = _manager(settings, lambda args: "", {})
    manager.initialize(start_scheduler=False)

    health = manager.health()
    assert health["status"] == "healthy"
    assert health["maxConcurrentStreams"] == settings.max_concurrent_streams

    manager.usage.track("yt", "search", {"query": "a"})
    stats = manager.get_global_stats()
    assert stats["activeStreams"] == 0
    assert set(stats["caches"]) == {"search", "info", "formats", "channel", "direct_urls"}
    assert stats["plugins"]["yt"]["operations"] == 1
