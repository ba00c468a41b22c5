"""Per-channel facade over resolution, admission, proxying and usage tracking."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings as defaults
from engine.admission import AdmissionController
from engine.errors import (
    AdmissionRejected,
    ClientAborted,
    ExtractionError,
    FormatNotFound,
    StreamgateError,
)
from engine.formats import direct_selector, find_by_format_id, select_format
from engine.resolution import ResolutionService
from engine.stream_proxy import StreamProxy
from engine.usage import UsageTracker
from engine.ytdlp_invoker import YtdlpInvoker

logger = logging.getLogger(__name__)

CACHE_SWEEP_JOB_ID = "cache_sweep"


def _utc_now():
    return datetime.now(timezone.utc).isoformat()


def _error_fields(exc):
    if isinstance(exc, StreamgateError):
        return {"error": exc.error, "details": exc.details}
    return {"error": type(exc).__name__, "details": str(exc)}


class Delivery:
    """An admitted, open upstream stream plus the bookkeeping to finish it once."""

    def __init__(self, stream, session=None, on_finish=None):
        self.stream = stream
        self.session = session
        self._on_finish = on_finish
        self._finished = False
        self._lock = threading.Lock()
        self.outcome = None

    @property
    def headers(self):
        return self.stream.headers

    @property
    def status_code(self):
        return self.stream.status_code

    @property
    def cancel_token(self):
        return self.stream.cancel_token

    def iter_body(self):
        outcome = "failed"
        error = None
        try:
            for chunk in self.stream.iter_chunks():
                yield chunk
            outcome = "completed"
        except ClientAborted as exc:
            outcome, error = "aborted", exc
            raise
        except GeneratorExit:
            self.stream.abort()
            outcome = "aborted"
            raise
        except Exception as exc:
            error = exc
            raise
        finally:
            self._finish(outcome, error)

    def cancel(self):
        """Stop the delivery from outside the body iterator (client went away)."""
        self.stream.cancel_token.set()
        self.stream.abort()
        self._finish("aborted", None)

    def _finish(self, outcome, error):
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self.outcome = outcome
        if self.session is not None:
            self.session.close(outcome)
        if self._on_finish is not None:
            self._on_finish(outcome, error, self.stream.bytes_sent)


class StreamingManager:
    def __init__(
        self,
        settings,
        *,
        invoker=None,
        resolver=None,
        admission=None,
        proxy=None,
        usage=None,
        scheduler=None,
    ):
        self.settings = settings
        self.invoker = invoker or YtdlpInvoker(
            settings.ytdlp_bin,
            default_timeout_sec=settings.timeout_for("info"),
        )
        self.resolver = resolver or ResolutionService(self.invoker, settings)
        self.admission = admission or AdmissionController(settings.max_concurrent_streams)
        self.proxy = proxy or StreamProxy(
            timeout_sec=settings.stream_timeout_sec,
            chunk_size=settings.chunk_size,
        )
        self.usage = usage or UsageTracker(settings.usage_history_limit)
        self.scheduler = scheduler
        self.started_at = time.time()

    def initialize(self, *, start_scheduler=True):
        self.invoker.probe(timeout_sec=self.settings.timeout_for("version"))
        if not start_scheduler:
            return
        if self.scheduler is None:
            self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.resolver.sweep_caches,
            trigger=IntervalTrigger(seconds=self.settings.cache_sweep_interval_sec),
            id=CACHE_SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            "Streaming manager ready: max_streams=%s sweep_every=%ss",
            self.admission.max_concurrent,
            self.settings.cache_sweep_interval_sec,
        )

    def shutdown(self):
        scheduler = self.scheduler
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
        self.resolver.clear()
        self.admission.reset()
        self.usage.clear()
        logger.info("Streaming manager shut down")

    # Resolution: extraction failures degrade to empty results.

    def search(self, channel_id, query, **options):
        self.usage.track(channel_id, "search", {"query": query, **options})
        try:
            page = self.resolver.search(query, **options)
        except ExtractionError as exc:
            logger.warning("Search failed channel=%s query=%r: %s", channel_id, query, exc)
            return {
                "videos": [],
                "hasMore": False,
                "total": 0,
                "skip": int(options.get("skip", 0)),
                "limit": int(options.get("limit", defaults.DEFAULT_SEARCH_LIMIT)),
                **_error_fields(exc),
            }
        page["videos"] = [video.to_dict() for video in page["videos"]]
        return page

    def get_info(self, channel_id, video_id):
        self.usage.track(channel_id, "info", {"videoId": video_id})
        try:
            return self.resolver.get_info(video_id).to_dict()
        except ExtractionError as exc:
            logger.warning("Info failed channel=%s video=%s: %s", channel_id, video_id, exc)
            return {"video": None, **_error_fields(exc)}

    def get_formats(self, channel_id, video_id, source="youtube"):
        self.usage.track(channel_id, "formats", {"videoId": video_id, "source": source})
        try:
            formats = self.resolver.get_formats(video_id, channel_id, source)
        except ExtractionError as exc:
            logger.warning("Formats failed channel=%s video=%s: %s", channel_id, video_id, exc)
            return {"videoId": video_id, "formats": [], **_error_fields(exc)}
        return {"videoId": video_id, "formats": [f.to_dict() for f in formats]}

    def get_channel_videos(self, channel_id, channel_ref, limit=defaults.DEFAULT_CHANNEL_LIMIT):
        self.usage.track(channel_id, "channel", {"channelRef": channel_ref, "limit": limit})
        try:
            videos = self.resolver.get_channel_videos(channel_ref, limit)
        except ExtractionError as exc:
            logger.warning("Channel listing failed channel=%s ref=%s: %s", channel_id, channel_ref, exc)
            return {"videos": [], "total": 0, **_error_fields(exc)}
        return {"videos": [video.to_dict() for video in videos], "total": len(videos)}

    def get_stream_info(self, channel_id, video_id, selector="bestvideo+bestaudio"):
        """Describe a directly playable URL for ``video_id``.

        When nothing can be resolved the answer points at this gateway's own
        best-quality proxy route instead, so clients always get a usable URL.
        """
        self.usage.track(channel_id, "stream_info", {"videoId": video_id, "format": selector})
        try:
            single = direct_selector(selector)
        except FormatNotFound:
            single = selector
        try:
            url = self.resolver.resolve_direct_url(video_id, single)
            record = self.resolver.get_info(video_id)
        except ExtractionError as exc:
            logger.warning("Stream info failed channel=%s video=%s: %s", channel_id, video_id, exc)
            return {
                "url": f"{self.settings.public_url}/proxy-best/channel/{channel_id}:{video_id}",
                "title": "Unknown Video",
                "channel": "Unknown Channel",
                "quality": "Best Available",
                "format": "mp4",
                "fallback": True,
            }
        return {
            "url": url,
            "title": record.title or "Unknown Video",
            "channel": record.channel or "Unknown Channel",
            "quality": "Best Available" if single == "best" else selector,
            "format": "mp4",
            "fallback": False,
        }

    # Delivery

    def _media_url(self, channel_id, video_id, quality, format_id):
        formats = self.resolver.get_formats(video_id, channel_id)
        if format_id:
            return find_by_format_id(formats, format_id).url
        try:
            return select_format(formats, quality).url
        except FormatNotFound:
            selector = direct_selector(quality)
            logger.info("No listed format for quality=%s, resolving selector %s", quality, selector)
            return self.resolver.resolve_direct_url(video_id, selector)

    def admit(self, channel_id, video_id, quality=None):
        """Reserve a delivery slot or raise ``AdmissionRejected`` without side effects."""
        try:
            session = self.admission.admit(channel_id, video_id, quality)
        except AdmissionRejected as exc:
            logger.warning("Stream rejected channel=%s video=%s: %s", channel_id, video_id, exc)
            self.usage.track(channel_id, "stream_rejected", {"videoId": video_id, "quality": quality})
            raise
        logger.info(
            "Stream admitted channel=%s video=%s quality=%s active=%s/%s",
            channel_id,
            video_id,
            quality,
            self.admission.active,
            self.admission.max_concurrent,
        )
        return session

    def _admitted_delivery(self, channel_id, video_id, quality, cancel_token, resolve_url, session):
        if session is None:
            session = self.admit(channel_id, video_id, quality)
        params = {"videoId": video_id, "quality": quality}
        self.usage.track(channel_id, "stream_start", params)
        try:
            url = resolve_url()
            stream = self.proxy.open(url, "media", cancel_token)
        except Exception as exc:
            session.close("failed")
            self.usage.track(channel_id, "stream_error", {**params, **_error_fields(exc)})
            logger.warning("Stream failed channel=%s video=%s: %s", channel_id, video_id, exc)
            raise

        def _on_finish(outcome, error, bytes_sent):
            if outcome == "completed":
                self.usage.track(channel_id, "stream_complete", {**params, "bytes": bytes_sent})
            else:
                fields = _error_fields(error) if error is not None else {"error": outcome}
                self.usage.track(channel_id, "stream_error", {**params, "bytes": bytes_sent, **fields})

        return Delivery(stream, session, on_finish=_on_finish)

    def open_delivery(
        self,
        channel_id,
        video_id,
        quality="best",
        format_id=None,
        cancel_token=None,
        session=None,
    ):
        """Admit, resolve and connect one media delivery.

        Admission is checked before any resolution work so a rejection costs
        nothing; callers may also pass a ``session`` they admitted themselves.
        The returned ``Delivery`` owns the admission slot until its body is
        exhausted, fails or is cancelled. If resolution or connecting fails the
        slot is released before the error propagates.
        """
        quality = quality or "best"
        return self._admitted_delivery(
            channel_id,
            video_id,
            quality,
            cancel_token,
            lambda: self._media_url(channel_id, video_id, quality, format_id),
            session,
        )

    def open_combined(
        self,
        channel_id,
        video_id,
        video_format_id=None,
        audio_format_id=None,
        cancel_token=None,
        session=None,
    ):
        """Deliver the video source track of a synthesized combined format.

        No muxing happens here; the audio track stays advertised in the format
        list for clients that can fetch it separately.
        """
        self.usage.track(
            channel_id,
            "combine",
            {"videoId": video_id, "video": video_format_id, "audio": audio_format_id},
        )

        def _resolve():
            if video_format_id:
                formats = self.resolver.get_formats(video_id, channel_id)
                try:
                    return find_by_format_id(formats, video_format_id).url
                except FormatNotFound:
                    logger.info("Format %s no longer listed for %s, using best video", video_format_id, video_id)
            return self.resolver.get_best_stream_urls(video_id)["video"]

        return self._admitted_delivery(channel_id, video_id, "combined", cancel_token, _resolve, session)

    def open_thumbnail(self, channel_id, video_id, cancel_token=None):
        self.usage.track(channel_id, "thumbnail", {"videoId": video_id})
        record = self.resolver.get_info(video_id)
        if not record.thumbnail:
            raise FormatNotFound(f"No thumbnail for {video_id}")
        return Delivery(self.proxy.open(record.thumbnail, "thumbnail", cancel_token))

    def open_subtitles(self, channel_id, video_id, language="en", cancel_token=None):
        self.usage.track(channel_id, "subtitles", {"videoId": video_id, "language": language})
        record = self.resolver.get_info(video_id)
        url = record.subtitles.get(language)
        if not url:
            raise FormatNotFound(f"No {language} subtitles for {video_id}")
        return Delivery(self.proxy.open(url, "subtitle", cancel_token))

    # Diagnostics

    def get_plugin_stats(self, channel_id):
        stats = self.usage.channel_stats(channel_id)
        return {
            "pluginId": channel_id,
            "operations": stats["operations"],
            "lastActivity": stats["last_activity"],
            "idleSec": stats["idle_sec"],
            "recentOperations": stats["recent"],
        }

    def get_global_stats(self):
        plugins = {channel_id: self.get_plugin_stats(channel_id) for channel_id in self.usage.channels()}
        return {
            "activeStreams": self.admission.active,
            "maxConcurrentStreams": self.admission.max_concurrent,
            "admission": self.admission.stats(),
            "caches": self.resolver.cache_stats(),
            "plugins": plugins,
            "totalOperations": sum(p["operations"] for p in plugins.values()),
            "uptimeSec": round(time.time() - self.started_at, 3),
        }

    def health(self):
        available = bool(self.invoker.available)
        return {
            "status": "healthy" if available else "degraded",
            "ytdlp": {"available": available, "version": self.invoker.version},
            "activeStreams": self.admission.active,
            "maxConcurrentStreams": self.admission.max_concurrent,
            "timestamp": _utc_now(),
        }


def build_streaming_manager(settings):
    return StreamingManager(settings)
