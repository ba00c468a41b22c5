"""Search, metadata, format and direct-URL resolution backed by yt-dlp and per-operation caches."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from config import settings as defaults
from engine.errors import ExtractionParseError
from engine.formats import fallback_formats, normalize_formats
from engine.media_types import VideoRecord
from engine.result_cache import ResultCache, make_cache_key
from engine.ytdlp_invoker import (
    channel_argv,
    direct_url_argv,
    formats_argv,
    info_argv,
    parse_json_lines,
    parse_url_lines,
    search_argv,
)

logger = logging.getLogger(__name__)

CACHE_NAMES = ("search", "info", "formats", "channel", "direct_urls")
SEARCH_TYPES = ("video", "channel", "playlist")
SUPPORTED_SOURCE = "youtube"


def paginate(videos, skip, limit):
    """Slice one page out of the results fetched so far.

    ``total`` counts fetched results, not everything the source could return;
    searches fetch one past the page so ``hasMore`` stays exact.
    """
    skip = max(0, int(skip))
    limit = max(0, int(limit))
    end = skip + limit
    return {
        "videos": list(videos[skip:end]),
        "hasMore": len(videos) > end,
        "total": len(videos),
        "skip": skip,
        "limit": limit,
    }


def _records_to_videos(records):
    videos = []
    for raw in records:
        try:
            videos.append(VideoRecord.from_ytdlp(raw))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping yt-dlp record without usable metadata: %s", exc)
    return videos


class ResolutionService:
    def __init__(self, invoker, settings, *, clock=time.monotonic):
        self.invoker = invoker
        self.settings = settings
        self.caches = {}
        for name in CACHE_NAMES:
            limits = settings.caches[name]
            self.caches[name] = ResultCache(
                name,
                ttl_sec=limits.ttl_sec,
                max_entries=limits.max_entries,
                clock=clock,
            )

    def _run(self, operation, argv):
        return self.invoker.invoke(argv, timeout_sec=self.settings.timeout_for(operation))

    def search(
        self,
        query,
        limit=defaults.DEFAULT_SEARCH_LIMIT,
        skip=0,
        search_type="video",
        date_filter="all",
        duration_filter="all",
    ):
        """Return one page of search results as ``{videos, hasMore, total, skip, limit}``."""
        query = (query or "").strip()
        if not query:
            raise ValueError("query is required")
        if int(limit) <= 0 or int(skip) < 0:
            raise ValueError("limit must be positive and skip non-negative")
        if search_type not in SEARCH_TYPES:
            raise ValueError(f"unsupported search type: {search_type}")

        # One extra result tells whether another page exists.
        count = int(skip) + int(limit) + 1
        cache = self.caches["search"]
        key = make_cache_key(
            "search",
            {
                "query": query,
                "count": count,
                "searchType": search_type,
                "dateFilter": date_filter,
                "durationFilter": duration_filter,
            },
        )
        videos = cache.get(key)
        if videos is None:
            logger.info("yt-dlp search query=%r count=%s", query, count)
            output = self._run(
                "search",
                search_argv(
                    query,
                    count,
                    date_filter=date_filter,
                    duration_filter=duration_filter,
                    allow_adult=self.settings.allow_adult,
                ),
            )
            videos = _records_to_videos(parse_json_lines(output))
            cache.put(key, videos)
        else:
            logger.debug("Search cache hit query=%r", query)
        return paginate(videos, skip, limit)

    def get_info(self, video_id):
        cache = self.caches["info"]
        key = make_cache_key("info", {"videoId": video_id})
        record = cache.get(key)
        if record is not None:
            return record
        records = parse_json_lines(self._run("info", info_argv(video_id)))
        videos = _records_to_videos(records)
        if not videos:
            raise ExtractionParseError(f"no metadata record for {video_id}")
        record = videos[0]
        cache.put(key, record)
        return record

    def get_raw_formats(self, video_id):
        cache = self.caches["formats"]
        key = make_cache_key("formats", {"videoId": video_id})
        raw = cache.get(key)
        if raw is not None:
            return raw
        records = parse_json_lines(self._run("formats", formats_argv(video_id)))
        if not records:
            raise ExtractionParseError(f"no format record for {video_id}")
        raw = records[0]
        cache.put(key, raw)
        return raw

    def get_formats(self, video_id, channel_id, source=SUPPORTED_SOURCE):
        """Return the ranked deliverable formats for ``video_id``."""
        public_url = self.settings.public_url
        if (source or SUPPORTED_SOURCE) != SUPPORTED_SOURCE:
            return fallback_formats(public_url=public_url, channel_id=channel_id, video_id=video_id)
        raw = self.get_raw_formats(video_id)
        return normalize_formats(raw, video_id, channel_id=channel_id, public_url=public_url)

    def get_channel_videos(self, channel_ref, limit=defaults.DEFAULT_CHANNEL_LIMIT):
        if int(limit) <= 0:
            raise ValueError("limit must be positive")
        cache = self.caches["channel"]
        key = make_cache_key("channel", {"channelRef": channel_ref, "limit": int(limit)})
        videos = cache.get(key)
        if videos is None:
            logger.info("yt-dlp channel listing ref=%s limit=%s", channel_ref, limit)
            output = self._run(
                "channel",
                channel_argv(channel_ref, limit, allow_adult=self.settings.allow_adult),
            )
            videos = _records_to_videos(parse_json_lines(output))
            cache.put(key, videos)
        return list(videos)

    def resolve_direct_url(self, video_id, selector):
        cache = self.caches["direct_urls"]
        key = make_cache_key("direct_url", {"videoId": video_id, "selector": selector})
        url = cache.get(key)
        if url is not None:
            return url
        urls = parse_url_lines(self._run("direct_url", direct_url_argv(video_id, selector)))
        if not urls:
            raise ExtractionParseError(f"no direct URL for {video_id} ({selector})")
        url = urls[0]
        cache.put(key, url)
        return url

    def get_best_stream_urls(self, video_id):
        """Resolve the best video and best audio URLs concurrently."""
        cache = self.caches["direct_urls"]
        key = make_cache_key("best_urls", {"videoId": video_id})
        pair = cache.get(key)
        if pair is not None:
            return pair
        with ThreadPoolExecutor(max_workers=2) as executor:
            video = executor.submit(self.resolve_direct_url, video_id, "bestvideo")
            audio = executor.submit(self.resolve_direct_url, video_id, "bestaudio")
            pair = {"video": video.result(), "audio": audio.result()}
        cache.put(key, pair)
        return pair

    def sweep_caches(self):
        removed = {name: cache.sweep() for name, cache in self.caches.items()}
        total = sum(removed.values())
        if total:
            logger.info("Cache sweep removed %s expired entries %s", total, removed)
        return removed

    def cache_stats(self):
        return {name: cache.stats() for name, cache in self.caches.items()}

    def clear(self):
        for cache in self.caches.values():
            cache.clear()
