"""Structured records for resolved media and its deliverable formats."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

ADULT_KEYWORDS = ("adult", "nsfw", "explicit", "18+", "mature")


class FormatKind(str, enum.Enum):
    COMBINED = "combined"
    VIDEO_ONLY = "video-only"
    AUDIO_ONLY = "audio-only"
    FALLBACK_PROXY = "fallback-proxy"

    @property
    def priority(self) -> int:
        return _KIND_PRIORITY[self]


_KIND_PRIORITY = {
    FormatKind.COMBINED: 0,
    FormatKind.VIDEO_ONLY: 1,
    FormatKind.AUDIO_ONLY: 2,
    FormatKind.FALLBACK_PROXY: 3,
}


@dataclass(frozen=True)
class VideoRecord:
    """Normalized metadata for one media item, built from one yt-dlp JSON record."""

    id: str
    title: str
    description: str = ""
    duration: float = 0.0
    thumbnail: str = ""
    channel: str = "Unknown Channel"
    channel_url: str = ""
    published_at: str | None = None
    view_count: int = 0
    like_count: int = 0
    tags: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    adult: bool = False
    is_live: bool = False
    subtitles: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_ytdlp(cls, raw: dict[str, Any]) -> "VideoRecord":
        video_id = raw.get("id") or raw.get("url")
        if not video_id:
            raise ValueError("yt-dlp record has neither id nor url")
        tags = tuple(str(t) for t in (raw.get("tags") or []) if t)
        return cls(
            id=str(video_id),
            title=raw.get("title") or "Unknown Title",
            description=raw.get("description") or "",
            duration=float(raw.get("duration") or 0),
            thumbnail=_thumbnail_url(raw),
            channel=raw.get("channel") or raw.get("uploader") or "Unknown Channel",
            channel_url=raw.get("channel_url") or raw.get("uploader_url") or "",
            published_at=format_upload_date(raw.get("upload_date")),
            view_count=int(raw.get("view_count") or 0),
            like_count=int(raw.get("like_count") or 0),
            tags=tags,
            categories=tuple(str(c) for c in (raw.get("categories") or []) if c),
            adult=detect_adult_content(raw),
            is_live=bool(raw.get("is_live")),
            subtitles=_subtitle_urls(raw),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["tags"] = list(self.tags)
        payload["categories"] = list(self.categories)
        return payload


def _thumbnail_url(raw):
    if raw.get("thumbnail"):
        return raw["thumbnail"]
    thumbnails = raw.get("thumbnails")
    if isinstance(thumbnails, list):
        for thumb in reversed(thumbnails):
            if isinstance(thumb, dict) and thumb.get("url"):
                return thumb["url"]
    return ""


def _subtitle_urls(raw):
    tracks = {}
    # Uploaded subtitles win over automatic captions for the same language.
    for source in ("automatic_captions", "subtitles"):
        entries = raw.get(source)
        if not isinstance(entries, dict):
            continue
        for language, variants in entries.items():
            if not isinstance(variants, list):
                continue
            for variant in variants:
                if isinstance(variant, dict) and variant.get("url"):
                    tracks[str(language)] = variant["url"]
                    break
    return tracks


def format_upload_date(upload_date: str | None) -> str | None:
    """Convert a yt-dlp ``YYYYMMDD`` upload date to an ISO-8601 UTC timestamp."""
    text = str(upload_date or "").strip()
    if len(text) != 8 or not text.isdigit():
        return None
    try:
        parsed = datetime.strptime(text, "%Y%m%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return parsed.isoformat()


def detect_adult_content(raw: dict[str, Any]) -> bool:
    try:
        if int(raw.get("age_limit") or 0) >= 18:
            return True
    except (TypeError, ValueError):
        pass
    content = " ".join(
        [
            str(raw.get("title") or ""),
            str(raw.get("description") or ""),
            " ".join(str(t) for t in (raw.get("tags") or [])),
        ]
    ).lower()
    return any(keyword in content for keyword in ADULT_KEYWORDS)


@dataclass(frozen=True)
class FormatDescriptor:
    """One deliverable rendition of a video.

    Required fields depend on ``kind``: combined renditions carry both codecs,
    video-only renditions a video codec, audio-only renditions an
    audio codec, and fallback renditions a label naming the proxy quality.
    """

    kind: FormatKind
    url: str
    score: int
    format_id: str | None = None
    height: int = 0
    width: int = 0
    fps: float = 0.0
    vcodec: str = "none"
    acodec: str = "none"
    ext: str = "mp4"
    filesize: int = 0
    abr: float = 0.0
    label: str = ""
    source_format_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("format descriptor requires a delivery url")
        if self.kind is FormatKind.COMBINED:
            if self.vcodec == "none" or self.acodec == "none":
                raise ValueError("combined format requires video and audio codecs")
        elif self.kind is FormatKind.VIDEO_ONLY:
            if self.vcodec == "none":
                raise ValueError("video-only format requires a video codec")
        elif self.kind is FormatKind.AUDIO_ONLY:
            if self.acodec == "none":
                raise ValueError("audio-only format requires an audio codec")
        elif not self.label:
            raise ValueError("fallback format requires a label")

    @property
    def is_local(self) -> bool:
        return self.kind is FormatKind.FALLBACK_PROXY or bool(self.source_format_ids)

    @property
    def sort_key(self) -> tuple[int, int, int, float]:
        return (self.kind.priority, -self.score, -self.height, -self.abr)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["source_format_ids"] = list(self.source_format_ids)
        payload["quality"] = f"{self.height}p" if self.height else (self.label or "audio")
        return payload
