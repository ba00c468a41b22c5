"""Classification, scoring and ranking of yt-dlp formats into deliverable variants."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable
from urllib.parse import quote, urlencode

from engine.errors import FormatNotFound
from engine.media_types import FormatDescriptor, FormatKind

logger = logging.getLogger(__name__)

VIDEO_CODEC_ALLOWLIST = ("avc1",)
AUDIO_CODEC_ALLOWLIST = ("mp4a",)

BEST_QUALITY_ALIASES = {"best", "b", "bestvideo+bestaudio", "bv*+ba/b", "bestvideo+bestaudio/best"}
AUDIO_QUALITY_ALIASES = {"audio", "bestaudio", "ba"}

_HEIGHT_RE = re.compile(r"^(\d{2,4})p$")
_HEIGHT_BOUND_RE = re.compile(r"height\s*<=\s*(\d+)")


def quality_score(height, fps=0, vcodec=None, acodec=None) -> int:
    height = int(height or 0)
    fps = float(fps or 0)
    if height >= 2160:
        score = 1000
    elif height >= 1440:
        score = 800
    elif height >= 1080:
        score = 600
    elif height >= 720:
        score = 400
    elif height >= 480:
        score = 200
    else:
        score = 100

    if fps >= 60:
        score += 100
    elif fps >= 30:
        score += 50

    if vcodec and any(tag in vcodec for tag in VIDEO_CODEC_ALLOWLIST):
        score += 50
    if acodec and any(tag in acodec for tag in AUDIO_CODEC_ALLOWLIST):
        score += 25
    return score


def _codec(value):
    # yt-dlp omits codecs it could not detect; only an explicit "none" means absent.
    if value is None:
        return "unknown"
    text = str(value).strip()
    return text or "unknown"


def classify(raw: dict[str, Any]) -> FormatKind | None:
    has_video = _codec(raw.get("vcodec")) != "none"
    has_audio = _codec(raw.get("acodec")) != "none"
    if has_video and has_audio:
        return FormatKind.COMBINED
    if has_video:
        return FormatKind.VIDEO_ONLY
    if has_audio:
        return FormatKind.AUDIO_ONLY
    return None


def _int(value):
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _float(value):
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _label(kind, height, fps):
    resolution = f"{height}p" if height else "Unknown"
    if fps and fps > 30:
        resolution = f"{resolution} {fps:g}fps"
    if kind is FormatKind.COMBINED:
        return f"Best Quality ({resolution})"
    if kind is FormatKind.VIDEO_ONLY:
        return f"Video Only ({resolution})"
    return "Audio Only"


def describe(raw: dict[str, Any]) -> FormatDescriptor | None:
    """Convert one raw yt-dlp format into a descriptor, or None if undeliverable."""
    url = raw.get("url")
    if not url or not str(url).startswith(("http://", "https://")):
        return None
    kind = classify(raw)
    if kind is None:
        return None
    vcodec = _codec(raw.get("vcodec"))
    acodec = _codec(raw.get("acodec"))
    height = _int(raw.get("height")) if kind is not FormatKind.AUDIO_ONLY else 0
    fps = _float(raw.get("fps")) if kind is not FormatKind.AUDIO_ONLY else 0.0
    return FormatDescriptor(
        kind=kind,
        url=str(url),
        score=quality_score(
            height,
            fps,
            vcodec if kind is not FormatKind.AUDIO_ONLY else None,
            acodec if kind is not FormatKind.VIDEO_ONLY else None,
        ),
        format_id=str(raw["format_id"]) if raw.get("format_id") is not None else None,
        height=height,
        width=_int(raw.get("width")) if kind is not FormatKind.AUDIO_ONLY else 0,
        fps=fps,
        vcodec=vcodec if kind is not FormatKind.AUDIO_ONLY else "none",
        acodec=acodec if kind is not FormatKind.VIDEO_ONLY else "none",
        ext=raw.get("ext") or "mp4",
        filesize=_int(raw.get("filesize") or raw.get("filesize_approx")),
        abr=_float(raw.get("abr")),
        label=_label(kind, height, fps),
    )


def _candidates(raw_info: dict[str, Any]) -> list[dict[str, Any]]:
    candidates = []
    for key in ("formats", "requested_formats"):
        entries = raw_info.get(key)
        if isinstance(entries, list):
            candidates.extend(entry for entry in entries if isinstance(entry, dict))
    if raw_info.get("url"):
        candidates.append(raw_info)
    return candidates


def _dedupe_key(descriptor):
    if descriptor.kind is FormatKind.AUDIO_ONLY:
        return (descriptor.kind, descriptor.ext, round(descriptor.abr))
    return (descriptor.kind, descriptor.height, round(descriptor.fps), descriptor.ext)


def rank(descriptors: Iterable[FormatDescriptor]) -> list[FormatDescriptor]:
    """Sort by kind priority then score, keeping the best rendition per dedupe key."""
    ranked = []
    seen = set()
    for descriptor in sorted(descriptors, key=lambda d: d.sort_key):
        key = _dedupe_key(descriptor)
        if key in seen:
            continue
        seen.add(key)
        ranked.append(descriptor)
    return ranked


def streaming_url(public_url, channel_id, video_id, action, **params):
    path = f"{public_url}/api/streaming/{quote(str(channel_id), safe='')}/{action}/{quote(str(video_id), safe='')}"
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return f"{path}?{query}" if query else path


def synthesize_combined(video, audio, *, public_url, channel_id, video_id):
    return FormatDescriptor(
        kind=FormatKind.COMBINED,
        url=streaming_url(
            public_url,
            channel_id,
            video_id,
            "combine",
            video=video.format_id,
            audio=audio.format_id,
        ),
        score=quality_score(video.height, video.fps, video.vcodec, audio.acodec),
        format_id=f"{video.format_id}+{audio.format_id}",
        height=video.height,
        width=video.width,
        fps=video.fps,
        vcodec=video.vcodec,
        acodec=audio.acodec,
        ext=video.ext,
        filesize=video.filesize + audio.filesize,
        abr=audio.abr,
        label=f"Combined Best ({video.height or 'Unknown'}p)",
        source_format_ids=(video.format_id, audio.format_id),
    )


def fallback_formats(*, public_url, channel_id, video_id) -> list[FormatDescriptor]:
    return [
        FormatDescriptor(
            kind=FormatKind.FALLBACK_PROXY,
            url=streaming_url(public_url, channel_id, video_id, "proxy", quality=quality),
            score=score,
            label=quality,
        )
        for quality, score in (("best", 1), ("worst", 0))
    ]


def normalize_formats(raw_info, video_id, *, channel_id, public_url) -> list[FormatDescriptor]:
    """Return the ranked list of deliverable variants for one yt-dlp info record."""
    descriptors = []
    for raw in _candidates(raw_info or {}):
        try:
            descriptor = describe(raw)
        except ValueError as exc:
            logger.debug("Skipping format %s: %s", raw.get("format_id"), exc)
            continue
        if descriptor is not None:
            descriptors.append(descriptor)

    if not descriptors:
        return fallback_formats(public_url=public_url, channel_id=channel_id, video_id=video_id)

    ranked = rank(descriptors)
    has_combined = any(d.kind is FormatKind.COMBINED for d in ranked)
    best_video = next((d for d in ranked if d.kind is FormatKind.VIDEO_ONLY), None)
    best_audio = next((d for d in ranked if d.kind is FormatKind.AUDIO_ONLY), None)
    if (
        not has_combined
        and best_video is not None
        and best_audio is not None
        and best_video.format_id
        and best_audio.format_id
    ):
        combined = synthesize_combined(
            best_video,
            best_audio,
            public_url=public_url,
            channel_id=channel_id,
            video_id=video_id,
        )
        ranked = [combined, *ranked]
    return ranked


def parse_height_bound(quality):
    match = _HEIGHT_BOUND_RE.search(quality or "")
    return int(match.group(1)) if match else None


def select_format(formats: list[FormatDescriptor], quality: str | None) -> FormatDescriptor:
    """Pick the variant to deliver for ``quality``; only direct upstream URLs qualify."""
    quality = (quality or "best").strip()
    lowered = quality.lower()
    direct = [f for f in formats if not f.is_local]

    if lowered in BEST_QUALITY_ALIASES:
        chosen = next(iter(direct), None)
    elif lowered == "worst":
        visual = [f for f in direct if f.kind is not FormatKind.AUDIO_ONLY]
        chosen = min(visual or direct, key=lambda f: (f.score, f.height), default=None)
    elif lowered in AUDIO_QUALITY_ALIASES:
        chosen = next((f for f in direct if f.kind is FormatKind.AUDIO_ONLY), None)
    else:
        exact = _HEIGHT_RE.match(lowered)
        bound = parse_height_bound(lowered)
        if exact:
            height = int(exact.group(1))
            chosen = next((f for f in direct if f.height == height), None)
        elif bound is not None:
            chosen = next((f for f in direct if 0 < f.height <= bound), None)
        else:
            chosen = None

    if chosen is None:
        raise FormatNotFound(f"Format {quality} not available")
    return chosen


def direct_selector(quality: str | None) -> str:
    """Map a delivery quality onto a yt-dlp selector that yields a single URL."""
    quality = (quality or "best").strip()
    lowered = quality.lower()
    if lowered in BEST_QUALITY_ALIASES:
        return "best"
    if lowered == "worst":
        return "worst"
    if lowered in AUDIO_QUALITY_ALIASES:
        return "bestaudio"
    exact = _HEIGHT_RE.match(lowered)
    bound = int(exact.group(1)) if exact else parse_height_bound(lowered)
    if bound is not None:
        return f"best[height<={bound}]/best"
    raise FormatNotFound(f"Format {quality} not available")


def find_by_format_id(formats: list[FormatDescriptor], format_id: str) -> FormatDescriptor:
    for descriptor in formats:
        if descriptor.format_id == str(format_id) and not descriptor.is_local:
            return descriptor
    raise FormatNotFound(f"Format id {format_id} not available")
