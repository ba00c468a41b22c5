import json
import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from requests.structures import CaseInsensitiveDict  # noqa: E402

from engine.settings import load_settings  # noqa: E402


class FakeInvoker:
    """Stands in for YtdlpInvoker; ``handler(args)`` returns stdout or raises."""

    def __init__(self, handler=None, *, available=True, version="2024.08.06"):
        self.handler = handler or (lambda args: "")
        self.calls = []
        self.available = available
        self.version = version

    def invoke(self, args, timeout_sec=None):
        self.calls.append((list(args), timeout_sec))
        return self.handler(list(args))

    def probe(self, timeout_sec=10.0):
        return self.available

    def stats(self):
        return {
            "binary": "yt-dlp",
            "available": self.available,
            "version": self.version,
            "invocations": len(self.calls),
            "failures": 0,
        }


class FakeResponse:
    def __init__(self, status_code=200, chunks=(), headers=None, reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers or {})
        self._chunks = list(chunks)
        self.closed = False
        self.reads = 0

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            self.reads += 1
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.responses = responses if responses is not None else {}
        self.error = error
        self.requests = []
        self.closed = False

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        if isinstance(self.responses, FakeResponse):
            return self.responses
        response = self.responses.get(url)
        if response is None:
            return FakeResponse(status_code=404, reason="Not Found")
        return response

    def close(self):
        self.closed = True


def video_json(video_id, **extra):
    record = {
        "id": video_id,
        "title": f"Video {video_id}",
        "description": "",
        "duration": 120,
        "thumbnail": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        "channel": "Example Channel",
        "channel_url": "https://www.youtube.com/@example",
        "upload_date": "20240115",
        "view_count": 10,
        "like_count": 1,
        "tags": ["example"],
    }
    record.update(extra)
    return record


def raw_format(format_id, height, *, vcodec="avc1.64001F", acodec="mp4a.40.2", fps=30, ext="mp4", abr=None):
    entry = {
        "format_id": str(format_id),
        "url": f"https://media.example.com/{format_id}.{ext}",
        "height": height,
        "width": int(height * 16 / 9) if height else None,
        "fps": fps,
        "vcodec": vcodec,
        "acodec": acodec,
        "ext": ext,
    }
    if abr is not None:
        entry["abr"] = abr
    return entry


def json_lines(records):
    return "\n".join(json.dumps(record) for record in records) + "\n"


@pytest.fixture
def settings():
    return load_settings(environ={})


@pytest.fixture
def combined_info():
    return video_json(
        "abc",
        formats=[
            raw_format("18", 360),
            raw_format("22", 720),
            raw_format("137", 1080, acodec="none"),
            raw_format("140", None, vcodec="none", abr=128),
        ],
        subtitles={"en": [{"ext": "vtt", "url": "https://subs.example.com/abc.en.vtt"}]},
    )


@pytest.fixture
def make_handler():
    """Build an invoker handler that answers by yt-dlp mode."""

    def _make(*, info=None, search=None, direct_urls=None, channel=None):
        def handler(args):
            if "--get-url" in args:
                selector = args[args.index("-f") + 1]
                url = (direct_urls or {}).get(selector)
                return f"{url}\n" if url else ""
            if args and args[0].startswith("ytsearch"):
                # yt-dlp stops after the N results requested by ytsearchN.
                count = int(args[0][len("ytsearch"):].split(":", 1)[0])
                lines = (search or "").splitlines()[:count]
                return "\n".join(lines) + "\n" if lines else ""
            if "--playlist-end" in args:
                return channel or ""
            return json_lines([info]) if info else ""

        return handler

    return _make
