"""Supervised invocation of the yt-dlp command line tool and parsing of its output."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass

from engine.errors import (
    ExtractionParseError,
    ExtractionProcessError,
    ExtractionTimeout,
    ExtractionUnavailable,
)

logger = logging.getLogger(__name__)

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={video_id}"
YOUTUBE_CHANNEL_URL = "https://www.youtube.com/channel/{channel_id}/videos"
YOUTUBE_HANDLE_URL = "https://www.youtube.com/{handle}/videos"

DATE_FILTERS = {
    "week": "now-1week",
    "month": "now-1month",
    "year": "now-1year",
}

DURATION_FILTERS = {
    "short": ("duration<=600",),
    "medium": ("duration>=600", "duration<=3600"),
    "long": ("duration>=3600",),
}


@dataclass(frozen=True)
class Exited:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class TimedOut:
    timeout_sec: float


class ToolProcess:
    """Handle on one running extraction tool process.

    The handle owns forced termination: ``wait`` either returns ``Exited`` or,
    once the deadline passes, terminates the child and returns ``TimedOut``.
    """

    def __init__(self, argv):
        self.argv = list(argv)
        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise ExtractionUnavailable(f"Failed to start {self.argv[0]}: {exc}") from exc

    @property
    def pid(self):
        return self._proc.pid

    def wait(self, timeout_sec):
        try:
            stdout, stderr = self._proc.communicate(timeout=timeout_sec)
        except subprocess.TimeoutExpired:
            self.terminate()
            return TimedOut(timeout_sec)
        return Exited(self._proc.returncode, stdout or "", stderr or "")

    def terminate(self, *, grace_sec: float = 3.0) -> None:
        """Best-effort terminate the process quickly and safely."""
        proc = self._proc
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
        except OSError:
            pass
        try:
            proc.communicate(timeout=grace_sec)
            return
        except subprocess.TimeoutExpired:
            pass
        try:
            proc.kill()
        except OSError:
            pass
        try:
            proc.communicate(timeout=grace_sec)
        except subprocess.TimeoutExpired:
            logger.error("extraction tool pid=%s did not exit after kill", proc.pid)


class YtdlpInvoker:
    def __init__(self, binary="yt-dlp", *, default_timeout_sec=30.0, process_factory=ToolProcess):
        self.binary = binary
        self.default_timeout_sec = default_timeout_sec
        self._process_factory = process_factory
        self._lock = threading.Lock()
        self.available = False
        self.version = None
        self.invocations = 0
        self.failures = 0

    def invoke(self, args, timeout_sec=None):
        """Run the tool with ``args`` and return its standard output."""
        timeout_sec = float(timeout_sec or self.default_timeout_sec)
        argv = [self.binary, *[str(arg) for arg in args]]
        with self._lock:
            self.invocations += 1
        logger.debug("yt-dlp invoke: %s (timeout=%ss)", shlex.join(argv), timeout_sec)
        try:
            outcome = self._process_factory(argv).wait(timeout_sec)
        except ExtractionUnavailable:
            self._record_failure()
            raise
        if isinstance(outcome, TimedOut):
            self._record_failure()
            logger.warning("yt-dlp timed out after %ss: %s", timeout_sec, shlex.join(argv))
            raise ExtractionTimeout(timeout_sec)
        if outcome.returncode != 0:
            self._record_failure()
            raise ExtractionProcessError(outcome.returncode, outcome.stderr)
        return outcome.stdout

    def _record_failure(self):
        with self._lock:
            self.failures += 1

    def probe(self, timeout_sec=10.0):
        """Check once whether the tool can be started; the result is advisory."""
        try:
            output = self.invoke(["--version"], timeout_sec=timeout_sec)
        except (ExtractionUnavailable, ExtractionTimeout, ExtractionProcessError) as exc:
            logger.error("yt-dlp not available: %s", exc)
            self.available = False
            self.version = None
            return False
        self.version = output.strip() or None
        self.available = True
        logger.info("yt-dlp available version=%s", self.version)
        return True

    def stats(self):
        with self._lock:
            return {
                "binary": self.binary,
                "available": self.available,
                "version": self.version,
                "invocations": self.invocations,
                "failures": self.failures,
            }


def parse_json_lines(output, *, errors=None):
    """Parse newline-delimited JSON records, skipping lines that fail to parse."""
    records = []
    for line_no, line in enumerate((output or "").splitlines(), start=1):
        text = line.strip()
        if not text:
            continue
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            _report_parse_error(ExtractionParseError(f"line {line_no}: {exc}"), errors)
            continue
        if not isinstance(record, dict):
            _report_parse_error(
                ExtractionParseError(f"line {line_no}: expected a JSON object"), errors
            )
            continue
        records.append(record)
    return records


def _report_parse_error(error, errors):
    logger.warning("Skipping unparseable yt-dlp output %s", error.details)
    if errors is not None:
        errors.append(error)


def parse_url_lines(output):
    return [line.strip() for line in (output or "").splitlines() if line.strip()]


def build_video_url(video_id):
    video_id = str(video_id or "").strip()
    if video_id.startswith(("http://", "https://")):
        return video_id
    return YOUTUBE_WATCH_URL.format(video_id=video_id)


def build_channel_url(channel_ref):
    channel_ref = str(channel_ref or "").strip()
    if channel_ref.startswith(("http://", "https://")):
        return channel_ref
    if channel_ref.startswith("@"):
        return YOUTUBE_HANDLE_URL.format(handle=channel_ref)
    return YOUTUBE_CHANNEL_URL.format(channel_id=channel_ref)


def _match_filter(clauses):
    # yt-dlp ORs repeated --match-filter flags, so every clause goes into one expression.
    clauses = [c for c in clauses if c]
    if not clauses:
        return []
    return ["--match-filter", " & ".join(clauses)]


def _content_clauses(allow_adult, duration_filter=None, include_live=False):
    clauses = []
    if not include_live:
        clauses.append("!is_live")
    if not allow_adult:
        clauses.append("age_limit<?18")
    clauses.extend(DURATION_FILTERS.get(duration_filter or "all", ()))
    return clauses


def search_argv(
    query,
    count,
    *,
    date_filter="all",
    duration_filter="all",
    allow_adult=False,
    include_live=False,
):
    argv = [
        f"ytsearch{int(count)}:{query}",
        "--dump-json",
        "--no-playlist",
        "--ignore-errors",
        "--no-warnings",
    ]
    date_after = DATE_FILTERS.get(date_filter or "all")
    if date_after:
        argv.extend(["--dateafter", date_after])
    argv.extend(_match_filter(_content_clauses(allow_adult, duration_filter, include_live)))
    return argv


def info_argv(video_id):
    return ["--dump-json", "--no-playlist", "--no-warnings", build_video_url(video_id)]


def formats_argv(video_id, selector="bestvideo+bestaudio/best"):
    return [
        "--dump-json",
        "--no-playlist",
        "--no-warnings",
        "-f",
        selector,
        build_video_url(video_id),
    ]


def direct_url_argv(video_id, selector):
    return ["--get-url", "--no-playlist", "--no-warnings", "-f", selector, build_video_url(video_id)]


def channel_argv(channel_ref, limit, *, allow_adult=False):
    argv = [
        "--dump-json",
        "--ignore-errors",
        "--no-warnings",
        "--playlist-end",
        str(int(limit)),
    ]
    argv.extend(_match_filter(_content_clauses(allow_adult)))
    argv.append(build_channel_url(channel_ref))
    return argv
