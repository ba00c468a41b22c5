"""HTTP byte-pipe from a resolved upstream media URL to a client sink."""

from __future__ import annotations

import enum
import logging
import threading

import requests
from urllib3.exceptions import ReadTimeoutError

from engine.errors import ClientAborted, DeliveryError, StreamTimeout, UpstreamHTTPError

logger = logging.getLogger(__name__)

DELIVERY_HEADERS = {
    "media": {
        "Content-Type": "video/mp4",
        "Accept-Ranges": "bytes",
        "Cache-Control": "public, max-age=3600",
        "Access-Control-Allow-Origin": "*",
    },
    "thumbnail": {
        "Content-Type": "image/jpeg",
        "Cache-Control": "public, max-age=86400",
        "Access-Control-Allow-Origin": "*",
    },
    "subtitle": {
        "Content-Type": "text/plain",
        "Cache-Control": "public, max-age=3600",
        "Access-Control-Allow-Origin": "*",
    },
}

FORWARDED_HEADERS = ("Content-Length", "Content-Type")

# iter_content decodes these, so the upstream length no longer matches the body.
DECODED_ENCODINGS = ("gzip", "deflate", "br", "zstd")

UPSTREAM_REQUEST_HEADERS = {"Accept-Encoding": "identity"}


class StreamState(str, enum.Enum):
    CONNECTING = "connecting"
    HEADERS_RECEIVED = "headers_received"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


def build_delivery_headers(content_class, upstream_headers):
    if content_class not in DELIVERY_HEADERS:
        raise ValueError(f"unknown content class: {content_class}")
    headers = dict(DELIVERY_HEADERS[content_class])
    if upstream_headers is None:
        return headers
    encoding = (upstream_headers.get("Content-Encoding") or "").lower()
    decoded = any(token.strip() in DECODED_ENCODINGS for token in encoding.split(","))
    for name in FORWARDED_HEADERS:
        if name == "Content-Length" and decoded:
            continue
        value = upstream_headers.get(name)
        if value:
            headers[name] = value
    return headers


def _is_timeout(exc):
    if isinstance(exc, requests.exceptions.Timeout):
        return True
    # iter_content re-raises read timeouts as ConnectionError wrapping urllib3's error.
    return any(isinstance(arg, ReadTimeoutError) for arg in getattr(exc, "args", ()))


class UpstreamStream:
    """One upstream response whose body is copied chunk by chunk.

    The stream starts out ``CONNECTING``; ``connect`` performs the request and
    moves it to ``HEADERS_RECEIVED`` only for a 2xx answer. ``cancel_token`` is
    checked before every upstream read; once it is set the upstream connection
    is closed and iteration fails with ``ClientAborted``.
    """

    def __init__(self, url, session, cancel_token, chunk_size, content_class="media"):
        self.url = url
        self.content_class = content_class
        self.headers = {}
        self.status_code = None
        self.cancel_token = cancel_token
        self.chunk_size = chunk_size
        self.state = StreamState.CONNECTING
        self.bytes_sent = 0
        self._response = None
        self._session = session
        self._closed = False
        self._lock = threading.Lock()

    @property
    def aborted(self):
        return self.state is StreamState.ABORTED

    def connect(self, timeout_sec):
        logger.info("Proxy %s stream connecting url_host=%s", self.content_class, _host(self.url))
        try:
            response = self._session.get(
                self.url,
                stream=True,
                headers=dict(UPSTREAM_REQUEST_HEADERS),
                timeout=(timeout_sec, timeout_sec),
                allow_redirects=True,
            )
        except requests.exceptions.RequestException as exc:
            self._finish(StreamState.FAILED)
            if _is_timeout(exc):
                raise StreamTimeout(f"upstream did not respond within {timeout_sec:g}s") from exc
            raise UpstreamHTTPError(502, f"connection failed: {exc}") from exc

        self._response = response
        self.status_code = response.status_code
        if not 200 <= response.status_code < 300:
            self._finish(StreamState.FAILED)
            raise UpstreamHTTPError(response.status_code, response.reason or "")

        self.headers = build_delivery_headers(self.content_class, response.headers)
        self.state = StreamState.HEADERS_RECEIVED
        return self

    def iter_chunks(self):
        if self._response is None:
            raise DeliveryError("stream is not connected")
        self.state = StreamState.STREAMING
        iterator = self._response.iter_content(chunk_size=self.chunk_size)
        try:
            while True:
                if self.cancel_token.is_set():
                    raise self._cancelled()
                try:
                    chunk = next(iterator)
                except StopIteration:
                    # A response closed by cancel() can read as a clean EOF.
                    if self.cancel_token.is_set():
                        raise self._cancelled() from None
                    break
                except Exception as exc:
                    if self.cancel_token.is_set():
                        raise self._cancelled() from exc
                    self._finish(StreamState.FAILED)
                    if not isinstance(exc, requests.exceptions.RequestException):
                        raise
                    if _is_timeout(exc):
                        raise StreamTimeout(f"upstream read timed out: {exc}") from exc
                    raise DeliveryError(f"upstream stream failed: {exc}") from exc
                if self.cancel_token.is_set():
                    raise self._cancelled()
                if not chunk:
                    continue
                self.bytes_sent += len(chunk)
                yield chunk
        except GeneratorExit:
            self.abort()
            raise
        self._finish(StreamState.COMPLETED)
        logger.info("Stream completed url_host=%s bytes=%s", _host(self.url), self.bytes_sent)

    def _cancelled(self):
        self.abort()
        return ClientAborted(f"client disconnected after {self.bytes_sent} bytes")

    def abort(self):
        """Close the upstream connection so no further bytes are requested."""
        if self.state in (StreamState.COMPLETED, StreamState.FAILED, StreamState.ABORTED):
            self._close()
            return
        self._finish(StreamState.ABORTED)
        logger.info("Stream aborted url_host=%s bytes=%s", _host(self.url), self.bytes_sent)

    def close(self):
        self.abort()

    def _finish(self, state):
        self.state = state
        self._close()

    def _close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            if self._response is not None:
                self._response.close()
        finally:
            self._session.close()


def _host(url):
    try:
        return requests.utils.urlparse(url).netloc
    except ValueError:
        return "?"


class StreamProxy:
    def __init__(self, *, timeout_sec=30.0, chunk_size=64 * 1024, session_factory=requests.Session):
        self.timeout_sec = float(timeout_sec)
        self.chunk_size = int(chunk_size)
        self._session_factory = session_factory

    def open(self, url, content_class="media", cancel_token=None):
        """Connect to ``url`` and return the stream once success headers arrive.

        Raises ``UpstreamHTTPError`` for non-2xx responses (nothing is written
        to the client) and ``StreamTimeout`` when the upstream does not answer
        within the safety timeout.
        """
        if content_class not in DELIVERY_HEADERS:
            raise ValueError(f"unknown content class: {content_class}")
        cancel_token = cancel_token if cancel_token is not None else threading.Event()
        if cancel_token.is_set():
            raise ClientAborted("client disconnected before connect")

        stream = UpstreamStream(url, self._session_factory(), cancel_token, self.chunk_size, content_class)
        return stream.connect(self.timeout_sec)
