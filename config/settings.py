"""Application settings constants."""

from __future__ import annotations

# Concurrent upstream deliveries allowed before new requests are rejected.
MAX_CONCURRENT_STREAMS = 10

# Upstream connect/read safety timeout for proxied streams.
STREAM_TIMEOUT_SECONDS = 30.0
STREAM_CHUNK_SIZE = 64 * 1024

# Wall-clock limits for the extraction tool, per operation.
EXTRACTION_TIMEOUTS_SECONDS = {
    "version": 10.0,
    "info": 30.0,
    "formats": 30.0,
    "direct_url": 30.0,
    "search": 45.0,
    "channel": 120.0,
}

# Result cache sizing: (ttl seconds, max entries).
CACHE_LIMITS = {
    "search": (300, 1000),
    "info": (300, 1000),
    "formats": (300, 1000),
    "channel": (600, 500),
    "direct_urls": (300, 500),
}
CACHE_SWEEP_INTERVAL_SECONDS = 600

# Entries kept per channel in the usage history.
USAGE_HISTORY_LIMIT = 100

DEFAULT_SEARCH_LIMIT = 20
DEFAULT_CHANNEL_LIMIT = 20
