import json
import logging
import os
from dataclasses import dataclass, field, replace

from config import settings as defaults
from engine.paths import resolve_config_path

_ENV_PREFIX = "STREAMGATE_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class CacheLimits:
    ttl_sec: float
    max_entries: int


def _default_cache_limits():
    return {
        name: CacheLimits(ttl_sec=float(ttl), max_entries=int(size))
        for name, (ttl, size) in defaults.CACHE_LIMITS.items()
    }


@dataclass(frozen=True)
class GatewaySettings:
    ytdlp_bin: str = "yt-dlp"
    public_url: str = "http://localhost:3100"
    max_concurrent_streams: int = defaults.MAX_CONCURRENT_STREAMS
    stream_timeout_sec: float = defaults.STREAM_TIMEOUT_SECONDS
    chunk_size: int = defaults.STREAM_CHUNK_SIZE
    timeouts: dict = field(default_factory=lambda: dict(defaults.EXTRACTION_TIMEOUTS_SECONDS))
    caches: dict = field(default_factory=_default_cache_limits)
    cache_sweep_interval_sec: float = float(defaults.CACHE_SWEEP_INTERVAL_SECONDS)
    usage_history_limit: int = defaults.USAGE_HISTORY_LIMIT
    allow_adult: bool = False
    log_level: str = "INFO"

    def timeout_for(self, operation):
        return float(self.timeouts.get(operation) or defaults.EXTRACTION_TIMEOUTS_SECONDS["info"])


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for key in ("max_concurrent_streams", "chunk_size", "usage_history_limit"):
        value = config.get(key)
        if value is not None and (not isinstance(value, int) or value <= 0):
            errors.append(f"{key} must be a positive integer")

    for key in ("stream_timeout_sec", "cache_sweep_interval_sec"):
        value = config.get(key)
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"{key} must be a positive number")

    timeouts = config.get("timeouts")
    if timeouts is not None:
        if not isinstance(timeouts, dict):
            errors.append("timeouts must be an object")
        else:
            for name, value in timeouts.items():
                if not isinstance(value, (int, float)) or value <= 0:
                    errors.append(f"timeouts.{name} must be a positive number")

    caches = config.get("caches")
    if caches is not None:
        if not isinstance(caches, dict):
            errors.append("caches must be an object")
        else:
            for name, limits in caches.items():
                if name not in defaults.CACHE_LIMITS:
                    errors.append(f"caches.{name} is not a known cache")
                    continue
                if not isinstance(limits, dict):
                    errors.append(f"caches.{name} must be an object")
                    continue
                ttl = limits.get("ttl_sec")
                size = limits.get("max_entries")
                if ttl is not None and (not isinstance(ttl, (int, float)) or ttl <= 0):
                    errors.append(f"caches.{name}.ttl_sec must be a positive number")
                if size is not None and (not isinstance(size, int) or size <= 0):
                    errors.append(f"caches.{name}.max_entries must be a positive integer")

    public_url = config.get("public_url")
    if public_url is not None and not str(public_url).startswith(("http://", "https://")):
        errors.append("public_url must be an http(s) URL")
    return errors


def _env(environ, name):
    raw = environ.get(f"{_ENV_PREFIX}{name}")
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_overrides(environ):
    overrides = {}
    for key, cast in (
        ("ytdlp_bin", str),
        ("public_url", str),
        ("max_concurrent_streams", int),
        ("stream_timeout_sec", float),
        ("chunk_size", int),
        ("cache_sweep_interval_sec", float),
        ("usage_history_limit", int),
        ("log_level", str),
    ):
        raw = _env(environ, key.upper())
        if raw is None:
            continue
        try:
            overrides[key] = cast(raw)
        except ValueError:
            logging.warning("Ignoring invalid %s%s=%r", _ENV_PREFIX, key.upper(), raw)
    allow_adult = _env(environ, "ALLOW_ADULT")
    if allow_adult is not None:
        overrides["allow_adult"] = allow_adult.lower() in _TRUE_VALUES
    return overrides


def _merge_caches(base, raw):
    merged = dict(base)
    for name, limits in (raw or {}).items():
        current = merged.get(name) or CacheLimits(ttl_sec=300.0, max_entries=500)
        merged[name] = CacheLimits(
            ttl_sec=float(limits.get("ttl_sec") or current.ttl_sec),
            max_entries=int(limits.get("max_entries") or current.max_entries),
        )
    return merged


def load_settings(config=None, environ=None):
    """Build settings from defaults, an optional config dict, then environment overrides."""
    environ = os.environ if environ is None else environ
    settings = GatewaySettings()
    if config:
        errors = validate_config(config)
        if errors:
            raise ValueError("; ".join(errors))
        scalar = {
            key: config[key]
            for key in (
                "ytdlp_bin",
                "public_url",
                "max_concurrent_streams",
                "stream_timeout_sec",
                "chunk_size",
                "cache_sweep_interval_sec",
                "usage_history_limit",
                "allow_adult",
                "log_level",
            )
            if key in config
        }
        timeouts = dict(settings.timeouts)
        timeouts.update({k: float(v) for k, v in (config.get("timeouts") or {}).items()})
        settings = replace(
            settings,
            timeouts=timeouts,
            caches=_merge_caches(settings.caches, config.get("caches")),
            **scalar,
        )
    overrides = _env_overrides(environ)
    if overrides:
        settings = replace(settings, **overrides)
    return replace(settings, public_url=settings.public_url.rstrip("/"))


def load_settings_from_env(environ=None):
    environ = os.environ if environ is None else environ
    try:
        config_path = resolve_config_path(_env(environ, "CONFIG"))
    except ValueError as exc:
        logging.error("Invalid config override: %s", exc)
        config_path = resolve_config_path(None)
    config = None
    if os.path.exists(config_path):
        try:
            config = load_config(config_path)
        except (OSError, json.JSONDecodeError) as exc:
            logging.error("Failed to load config %s: %s", config_path, exc)
    return load_settings(config, environ)
