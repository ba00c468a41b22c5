from .admission import AdmissionController, StreamSession
from .result_cache import ResultCache, make_cache_key
from .runtime import get_runtime_info
from .settings import GatewaySettings, load_config, load_settings, validate_config
from .streaming_manager import StreamingManager, build_streaming_manager

__all__ = [
    "AdmissionController",
    "GatewaySettings",
    "ResultCache",
    "StreamSession",
    "StreamingManager",
    "build_streaming_manager",
    "get_runtime_info",
    "load_config",
    "load_settings",
    "make_cache_key",
    "validate_config",
]
