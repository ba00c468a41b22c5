import os
import platform
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(invoker=None):
    info = {
        "app_version": os.environ.get("STREAMGATE_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "platform": platform.platform(),
        "yt_dlp_version": ytdlp_version,
    }
    if invoker is not None:
        # The CLI on PATH can differ from the bundled library.
        info["yt_dlp_cli_version"] = invoker.version
    return info
