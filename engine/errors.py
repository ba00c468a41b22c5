"""Error taxonomy for the resolution and delivery pipeline."""

from __future__ import annotations


class StreamgateError(Exception):
    error = "streamgate_error"

    def __init__(self, details: str = "") -> None:
        super().__init__(details or self.error)
        self.details = details or self.error

    def to_payload(self) -> dict:
        return {"error": self.error, "details": self.details}


class ExtractionError(StreamgateError):
    error = "extraction_failed"


class ExtractionUnavailable(ExtractionError):
    error = "extraction_unavailable"


class ExtractionTimeout(ExtractionError):
    error = "extraction_timeout"

    def __init__(self, timeout_sec: float, details: str = "") -> None:
        self.timeout_sec = timeout_sec
        super().__init__(details or f"extraction tool did not exit within {timeout_sec:g}s")


class ExtractionProcessError(ExtractionError):
    error = "extraction_process_error"

    def __init__(self, returncode: int, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        message = f"extraction tool exited with code {returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)


class ExtractionParseError(ExtractionError):
    error = "extraction_parse_error"


class FormatNotFound(StreamgateError):
    error = "format_not_found"


class DeliveryError(StreamgateError):
    error = "delivery_failed"


class UpstreamHTTPError(DeliveryError):
    error = "upstream_http_error"

    def __init__(self, status: int, reason: str = "") -> None:
        self.status = status
        self.reason = reason or ""
        super().__init__(f"HTTP {status}: {self.reason}".rstrip(": "))


class StreamTimeout(DeliveryError):
    error = "stream_timeout"


class ClientAborted(DeliveryError):
    error = "client_aborted"


class AdmissionRejected(DeliveryError):
    error = "too_many_streams"

    def __init__(self, active: int, max_concurrent: int) -> None:
        self.active = active
        self.max_concurrent = max_concurrent
        super().__init__(
            f"Server overloaded ({active}/{max_concurrent} streams active), try again later"
        )
