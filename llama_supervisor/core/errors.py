"""
Supervisor Error Taxonomy Module

This module defines the exceptions raised by the supervision layer.
Every error carries the attributes a caller needs to decide what to do next
(retry, report, give up), so the excluded HTTP layer can map them to generic
"service unavailable" responses while logs keep the full detail.

Available Exception Classes:
    - SupervisorError: Base class for all supervisor errors
    - ConfigurationError: Invalid or inconsistent configuration
    - BinaryNotFoundError: llama-server binary could not be located
    - ModelNotFoundError: Model file missing or role not configured
    - AlreadyRunningError: Subprocess already running for this supervisor
    - StartFailedError: The OS refused to spawn the subprocess
    - HealthTimeoutError: Subprocess up but never reported healthy
    - ServerNotReadyError: Request sent while the server is down
    - VRAMInsufficientError: Not enough free VRAM for the model
    - SwapInProgressError: A model swap is already in flight
    - VisionDisabledError: Vision subprocess disabled in config
    - InferenceError: llama-server answered with an error
    - DownloadError: HTTP-level download failure
    - DownloadInterruptedError: Stream broke, temp file kept for resume
    - DownloadCorruptError: Temp file larger than expected, deleted
    - WatchdogError: Invalid watchdog operation
    - WatchdogExhaustedError: Max restarts reached, watchdog stopped

Usage:
    from llama_supervisor.core.errors import ModelNotFoundError

    raise ModelNotFoundError("/models/qwen.gguf")
"""

from typing import Optional


class SupervisorError(Exception):
    """Base class for all errors raised by the supervision layer."""


class ConfigurationError(SupervisorError):
    """
    Raised when there is a configuration error.

    This typically indicates a problem with config.json that
    prevents the supervisor from starting correctly.
    """

    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")


class BinaryNotFoundError(SupervisorError):
    """
    Raised when no llama-server binary could be located.

    Attributes:
        searched: Paths that were checked, in search order
    """

    def __init__(self, searched: Optional[list] = None):
        self.searched = [str(p) for p in (searched or [])]
        message = "llama-server binary not found"
        if self.searched:
            message += f" (searched: {', '.join(self.searched)})"
        super().__init__(message)


class ModelNotFoundError(SupervisorError):
    """
    Raised when a model file does not exist or no model is configured.

    Attributes:
        model_path: Path that was requested (empty if nothing configured)
        role: Logical role that was requested, if any
    """

    def __init__(self, model_path: str = "", role: Optional[str] = None):
        self.model_path = model_path
        self.role = role

        if role and not model_path:
            message = f"No model configured for role '{role}'"
        elif role:
            message = f"Model for role '{role}' not found: {model_path}"
        elif model_path:
            message = f"Model not found: {model_path}"
        else:
            message = "No model loaded"
        super().__init__(message)


class AlreadyRunningError(SupervisorError):
    """
    Raised when start() is called while a subprocess is still running.

    Attributes:
        model_name: Model currently served
        port: Port the running subprocess is bound to
    """

    def __init__(self, model_name: str, port: int):
        self.model_name = model_name
        self.port = port
        super().__init__(
            f"llama-server already running on port {port} ({model_name})"
        )


class StartFailedError(SupervisorError):
    """
    Raised when a subprocess fails to start.

    Attributes:
        model_path: The model that failed to start
        reason: Detailed reason for the failure
        is_retriable: Whether the error might resolve on retry
    """

    def __init__(self, model_path: str, reason: str, is_retriable: bool = True):
        self.model_path = model_path
        self.reason = reason
        self.is_retriable = is_retriable
        super().__init__(f"Failed to start '{model_path}': {reason}")


class HealthTimeoutError(SupervisorError):
    """
    Raised when a subprocess does not become healthy in time.

    Attributes:
        url: Health URL that was polled
        timeout_sec: How long the poll waited
    """

    def __init__(self, url: str, timeout_sec: float):
        self.url = url
        self.timeout_sec = timeout_sec
        super().__init__(
            f"Server at {url} not ready after {timeout_sec:.0f}s"
        )


class ServerNotReadyError(SupervisorError):
    """Raised when a chat request is sent while the server is not healthy."""

    def __init__(self, message: str = "llama-server is not running or not healthy"):
        super().__init__(message)


class VRAMInsufficientError(SupervisorError):
    """
    Raised when there is not enough VRAM to load a model.

    Only fatal under strict handling. The default strategy logs it as a
    warning and lets llama-server try anyway.

    Attributes:
        required_mb: Estimated VRAM required in MB
        available_mb: Currently free VRAM in MB
    """

    def __init__(self, required_mb: int, available_mb: int):
        self.required_mb = required_mb
        self.available_mb = available_mb
        super().__init__(
            f"Insufficient VRAM: required ~{required_mb} MB, "
            f"available {available_mb} MB"
        )


class SwapInProgressError(SupervisorError):
    """
    Raised when a swap is requested while another one is in flight.

    Attributes:
        requested_role: Role the caller asked for
        elapsed_sec: How long the running swap has taken so far
    """

    def __init__(self, requested_role: str, elapsed_sec: float = 0.0):
        self.requested_role = requested_role
        self.elapsed_sec = elapsed_sec
        super().__init__(
            f"Model swap already in progress ({elapsed_sec:.1f}s), "
            f"cannot switch to '{requested_role}'"
        )


class VisionDisabledError(SupervisorError):
    """Raised when the vision subprocess is used while disabled."""

    def __init__(self):
        super().__init__("Vision server is disabled")


class InferenceError(SupervisorError):
    """
    Raised when llama-server answers a completion request with an error.

    Attributes:
        status_code: HTTP status from llama-server (0 for malformed bodies)
        body: Raw response body, truncated
    """

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body[:500]
        super().__init__(f"llama-server error (HTTP {status_code}): {self.body}")


class DownloadError(SupervisorError):
    """
    Raised when a download fails at the HTTP level.

    Attributes:
        url: URL being fetched
        status_code: HTTP status code, if any
    """

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Download failed for {url}: {message}")


class DownloadInterruptedError(DownloadError):
    """
    Raised when a download stream breaks before completion.

    The `.downloading` temp file is kept so the next call resumes.

    Attributes:
        temp_path: Temp file holding the partial download
        downloaded: Bytes on disk when the stream broke
    """

    def __init__(self, url: str, temp_path: str, downloaded: int, reason: str):
        self.temp_path = temp_path
        self.downloaded = downloaded
        super().__init__(
            url,
            f"interrupted after {downloaded} bytes ({reason}); "
            f"partial file kept at {temp_path}",
        )


class DownloadCorruptError(DownloadError):
    """
    Raised when the partial file is larger than the expected total.

    The temp file has been deleted and the download must start over.

    Attributes:
        temp_path: Deleted temp file
        size: Size found on disk
        expected: Expected total size
    """

    def __init__(self, url: str, temp_path: str, size: int, expected: int):
        self.temp_path = temp_path
        self.size = size
        self.expected = expected
        super().__init__(
            url,
            f"partial file {temp_path} is {size} bytes, expected {expected}; deleted",
        )


class WatchdogError(SupervisorError):
    """Raised for invalid watchdog operations (double start, not enabled)."""


class WatchdogExhaustedError(WatchdogError):
    """
    Raised (and logged) when the watchdog reached its restart limit.

    Attributes:
        max_restarts: Configured restart limit
    """

    def __init__(self, max_restarts: int):
        self.max_restarts = max_restarts
        super().__init__(
            f"Watchdog gave up after {max_restarts} restarts"
        )
