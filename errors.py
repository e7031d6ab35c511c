"""Error taxonomy for capture, recording and the external APIs."""

from enum import Enum


class AcquisitionKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    UNSUPPORTED = "unsupported"
    USER_CANCELLED = "user_cancelled"


_REMEDIATION = {
    AcquisitionKind.PERMISSION_DENIED: (
        "Access to the microphone or screen was denied. "
        "Open System Settings > Privacy & Security, allow Microphone and "
        "Screen Recording for this app, then restart it."
    ),
    AcquisitionKind.DEVICE_NOT_FOUND: (
        "No usable audio device was found. "
        "Check that the microphone is connected, or install a loopback device "
        "(e.g. brew install blackhole-2ch) for meeting audio."
    ),
    AcquisitionKind.UNSUPPORTED: (
        "This platform cannot capture that source. "
        "Install ffmpeg for system audio capture, or record the microphone only."
    ),
    AcquisitionKind.USER_CANCELLED: "Recording was cancelled.",
}


class AcquisitionError(Exception):
    """A capture source could not be acquired."""

    def __init__(self, kind: AcquisitionKind, message: str = ""):
        self.kind = AcquisitionKind(kind)
        super().__init__(message or self.kind.value)

    @property
    def remediation(self) -> str:
        return _REMEDIATION[self.kind]


class SessionStateError(Exception):
    """Invalid recording lifecycle transition."""


class AlreadyRecording(SessionStateError):
    def __init__(self):
        super().__init__("A recording session is already active")


class NotRecording(SessionStateError):
    def __init__(self):
        super().__init__("No recording in progress")


class NotPaused(SessionStateError):
    def __init__(self):
        super().__init__("Recording is not paused")


class ApiError(Exception):
    """Failure talking to the transcription or summary endpoint.

    ``status`` is None for network-level failures.
    """

    def __init__(self, status: int | None, message: str, kind: str | None = None):
        self.status = status
        self.message = message
        self.kind = kind or _kind_for_status(status)
        super().__init__(f"{status} {message}" if status else message)


def _kind_for_status(status: int | None) -> str:
    if status is None:
        return "network"
    if status == 429:
        return "rate_limited"
    if status in (401, 403):
        return "auth"
    if 400 <= status < 500:
        return "bad_request"
    return "server"


class ArtifactTooSmallError(Exception):
    """The recording was shorter than the minimum worth transcribing."""

    def __init__(self, duration_ms: int, minimum_ms: int):
        self.duration_ms = duration_ms
        self.minimum_ms = minimum_ms
        super().__init__(f"Recording too short ({duration_ms} ms < {minimum_ms} ms)")
