"""Typed failures reported by the recorder.

Messages are meant for the person holding the microphone. Raw encoder output
belongs in the log, not here.
"""

from __future__ import annotations


class RecorderError(Exception):
    """Base class for every failure the recorder reports."""

    kind = "recorder"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, str]:
        payload = {"kind": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class DeviceUnavailableError(RecorderError):
    """The encoder is missing or the device list could not be produced."""

    kind = "device_unavailable"


class DeviceError(RecorderError):
    """The encoder reported that the input device cannot be used."""

    kind = "device"

    def __init__(self, message: str, *, reason: str, detail: str | None = None) -> None:
        super().__init__(message, detail=detail)
        self.reason = reason

    def to_dict(self) -> dict[str, str]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class EncoderProcessError(RecorderError):
    """Spawning or supervising the encoder process failed."""

    kind = "process"


class RecordingValidationError(RecorderError):
    """The produced file is missing, empty or too small to be useful."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        *,
        severity: str = "error",
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.severity = severity

    def to_dict(self) -> dict[str, str]:
        payload = super().to_dict()
        payload["severity"] = self.severity
        return payload


class ConcurrentRecordingError(RecorderError):
    """A recording is already in progress."""

    kind = "concurrent"


__all__ = [
    "ConcurrentRecordingError",
    "DeviceError",
    "DeviceUnavailableError",
    "EncoderProcessError",
    "RecorderError",
    "RecordingValidationError",
]
