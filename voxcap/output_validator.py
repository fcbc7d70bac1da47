"""Post-capture checks on the file ffmpeg just closed."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from voxcap.ffmpeg_io import extension_for, mime_type_for

_LOG = logging.getLogger("output_validator")

SETTLE_DELAY_SECONDS = 0.1
RECHECK_DELAY_SECONDS = 0.5
MIN_VIABLE_BYTES = 1000
MIN_DURATION_MS = 500


@dataclass
class ValidationResult:
    accepted: bool
    data: bytes = b""
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    reason: Optional[str] = None
    severity: Optional[str] = None
    size: int = 0


def _size_of(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def _reject(reason: str, *, severity: str = "error", size: int = 0) -> ValidationResult:
    return ValidationResult(accepted=False, reason=reason, severity=severity, size=size)


async def validate_output(
    path: Optional[str],
    duration_ms: int,
    container_format: str,
    *,
    settle_delay: float = SETTLE_DELAY_SECONDS,
    recheck_delay: float = RECHECK_DELAY_SECONDS,
    min_size: int = MIN_VIABLE_BYTES,
) -> ValidationResult:
    """Accept the recording or explain, in user terms, why it is unusable.

    The encoder may still be flushing when its process exits, so a missing or
    short file is rechecked after a short and then a longer delay before it
    is rejected.
    """

    if not path:
        return _reject("No recording file was produced.")

    await asyncio.sleep(settle_delay)
    size = _size_of(path)
    if size is None:
        await asyncio.sleep(recheck_delay)
        size = _size_of(path)
        if size is None:
            _LOG.error("Recording file missing: %s", path)
            return _reject("Recording file was not created")

    for delay in (settle_delay, recheck_delay):
        if size >= min_size:
            break
        _LOG.debug("Recording file %s has %d bytes; rechecking in %.1fs", path, size, delay)
        await asyncio.sleep(delay)
        size = _size_of(path) or 0

    if size == 0:
        _LOG.error("Recording file is empty after %dms", duration_ms)
        if duration_ms < MIN_DURATION_MS:
            return _reject(
                "Recording too short. Hold the record button for at least 0.5 seconds."
            )
        return _reject(
            "Recording file is empty. Please check your microphone permissions and "
            "ensure your microphone is working."
        )

    if size < min_size:
        _LOG.warning("Recording file only %d bytes after %dms", size, duration_ms)
        if duration_ms < MIN_DURATION_MS:
            reason = (
                f"Recording too short ({duration_ms}ms). Hold the record button for at "
                "least 0.5 seconds."
            )
        else:
            reason = (
                f"Recording file too small ({size} bytes). Please check your microphone "
                "and try again."
            )
        return _reject(reason, severity="warning", size=size)

    with open(path, "rb") as fh:
        data = fh.read()
    _LOG.info("Recording accepted: %d bytes, %dms", len(data), duration_ms)
    return ValidationResult(
        accepted=True,
        data=data,
        mime_type=mime_type_for(container_format),
        filename=f"recording.{extension_for(container_format)}",
        size=len(data),
    )


__all__ = ["MIN_VIABLE_BYTES", "ValidationResult", "validate_output"]
