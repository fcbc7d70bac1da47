"""Locate the ffmpeg executable and confirm that it runs."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_LOG = logging.getLogger("encoder")

DEFAULT_ENCODER = "ffmpeg"
VERSION_TIMEOUT_SECONDS = 5.0

_VERSION_LINE = re.compile(r"ffmpeg version (\S+)")


@dataclass(frozen=True)
class EncoderAvailability:
    available: bool
    version: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"available": self.available}
        if self.version is not None:
            payload["version"] = self.version
        if self.path is not None:
            payload["path"] = self.path
        if self.error is not None:
            payload["error"] = self.error
        return payload


def resolve_encoder_path(override: str | None = None) -> str | None:
    """Return an executable path for the override, or ffmpeg from PATH."""

    candidate = (override or "").strip()
    if not candidate:
        return shutil.which(DEFAULT_ENCODER)

    path = Path(candidate).expanduser()
    if path.is_file() and os.access(path, os.X_OK):
        return str(path)
    return shutil.which(candidate)


async def check_encoder_availability(
    encoder_path: str | None = None,
    *,
    timeout: float = VERSION_TIMEOUT_SECONDS,
) -> EncoderAvailability:
    executable = resolve_encoder_path(encoder_path)
    if executable is None:
        if encoder_path:
            message = (
                f"Configured encoder {encoder_path!r} was not found or is not executable. "
                "Fix encoder.path in the configuration or clear it to use ffmpeg from PATH."
            )
        else:
            message = (
                "FFmpeg not found in PATH. Please install FFmpeg and add it to your "
                "system PATH, or set encoder.path in the configuration."
            )
        return EncoderAvailability(available=False, error=message)

    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return EncoderAvailability(
            available=False, path=executable, error=f"Error running FFmpeg: {exc}"
        )

    try:
        stdout_raw, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return EncoderAvailability(
            available=False,
            path=executable,
            error=f"FFmpeg did not answer -version within {timeout:g}s",
        )

    if proc.returncode != 0:
        return EncoderAvailability(
            available=False,
            path=executable,
            error=f"FFmpeg found but not working properly (exit code: {proc.returncode})",
        )

    output = stdout_raw.decode("utf-8", errors="replace")
    match = _VERSION_LINE.search(output)
    version = match.group(1) if match else "unknown"
    _LOG.debug("Using ffmpeg %s at %s", version, executable)
    return EncoderAvailability(available=True, version=version, path=executable)


__all__ = [
    "DEFAULT_ENCODER",
    "EncoderAvailability",
    "check_encoder_availability",
    "resolve_encoder_path",
]
