"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import shlex
from typing import Sequence

from voxcap.audio_devices import PlatformProfile

DEFAULT_THREAD_QUEUE_SIZE = 1024
DEFAULT_LOG_LEVEL = "info"

CONTAINER_FORMATS = ("wav", "mp3", "webm", "opus")
DEFAULT_CONTAINER_FORMAT = "wav"

_DEFAULT_CODECS = {
    "wav": "pcm_s16le",
    "mp3": "libmp3lame",
    "opus": "libopus",
    "webm": "libvorbis",
}

_MIME_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "opus": "audio/ogg; codecs=opus",
    "webm": "audio/webm",
}


def normalize_format(container_format: str | None) -> str:
    candidate = (container_format or "").strip().lower()
    if candidate in CONTAINER_FORMATS:
        return candidate
    return DEFAULT_CONTAINER_FORMAT


def default_codec(container_format: str | None) -> str:
    return _DEFAULT_CODECS[normalize_format(container_format)]


def mime_type_for(container_format: str | None) -> str:
    return _MIME_TYPES[normalize_format(container_format)]


def extension_for(container_format: str | None) -> str:
    return normalize_format(container_format)


def device_input_args(
    profile: PlatformProfile,
    device: str,
    *,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
) -> list[str]:
    """Return input arguments for reading from a capture device.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    the format and ``-thread_queue_size`` always precede the device token.
    """

    return [
        "-f",
        profile.input_format,
        "-thread_queue_size",
        str(queue_size),
        "-i",
        device,
    ]


def _preamble(executable: str, *, nostdin: bool, log_level: str = DEFAULT_LOG_LEVEL) -> list[str]:
    cmd = [executable, "-hide_banner", "-loglevel", log_level]
    if nostdin:
        cmd.append("-nostdin")
    return cmd


def _format_seconds(value: float) -> str:
    return f"{float(value):g}"


def build_capture_command(
    executable: str,
    profile: PlatformProfile,
    device: str,
    output_path: str,
    *,
    sample_rate: int,
    channels: int,
    codec: str,
    max_duration_seconds: float | None = None,
) -> list[str]:
    # Keep stdin open only where the stop path writes the quit key to it.
    cmd = _preamble(executable, nostdin=profile.stop_mode != "stdin")
    cmd.extend(device_input_args(profile, device))
    cmd.extend(["-ar", str(int(sample_rate)), "-ac", str(int(channels)), "-acodec", codec])
    if max_duration_seconds is not None and max_duration_seconds > 0:
        cmd.extend(["-t", _format_seconds(max_duration_seconds)])
    cmd.extend(["-y", output_path])
    return cmd


def build_level_probe_command(
    executable: str,
    profile: PlatformProfile,
    device: str,
    segment_seconds: float,
) -> list[str]:
    """Analyze one segment with volumedetect and throw the audio away."""

    cmd = _preamble(executable, nostdin=True)
    cmd.extend(device_input_args(profile, device))
    cmd.extend(
        [
            "-t",
            _format_seconds(segment_seconds),
            "-af",
            "volumedetect",
            "-f",
            "null",
            "-",
        ]
    )
    return cmd


def build_test_recording_command(
    executable: str,
    profile: PlatformProfile,
    device: str,
    output_path: str,
    duration_seconds: float,
) -> list[str]:
    return build_capture_command(
        executable,
        profile,
        device,
        output_path,
        sample_rate=16000,
        channels=1,
        codec=default_codec("wav"),
        max_duration_seconds=duration_seconds,
    )


def format_command(cmd: Sequence[str]) -> str:
    return shlex.join([str(part) for part in cmd])


__all__ = [
    "CONTAINER_FORMATS",
    "DEFAULT_CONTAINER_FORMAT",
    "DEFAULT_THREAD_QUEUE_SIZE",
    "build_capture_command",
    "build_level_probe_command",
    "build_test_recording_command",
    "default_codec",
    "device_input_args",
    "extension_for",
    "format_command",
    "mime_type_for",
    "normalize_format",
]
