"""Environment checks and a fixed-length test recording."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shutil
import tempfile
import time
import wave
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from voxcap.audio_devices import (
    InputDevice,
    PlatformProfile,
    current_profile,
    detect_input_devices,
    is_fallback_only,
    list_input_devices,
    select_input_device,
)
from voxcap.encoder import EncoderAvailability, check_encoder_availability
from voxcap.errors import RecorderError
from voxcap.ffmpeg_io import build_test_recording_command, format_command
from voxcap.process_supervisor import EncoderProcess

_LOG = logging.getLogger("diagnostics")

SILENT_PEAK_DBFS = -90.0
PEAK_FLOOR_DBFS = -120.0
TEST_RECORDING_TIMEOUT_PADDING = 10.0


@dataclass
class DiagnosticsReport:
    encoder: EncoderAvailability
    platform: str
    devices: List[InputDevice] = field(default_factory=list)
    recommended_device: Optional[InputDevice] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "encoder": self.encoder.to_dict(),
            "platform": self.platform,
            "devices": [device.to_dict() for device in self.devices],
            "recommended_device": (
                self.recommended_device.to_dict() if self.recommended_device else None
            ),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class TestRecordingResult:
    # Not a pytest test class.
    __test__ = False

    success: bool
    file_size: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    command: str = ""
    peak_dbfs: Optional[float] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "file_size": self.file_size,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "command": self.command,
            "peak_dbfs": self.peak_dbfs,
            "warning": self.warning,
        }


def _has_builtin_microphone(devices: List[InputDevice]) -> bool:
    for device in devices:
        label = device.label.lower()
        if "built-in" in label or "macbook" in label:
            return True
    return False


async def run_diagnostics(
    encoder_path: str | None = None,
    profile: PlatformProfile | None = None,
) -> DiagnosticsReport:
    profile = profile or current_profile()
    encoder = await check_encoder_availability(encoder_path)
    report = DiagnosticsReport(encoder=encoder, platform=profile.family)

    if not encoder.available:
        report.errors.append(encoder.error or "FFmpeg is not available.")
        return report

    report.devices = await detect_input_devices(encoder.path, profile)
    report.recommended_device = select_input_device(report.devices, "auto", profile)

    if is_fallback_only(report.devices, profile):
        report.warnings.append(
            "No audio input devices were detected; recordings will use the system "
            "default input. Check that a microphone is connected."
        )
    elif profile.family == "macos" and not _has_builtin_microphone(report.devices):
        report.warnings.append(
            "No built-in microphone detected. If recording fails, check microphone "
            "permissions in System Settings > Privacy & Security > Microphone."
        )

    for message in report.errors:
        _LOG.error("diagnostics: %s", message)
    for message in report.warnings:
        _LOG.warning("diagnostics: %s", message)
    return report


def _pcm_to_float32(pcm: bytes) -> np.ndarray:
    if not pcm:
        return np.array([], dtype=np.float32)
    samples = np.frombuffer(pcm, dtype="<i2").astype(np.float32)
    return samples / 32768.0


def measure_peak_dbfs(path: str) -> Optional[float]:
    """Peak sample level of a 16-bit PCM WAV file in dBFS, or None if unreadable."""

    try:
        with wave.open(path, "rb") as wf:
            if wf.getsampwidth() != 2:
                return None
            pcm = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError, OSError):
        return None

    samples = _pcm_to_float32(pcm[: len(pcm) - (len(pcm) % 2)])
    if samples.size == 0:
        return None
    peak = float(np.max(np.abs(samples)))
    if peak <= 0.0:
        return PEAK_FLOOR_DBFS
    return max(PEAK_FLOOR_DBFS, round(20.0 * math.log10(peak), 1))


async def test_recording(
    duration_seconds: float = 2.0,
    *,
    encoder_path: str | None = None,
    profile: PlatformProfile | None = None,
    device_preference: str | None = "auto",
    tmp_dir: str | None = None,
) -> TestRecordingResult:
    profile = profile or current_profile()
    encoder = await check_encoder_availability(encoder_path)
    if not encoder.available or encoder.path is None:
        return TestRecordingResult(success=False, error=encoder.error or "FFmpeg is not available.")

    devices = await list_input_devices(encoder.path, profile)
    device = select_input_device(devices, device_preference, profile)

    work_dir = tempfile.mkdtemp(prefix="voxcap-test-", dir=tmp_dir or None)
    output_path = os.path.join(work_dir, "test.wav")
    command = build_test_recording_command(
        encoder.path, profile, device.identifier, output_path, duration_seconds
    )
    errors: list[RecorderError] = []
    tail: list[str] = []

    def _on_line(line: str) -> None:
        tail.append(line)
        del tail[:-5]

    process = EncoderProcess(
        command,
        name="test-recording",
        stop_mode=profile.stop_mode,
        graceful_exit_codes=profile.graceful_exit_codes,
        on_stderr_line=_on_line,
        on_error=errors.append,
        logger=_LOG,
    )

    started = time.monotonic()
    try:
        try:
            await process.start()
        except RecorderError as exc:
            return TestRecordingResult(
                success=False, error=exc.message, command=format_command(command)
            )

        loop = asyncio.get_running_loop()
        deadline = loop.call_later(
            float(duration_seconds) + TEST_RECORDING_TIMEOUT_PADDING, process.stop
        )
        try:
            returncode = await process.wait()
        finally:
            deadline.cancel()
        elapsed_ms = int((time.monotonic() - started) * 1000)

        try:
            file_size = os.path.getsize(output_path)
        except OSError:
            file_size = 0

        success = returncode == 0 and file_size > 0 and not errors
        result = TestRecordingResult(
            success=success,
            file_size=file_size,
            duration_ms=elapsed_ms,
            command=format_command(command),
        )
        if errors:
            result.error = errors[0].message
        elif not success:
            detail = tail[-1] if tail else "no output"
            result.error = f"FFmpeg exited with code {returncode}: {detail}"

        if file_size > 0:
            result.peak_dbfs = measure_peak_dbfs(output_path)
            if result.peak_dbfs is not None and result.peak_dbfs <= SILENT_PEAK_DBFS:
                result.warning = (
                    "The test recording is silent. Check that the microphone is not "
                    "muted and that this application has microphone access."
                )
        _LOG.info(
            "Test recording: success=%s size=%d peak=%s dBFS",
            result.success,
            result.file_size,
            result.peak_dbfs,
        )
        return result
    finally:
        if not process.completed:
            process.kill()
        shutil.rmtree(work_dir, ignore_errors=True)


test_recording.__test__ = False  # type: ignore[attr-defined]


__all__ = [
    "DiagnosticsReport",
    "TestRecordingResult",
    "measure_peak_dbfs",
    "run_diagnostics",
    "test_recording",
]
