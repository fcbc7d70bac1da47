from __future__ import annotations

import wave
from pathlib import Path

import pytest

from voxcap import diagnostics
from voxcap.audio_devices import PROFILES
from voxcap.encoder import check_encoder_availability, resolve_encoder_path


def test_resolve_encoder_path_prefers_executable_override(fake_ffmpeg: Path, tmp_path: Path):
    assert resolve_encoder_path(str(fake_ffmpeg)) == str(fake_ffmpeg)
    assert resolve_encoder_path(str(tmp_path / "missing")) is None


@pytest.mark.asyncio
async def test_encoder_availability_reports_version(fake_ffmpeg: Path):
    availability = await check_encoder_availability(str(fake_ffmpeg))

    assert availability.available
    assert availability.version == "6.1-fake"
    assert availability.path == str(fake_ffmpeg)
    assert availability.to_dict() == {
        "available": True,
        "version": "6.1-fake",
        "path": str(fake_ffmpeg),
    }


@pytest.mark.asyncio
async def test_encoder_availability_missing_binary(tmp_path: Path):
    availability = await check_encoder_availability(str(tmp_path / "ffmpeg"))

    assert not availability.available
    assert "not found" in availability.error


@pytest.mark.asyncio
async def test_encoder_availability_broken_binary(fake_ffmpeg: Path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_VERSION_RC", "3")

    availability = await check_encoder_availability(str(fake_ffmpeg))

    assert not availability.available
    assert "exit code: 3" in availability.error


@pytest.mark.asyncio
async def test_run_diagnostics_healthy(fake_ffmpeg: Path, linux_profile):
    report = await diagnostics.run_diagnostics(str(fake_ffmpeg), linux_profile)

    assert report.ok
    assert report.platform == "linux"
    assert len(report.devices) == 2
    assert report.recommended_device.identifier == "alsa_input.usb-mic.analog-mono"
    assert report.warnings == []
    payload = report.to_dict()
    assert payload["encoder"]["available"] is True
    assert payload["recommended_device"]["is_default"] is True


@pytest.mark.asyncio
async def test_run_diagnostics_without_encoder(tmp_path: Path, linux_profile):
    report = await diagnostics.run_diagnostics(str(tmp_path / "ffmpeg"), linux_profile)

    assert not report.ok
    assert report.devices == []
    assert report.recommended_device is None
    assert len(report.errors) == 1


@pytest.mark.asyncio
async def test_run_diagnostics_warns_when_only_fallback_found(fake_ffmpeg: Path, linux_profile, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_SOURCES", "")

    report = await diagnostics.run_diagnostics(str(fake_ffmpeg), linux_profile)

    assert report.ok
    assert len(report.warnings) == 1
    assert "No audio input devices" in report.warnings[0]


@pytest.mark.asyncio
async def test_run_diagnostics_warns_without_builtin_mic_on_macos(fake_ffmpeg: Path, monkeypatch):
    monkeypatch.setenv(
        "FAKE_FFMPEG_LISTING",
        "[AVFoundation indev @ 0x1] AVFoundation audio devices:\n"
        "[AVFoundation indev @ 0x1] [0] Yeti Stereo Microphone\n",
    )

    report = await diagnostics.run_diagnostics(str(fake_ffmpeg), PROFILES["macos"])

    assert [d.identifier for d in report.devices] == [":0"]
    assert any("built-in microphone" in w for w in report.warnings)


@pytest.mark.asyncio
async def test_test_recording_reports_size_and_peak(fake_ffmpeg: Path, linux_profile, tmp_path: Path):
    work = tmp_path / "work"
    work.mkdir()

    result = await diagnostics.test_recording(
        0.3, encoder_path=str(fake_ffmpeg), profile=linux_profile, tmp_dir=str(work)
    )

    assert result.success, result.error
    assert result.file_size > 0
    assert result.duration_ms >= 300
    assert "-t 0.3" in result.command
    # 8000 / 32768 full scale
    assert result.peak_dbfs == pytest.approx(-12.2, abs=0.1)
    assert result.warning is None
    assert list(work.iterdir()) == []


@pytest.mark.asyncio
async def test_test_recording_flags_digital_silence(fake_ffmpeg: Path, linux_profile, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_AMPLITUDE", "0")

    result = await diagnostics.test_recording(0.2, encoder_path=str(fake_ffmpeg), profile=linux_profile)

    assert result.success
    assert result.peak_dbfs == diagnostics.PEAK_FLOOR_DBFS
    assert "silent" in result.warning


@pytest.mark.asyncio
async def test_test_recording_failure_is_reported(fake_ffmpeg: Path, linux_profile, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_STDERR", "default: No such file or directory\n")
    monkeypatch.setenv("FAKE_FFMPEG_EXIT_CODE", "1")

    result = await diagnostics.test_recording(0.2, encoder_path=str(fake_ffmpeg), profile=linux_profile)

    assert not result.success
    assert result.file_size == 0
    assert "not found" in result.error


def test_measure_peak_dbfs(tmp_path: Path):
    target = tmp_path / "tone.wav"
    with wave.open(str(target), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(16000)
        wf.writeframes((16384).to_bytes(2, "little", signed=True) * 10)

    assert diagnostics.measure_peak_dbfs(str(target)) == pytest.approx(-6.0, abs=0.1)

    junk = tmp_path / "junk.wav"
    junk.write_bytes(b"not a wav file")
    assert diagnostics.measure_peak_dbfs(str(junk)) is None
