from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import pytest

from voxcap.errors import DeviceError, EncoderProcessError
from voxcap.process_supervisor import (
    EncoderProcess,
    classify_stderr_line,
    is_clean_exit,
    split_stderr_lines,
)

GRACEFUL = frozenset({255, -signal.SIGTERM})


def test_split_stderr_lines_handles_partial_lines_and_carriage_returns():
    state: dict[str, str] = {"buffer": ""}

    assert split_stderr_lines("size=  12kB time=00:00:01.00\r", state) == [
        "size=  12kB time=00:00:01.00"
    ]
    assert state["buffer"] == ""

    assert split_stderr_lines("[pulse @ 0x1] Device or res", state) == []
    assert state["buffer"] == "[pulse @ 0x1] Device or res"

    assert split_stderr_lines("ource busy\n\n", state) == ["[pulse @ 0x1] Device or resource busy"]
    assert state["buffer"] == ""


@pytest.mark.parametrize(
    ("line", "reason"),
    [
        ("[AVFoundation indev @ 0x1] Selected audio input device not found", None),
        ("[AVFoundation input device @ 0x1] :3: input device not found", "not_found"),
        ("[dshow @ 000001] Could not find audio only device with name [Mic]", "not_found"),
        ("default: No such file or directory", "not_found"),
        ("[alsa @ 0x1] cannot open audio device hw:1 (Permission denied)", "permission"),
        ("[pulse @ 0x1] Device or resource busy", "busy"),
        ("default: Invalid data found when processing input", "invalid_input"),
        ("size=N/A time=00:00:02.00 bitrate=N/A", None),
    ],
)
def test_classify_stderr_line(line, reason):
    error = classify_stderr_line(line)

    if reason is None:
        assert error is None
    else:
        assert isinstance(error, DeviceError)
        assert error.reason == reason
        assert error.detail == line


def test_is_clean_exit():
    assert is_clean_exit(0)
    assert is_clean_exit(255, GRACEFUL)
    assert is_clean_exit(-signal.SIGTERM, GRACEFUL)
    assert not is_clean_exit(1, GRACEFUL)
    assert not is_clean_exit(-signal.SIGKILL, GRACEFUL)
    assert not is_clean_exit(None, GRACEFUL)


def _capture_cmd(fake: Path, output: Path, *extra: str) -> list[str]:
    return [str(fake), "-f", "pulse", "-i", "default", *extra, "-y", str(output)]


async def _wait_for_first_line(ready: asyncio.Event) -> None:
    await asyncio.wait_for(ready.wait(), timeout=10)


@pytest.mark.asyncio
async def test_graceful_stop_finalizes_output(fake_ffmpeg: Path, tmp_path: Path):
    output = tmp_path / "out.wav"
    ready = asyncio.Event()
    completed: list[int] = []
    proc = EncoderProcess(
        _capture_cmd(fake_ffmpeg, output, "-nostdin"),
        grace_period=5.0,
        graceful_exit_codes=GRACEFUL,
        on_stderr_line=lambda line: ready.set(),
        on_completed=completed.append,
    )

    await proc.start()
    assert proc.running
    assert proc.pid is not None
    assert not proc.stop_requested
    await _wait_for_first_line(ready)
    proc.stop()
    proc.stop()
    assert proc.stop_requested
    returncode = await asyncio.wait_for(proc.wait(), timeout=10)

    assert returncode == 255
    assert completed == [255]
    assert output.stat().st_size > 1000
    assert not proc.running


@pytest.mark.asyncio
async def test_stubborn_process_is_killed_exactly_once(fake_ffmpeg: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_IGNORE_TERM", "1")
    ready = asyncio.Event()
    completed: list[int] = []
    proc = EncoderProcess(
        _capture_cmd(fake_ffmpeg, tmp_path / "out.wav", "-nostdin"),
        grace_period=0.3,
        graceful_exit_codes=GRACEFUL,
        on_stderr_line=lambda line: ready.set(),
        on_completed=completed.append,
    )
    await proc.start()

    kill_calls: list[int] = []
    real_kill = proc._proc.kill

    def _counting_kill() -> None:
        kill_calls.append(1)
        real_kill()

    proc._proc.kill = _counting_kill

    await _wait_for_first_line(ready)
    proc.stop()
    proc.stop()
    returncode = await asyncio.wait_for(proc.wait(), timeout=10)
    proc.kill()
    proc.stop()

    assert returncode == -signal.SIGKILL
    assert kill_calls == [1]
    assert completed == [-signal.SIGKILL]


@pytest.mark.asyncio
async def test_device_error_is_reported_once(fake_ffmpeg: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setenv(
        "FAKE_FFMPEG_STDERR",
        "[pulse @ 0x1] default: Device or resource busy\n"
        "[pulse @ 0x1] default: Permission denied\n",
    )
    monkeypatch.setenv("FAKE_FFMPEG_EXIT_CODE", "1")
    errors = []
    completed: list[int] = []
    proc = EncoderProcess(
        _capture_cmd(fake_ffmpeg, tmp_path / "out.wav", "-nostdin"),
        on_error=errors.append,
        on_completed=completed.append,
    )

    await proc.start()
    await asyncio.wait_for(proc.wait(), timeout=10)

    assert len(errors) == 1
    assert isinstance(errors[0], DeviceError)
    assert errors[0].reason == "busy"
    assert completed == [1]


@pytest.mark.asyncio
async def test_spawn_failure_raises(tmp_path: Path):
    proc = EncoderProcess([str(tmp_path / "no-such-ffmpeg"), "-version"])

    with pytest.raises(EncoderProcessError):
        await proc.start()
    proc.stop()
    proc.kill()


@pytest.mark.asyncio
async def test_stdin_stop_mode_sends_quit_key(fake_ffmpeg: Path, tmp_path: Path):
    output = tmp_path / "out.wav"
    ready = asyncio.Event()
    proc = EncoderProcess(
        _capture_cmd(fake_ffmpeg, output),
        stop_mode="stdin",
        graceful_exit_codes=frozenset({255}),
        on_stderr_line=lambda line: ready.set(),
    )

    await proc.start()
    await _wait_for_first_line(ready)
    proc.stop()
    returncode = await asyncio.wait_for(proc.wait(), timeout=10)

    assert returncode == 0
    assert output.exists()


@pytest.mark.asyncio
async def test_listener_failures_do_not_break_supervision():
    def _boom(line: str) -> None:
        raise RuntimeError("listener bug")

    completed: list[int] = []
    proc = EncoderProcess(
        [sys.executable, "-c", "import sys; sys.stderr.write('hello\\n')"],
        on_stderr_line=_boom,
        on_completed=completed.append,
    )

    await proc.start()
    await asyncio.wait_for(proc.wait(), timeout=10)

    assert completed == [0]
