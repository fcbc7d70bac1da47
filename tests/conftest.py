from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from voxcap import config as config_module
from voxcap import recording_session
from voxcap.audio_devices import PROFILES

# Stands in for ffmpeg. Mimics -version, device listing, volumedetect probes
# and capture; behaviour is steered by FAKE_FFMPEG_* environment variables.
FAKE_FFMPEG_SOURCE = r'''
import os
import signal
import sys
import threading
import time
import wave

args = sys.argv[1:]

DEFAULT_SOURCES = (
    "Auto-detected sources for pulse:\n"
    "* alsa_input.usb-mic.analog-mono [USB Microphone]\n"
    "  alsa_input.pci.analog-stereo [Built-in Audio Analog Stereo]\n"
)

if "-version" in args:
    print("ffmpeg version 6.1-fake Copyright (c) 2000-2023 the FFmpeg developers")
    sys.exit(int(os.environ.get("FAKE_FFMPEG_VERSION_RC", "0")))

if "-sources" in args:
    sys.stdout.write(os.environ.get("FAKE_FFMPEG_SOURCES", DEFAULT_SOURCES))
    sys.exit(0)

if "-list_devices" in args:
    sys.stderr.write(os.environ.get("FAKE_FFMPEG_LISTING", ""))
    sys.exit(1)

duration = None
if "-t" in args:
    duration = float(args[args.index("-t") + 1])

if "volumedetect" in args:
    time.sleep(duration or 0)
    level = float(os.environ.get("FAKE_FFMPEG_LEVEL", "-70.0"))
    sys.stderr.write("[Parsed_volumedetect_0 @ 0x1] n_samples: 16000\n")
    sys.stderr.write(f"[Parsed_volumedetect_0 @ 0x1] mean_volume: {level - 10:.1f} dB\n")
    sys.stderr.write(f"[Parsed_volumedetect_0 @ 0x1] max_volume: {level:.1f} dB\n")
    sys.exit(0)

stopping = {"signal": False, "quit": False}


def _on_term(signum, frame):
    if os.environ.get("FAKE_FFMPEG_IGNORE_TERM") == "1":
        return
    stopping["signal"] = True


signal.signal(signal.SIGTERM, _on_term)

if "-nostdin" not in args:
    def _read_stdin():
        while True:
            ch = sys.stdin.read(1)
            if not ch:
                return
            if ch == "q":
                stopping["quit"] = True
                return

    threading.Thread(target=_read_stdin, daemon=True).start()

sys.stderr.write("Input #0, fake, from 'device':\n")
sys.stderr.write(os.environ.get("FAKE_FFMPEG_STDERR", ""))
sys.stderr.flush()

if "FAKE_FFMPEG_EXIT_CODE" in os.environ:
    sys.exit(int(os.environ["FAKE_FFMPEG_EXIT_CODE"]))

started = time.monotonic()
while not (stopping["signal"] or stopping["quit"]):
    if duration is not None and time.monotonic() - started >= duration:
        break
    sys.stderr.write(f"size=N/A time={time.monotonic() - started:.2f}\r")
    sys.stderr.flush()
    time.sleep(0.02)

output = args[-1]
if os.environ.get("FAKE_FFMPEG_NO_OUTPUT") != "1":
    nbytes = int(os.environ.get("FAKE_FFMPEG_BYTES", "32044"))
    amplitude = int(os.environ.get("FAKE_FFMPEG_AMPLITUDE", "8000"))
    if output.endswith(".wav") and nbytes > 44:
        frames = (nbytes - 44) // 2
        sample_hi = amplitude.to_bytes(2, "little", signed=True)
        sample_lo = (-amplitude).to_bytes(2, "little", signed=True)
        with wave.open(output, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(16000)
            wf.writeframes((sample_hi + sample_lo) * (frames // 2) + sample_hi * (frames % 2))
    else:
        with open(output, "wb") as fh:
            fh.write(b"\x01" * nbytes)

sys.stderr.write("\nExiting normally, received signal 15.\n" if stopping["signal"] else "\n")
sys.exit(255 if stopping["signal"] else 0)
'''


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Path:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "ffmpeg"
    script.write_text(f"#!{sys.executable}\n{FAKE_FFMPEG_SOURCE}")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def linux_profile():
    return PROFILES["linux"]


def reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture
def reset_config(monkeypatch):
    def _reset() -> None:
        reset_config_state(monkeypatch)

    return _reset


@pytest.fixture(autouse=True)
def _isolate_recorder_state(monkeypatch, tmp_path):
    for name in (
        "VOXCAP_CONFIG",
        "AUDIO_DEV",
        "SAMPLE_RATE",
        "AUDIO_CHANNELS",
        "AUDIO_FORMAT",
        "MAX_DURATION",
        "FFMPEG_PATH",
        "SILENCE_DETECTION",
        "SILENCE_THRESHOLD_DB",
        "SILENCE_DURATION",
        "TMP_DIR",
        "LOG_LEVEL",
        "DEV",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep ~/.config/voxcap out of the tests.
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    reset_config_state(monkeypatch)
    monkeypatch.setattr(recording_session, "_LIVE_SESSION", None)
    yield
    live = recording_session._LIVE_SESSION
    if live is not None:
        live.cleanup()
    reset_config_state(monkeypatch)
