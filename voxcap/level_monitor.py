"""
VoiceActivityMonitor: volume-based silence detection next to a capture.

- Every segment a short ffmpeg probe reads the same device through
  ``volumedetect`` and discards the audio
- The window's loudness is max_volume (mean_volume when max is absent)
- A window louder than -threshold_db bumps last_voice_activity
- A separate check loop fires on_silence once, after warm-up, when the
  room has been quiet for silence_duration seconds

Probe failures are logged and otherwise ignored. The capture still ends on
its max-duration timer.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from voxcap.errors import EncoderProcessError, RecorderError
from voxcap.process_supervisor import EncoderProcess

_VOLUME_LINE = re.compile(r"(?P<kind>mean|max)_volume:\s*(?P<value>-?(?:inf|\d+(?:\.\d+)?))\s*dB")

DEFAULT_SEGMENT_SECONDS = 1.0
DEFAULT_CHECK_INTERVAL_SECONDS = 2.0
DEFAULT_WARMUP_SECONDS = 5.0
DEFAULT_PROBE_GRACE_SECONDS = 1.0


@dataclass(frozen=True)
class VoiceActivitySample:
    loudness_db: float
    sampled_at: float


def parse_volume_line(line: str) -> Optional[tuple[str, float]]:
    """Return ("mean" | "max", dB) for a volumedetect summary line."""

    match = _VOLUME_LINE.search(line)
    if not match:
        return None
    raw = match.group("value")
    value = float("-inf") if raw.endswith("inf") else float(raw)
    return match.group("kind"), value


class VoiceActivityMonitor:
    def __init__(
        self,
        command: Iterable[str],
        *,
        threshold_db: float,
        silence_duration: float,
        on_silence: Callable[[], None],
        segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        warmup_seconds: float = DEFAULT_WARMUP_SECONDS,
        probe_grace: float = DEFAULT_PROBE_GRACE_SECONDS,
        graceful_exit_codes: Iterable[int] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.command = list(command)
        # Configured as a positive attenuation; compared as dBFS.
        self.threshold_dbfs = -abs(float(threshold_db))
        self.silence_duration = float(silence_duration)
        self.segment_seconds = float(segment_seconds)
        self.check_interval = float(check_interval)
        self.warmup_seconds = float(warmup_seconds)
        self.probe_grace = float(probe_grace)
        self.graceful_exit_codes = frozenset(graceful_exit_codes)
        self._on_silence = on_silence
        self._clock = clock
        self._log = logging.getLogger("level_monitor")

        self._active = False
        self._triggered = False
        self._started_at = 0.0
        self._last_voice_activity = 0.0
        self._last_sample: Optional[VoiceActivitySample] = None
        self._probe_timer: Optional[asyncio.Handle] = None
        self._check_timer: Optional[asyncio.TimerHandle] = None
        self._probe: Optional[EncoderProcess] = None
        self._probe_task: Optional[asyncio.Task] = None
        self._probe_failures = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def triggered(self) -> bool:
        return self._triggered

    @property
    def last_voice_activity(self) -> float:
        return self._last_voice_activity

    @property
    def last_sample(self) -> Optional[VoiceActivitySample]:
        return self._last_sample

    def start(self, started_at: Optional[float] = None) -> None:
        if self._active:
            return
        loop = asyncio.get_running_loop()
        self._started_at = self._clock() if started_at is None else float(started_at)
        self._last_voice_activity = self._started_at
        self._triggered = False
        self._active = True
        self._log.info(
            "Silence detection on: threshold %.0f dBFS, %.1fs of silence, %.1fs warm-up",
            self.threshold_dbfs,
            self.silence_duration,
            self.warmup_seconds,
        )
        self._probe_timer = loop.call_soon(self._probe_tick)
        self._check_timer = loop.call_later(self.check_interval, self._check_tick)

    def stop(self) -> None:
        """Cancel both loops and kill any probe in flight. Idempotent."""

        self._active = False
        for handle in (self._probe_timer, self._check_timer):
            if handle is not None:
                handle.cancel()
        self._probe_timer = None
        self._check_timer = None
        probe = self._probe
        if probe is not None and not probe.completed:
            probe.kill()

    async def aclose(self) -> None:
        self.stop()
        task = self._probe_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def record_level(self, loudness_db: float, sampled_at: Optional[float] = None) -> VoiceActivitySample:
        now = self._clock() if sampled_at is None else float(sampled_at)
        sample = VoiceActivitySample(loudness_db=float(loudness_db), sampled_at=now)
        self._last_sample = sample
        if sample.loudness_db > self.threshold_dbfs:
            # Never move backwards, even for a late sample.
            self._last_voice_activity = max(self._last_voice_activity, now)
            self._log.debug("voice activity: %.1f dB", sample.loudness_db)
        else:
            self._log.debug("quiet window: %.1f dB", sample.loudness_db)
        return sample

    def check_silence(self, now: Optional[float] = None) -> bool:
        """Return True (and fire on_silence once) when the silence limit is reached."""

        if self._triggered:
            return False
        now = self._clock() if now is None else float(now)
        if now - self._started_at < self.warmup_seconds:
            return False
        silent_for = now - self._last_voice_activity
        if silent_for < self.silence_duration:
            return False

        self._triggered = True
        self._log.info("Silence for %.1fs; stopping the recording", silent_for)
        self.stop()
        try:
            self._on_silence()
        except Exception:  # noqa: BLE001 - diagnostics only
            self._log.exception("on_silence handler failed")
        return True

    def _probe_tick(self) -> None:
        self._probe_timer = None
        if not self._active:
            return
        loop = asyncio.get_running_loop()
        self._probe_timer = loop.call_later(self.segment_seconds, self._probe_tick)

        if self._probe_task is not None and not self._probe_task.done():
            self._log.debug("previous level probe still running; skipping this window")
            return
        self._probe_task = loop.create_task(self._run_probe(), name="level-probe")

    def _check_tick(self) -> None:
        self._check_timer = None
        if not self._active:
            return
        if self.check_silence():
            return
        loop = asyncio.get_running_loop()
        self._check_timer = loop.call_later(self.check_interval, self._check_tick)

    async def _run_probe(self) -> None:
        levels: dict[str, float] = {}

        def _on_line(line: str) -> None:
            parsed = parse_volume_line(line)
            if parsed is not None:
                kind, value = parsed
                levels[kind] = value

        def _on_error(error: RecorderError) -> None:
            self._log.debug("level probe error: %s", error.message)

        probe = EncoderProcess(
            self.command,
            name="level-probe",
            grace_period=self.probe_grace,
            graceful_exit_codes=self.graceful_exit_codes,
            on_stderr_line=_on_line,
            on_error=_on_error,
            logger=self._log,
            lifecycle_level=logging.DEBUG,
        )
        self._probe = probe
        try:
            await probe.start()
        except EncoderProcessError as exc:
            self._note_probe_failure(exc.detail or exc.message)
            return
        if not self._active:
            probe.kill()

        loop = asyncio.get_running_loop()
        deadline = loop.call_later(self.segment_seconds + self.probe_grace, probe.stop)
        try:
            await probe.wait()
        finally:
            deadline.cancel()

        if not self._active:
            return
        loudness = levels.get("max", levels.get("mean"))
        if loudness is None:
            self._note_probe_failure(f"no volume reading (rc={probe.returncode})")
            return
        self._probe_failures = 0
        self.record_level(loudness)

    def _note_probe_failure(self, reason: str) -> None:
        self._probe_failures += 1
        if self._probe_failures == 1:
            self._log.warning("Level probe failed (%s); relying on the duration limit", reason)
        else:
            self._log.debug("Level probe failed again (%s)", reason)


__all__ = [
    "VoiceActivityMonitor",
    "VoiceActivitySample",
    "parse_volume_line",
]
