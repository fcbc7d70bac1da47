"""
Recording session state machine and the AudioRecorder facade.

    IDLE -> STARTING -> RECORDING -> STOPPING -> COMPLETED | FAILED

A session owns the capture process, the optional voice activity monitor,
the max-duration timer and a private temp directory. Every terminal
transition runs cleanup() exactly once; later events from the process are
ignored. At most one session is live per interpreter.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import shutil
import signal
import tempfile
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from voxcap.audio_devices import (
    InputDevice,
    PlatformProfile,
    current_profile,
    list_input_devices,
    select_input_device,
)
from voxcap.config import get_cfg
from voxcap.encoder import check_encoder_availability
from voxcap.errors import (
    ConcurrentRecordingError,
    DeviceUnavailableError,
    EncoderProcessError,
    RecorderError,
    RecordingValidationError,
)
from voxcap.ffmpeg_io import build_capture_command, build_level_probe_command, extension_for
from voxcap.level_monitor import VoiceActivityMonitor
from voxcap.options import RecordingOptions
from voxcap.output_validator import ValidationResult, validate_output
from voxcap.process_supervisor import EncoderProcess, is_clean_exit

_LOG = logging.getLogger("recorder")

OnRecordingStart = Callable[[], None]
OnRecordingStop = Callable[[bytes, str, str], None]
OnError = Callable[[RecorderError], None]


class RecordingState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATES = frozenset({RecordingState.STARTING, RecordingState.RECORDING, RecordingState.STOPPING})
TERMINAL_STATES = frozenset({RecordingState.COMPLETED, RecordingState.FAILED})

_LIVE_SESSION: Optional["RecordingSession"] = None


def live_session() -> Optional["RecordingSession"]:
    session = _LIVE_SESSION
    if session is not None and session.is_live:
        return session
    return None


class RecordingSession:
    def __init__(
        self,
        options: RecordingOptions,
        *,
        profile: Optional[PlatformProfile] = None,
        on_recording_start: Optional[OnRecordingStart] = None,
        on_recording_stop: Optional[OnRecordingStop] = None,
        on_error: Optional[OnError] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options
        self.profile = profile or current_profile()
        self.state = RecordingState.IDLE
        self.started_at: Optional[float] = None
        self.stopped_at: Optional[float] = None
        self.stop_reason: Optional[str] = None
        self.temp_dir: Optional[str] = None
        self.temp_path: Optional[str] = None
        self.device: Optional[InputDevice] = None
        self.error: Optional[RecorderError] = None
        self.result: Optional[ValidationResult] = None

        self._on_recording_start = on_recording_start
        self._on_recording_stop = on_recording_stop
        self._on_error = on_error
        self._clock = clock

        self._process: Optional[EncoderProcess] = None
        self._monitor: Optional[VoiceActivityMonitor] = None
        self._max_duration_timer: Optional[asyncio.TimerHandle] = None
        self._finish_task: Optional[asyncio.Task] = None
        self._stop_pending = False
        self._cleaned = False
        self._done = asyncio.Event()

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    @property
    def device_id(self) -> Optional[str]:
        return self.device.identifier if self.device else None

    @property
    def process(self) -> Optional[EncoderProcess]:
        return self._process

    @property
    def monitor(self) -> Optional[VoiceActivityMonitor]:
        return self._monitor

    @property
    def last_voice_activity(self) -> Optional[float]:
        if self._monitor is not None:
            return self._monitor.last_voice_activity
        return self.started_at

    def duration_ms(self) -> int:
        if self.started_at is None:
            return 0
        end = self.stopped_at if self.stopped_at is not None else self._clock()
        return max(0, int((end - self.started_at) * 1000))

    async def start(self) -> None:
        global _LIVE_SESSION
        if live_session() is not None:
            raise ConcurrentRecordingError("A recording is already in progress.")
        if self.state is not RecordingState.IDLE:
            raise RuntimeError("a recording session can only be started once")

        _LIVE_SESSION = self
        self._set_state(RecordingState.STARTING)
        try:
            await self._launch()
        except RecorderError as exc:
            self._fail(exc, notify=False)
            raise
        except asyncio.CancelledError:
            self._fail(EncoderProcessError("Recording start was cancelled."), notify=False)
            raise
        except Exception as exc:
            _LOG.exception("Unexpected failure while starting the recording")
            error = EncoderProcessError(
                "Failed to start the recording. See the log for details.", detail=repr(exc)
            )
            self._fail(error, notify=False)
            raise error from exc

    async def _launch(self) -> None:
        opts = self.options
        profile = self.profile

        availability = await check_encoder_availability(opts.encoder_path)
        if not availability.available or availability.path is None:
            raise DeviceUnavailableError(
                availability.error or "FFmpeg is not available.",
                detail=availability.path,
            )
        executable = availability.path

        devices = await list_input_devices(executable, profile)
        self.device = select_input_device(devices, opts.selected_device_id, profile)
        _LOG.info("Recording from %s (%s)", self.device.identifier, self.device.label)

        if self._cleaned:
            raise EncoderProcessError("Recording was cancelled before the encoder started.")

        # A fresh directory per session: the output name is never reused and
        # a file ffmpeg never created is detectable.
        self.temp_dir = tempfile.mkdtemp(prefix="voxcap-", dir=opts.tmp_dir or None)
        self.temp_path = os.path.join(self.temp_dir, f"recording.{extension_for(opts.container_format)}")

        command = build_capture_command(
            executable,
            profile,
            self.device.identifier,
            self.temp_path,
            sample_rate=opts.sample_rate,
            channels=opts.channel_count,
            codec=opts.resolved_codec,
            max_duration_seconds=opts.max_duration_seconds,
        )
        self._process = EncoderProcess(
            command,
            name="ffmpeg",
            grace_period=opts.grace_period_seconds,
            stop_mode=profile.stop_mode,
            graceful_exit_codes=profile.graceful_exit_codes,
            on_completed=self._on_process_completed,
            on_error=self._on_process_error,
            logger=_LOG,
        )
        await self._process.start()

        if self._cleaned:
            self._process.kill()
            raise EncoderProcessError("Recording was cancelled while the encoder started.")

        self.started_at = self._clock()
        self._set_state(RecordingState.RECORDING)
        loop = asyncio.get_running_loop()

        if opts.max_duration_seconds:
            self._max_duration_timer = loop.call_later(
                float(opts.max_duration_seconds), self._on_max_duration
            )

        if opts.silence_detection_enabled:
            self._monitor = VoiceActivityMonitor(
                build_level_probe_command(
                    executable, profile, self.device.identifier, opts.segment_seconds
                ),
                threshold_db=opts.silence_threshold_db,
                silence_duration=opts.silence_duration_seconds,
                on_silence=self._on_silence,
                segment_seconds=opts.segment_seconds,
                check_interval=opts.check_interval_seconds,
                warmup_seconds=opts.warmup_seconds,
                graceful_exit_codes=profile.graceful_exit_codes,
                clock=self._clock,
            )
            self._monitor.start(self.started_at)

        self._notify(self._on_recording_start)

        if self._stop_pending:
            _LOG.info("Stop was requested while starting; stopping now")
            self.stop(reason="user")

    def stop(self, reason: str = "user") -> None:
        """Begin the graceful stop. Never raises; a no-op outside RECORDING."""

        if self.state is RecordingState.STARTING:
            self._stop_pending = True
            return
        if self.state is not RecordingState.RECORDING:
            return

        self.stop_reason = reason
        _LOG.info("Stopping recording (%s) after %dms", reason, self.duration_ms())
        self._enter_stopping()
        if self._process is not None:
            self._process.stop()

    def cleanup(self) -> None:
        """Release every resource the session holds. Safe to call repeatedly."""

        global _LIVE_SESSION
        if self._cleaned:
            return
        self._cleaned = True

        self._cancel_timers()
        if self._monitor is not None:
            self._monitor.stop()
        if self._process is not None and not self._process.completed:
            self._process.kill()

        task = self._finish_task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

        if self.temp_dir:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            _LOG.debug("Removed %s", self.temp_dir)

        if self.state not in TERMINAL_STATES and self.state is not RecordingState.IDLE:
            _LOG.warning("Recording abandoned in state %s", self.state.value)
            if self.error is None:
                self.error = EncoderProcessError("Recording was interrupted.")
            self.state = RecordingState.FAILED

        if _LIVE_SESSION is self:
            _LIVE_SESSION = None
        self._done.set()

    async def aclose(self) -> None:
        """cleanup(), then wait until the encoder and any probe are reaped."""

        self.cleanup()
        if self._monitor is not None:
            await self._monitor.aclose()
        if self._process is not None:
            await self._process.wait()

    async def wait_finished(self) -> RecordingState:
        await self._done.wait()
        return self.state

    def _set_state(self, state: RecordingState) -> None:
        _LOG.debug("recording state %s -> %s", self.state.value, state.value)
        self.state = state

    def _cancel_timers(self) -> None:
        timer = self._max_duration_timer
        self._max_duration_timer = None
        if timer is not None:
            timer.cancel()

    def _enter_stopping(self) -> None:
        self._set_state(RecordingState.STOPPING)
        self.stopped_at = self._clock()
        self._cancel_timers()
        if self._monitor is not None:
            self._monitor.stop()

    def _on_max_duration(self) -> None:
        self._max_duration_timer = None
        _LOG.info("Maximum duration of %ss reached", self.options.max_duration_seconds)
        self.stop(reason="max_duration")

    def _on_silence(self) -> None:
        self.stop(reason="silence")

    def _on_process_completed(self, returncode: int) -> None:
        if self._cleaned or self.state in TERMINAL_STATES:
            return
        if self.state is RecordingState.RECORDING:
            pid = self._process.pid if self._process is not None else None
            _LOG.info("Encoder (pid %s) finished on its own (rc=%s)", pid, returncode)
            self.stop_reason = "encoder_exit"
            self._enter_stopping()
        if not is_clean_exit(returncode, self.profile.graceful_exit_codes):
            _LOG.warning("Encoder exit code %s is unexpected; validating output anyway", returncode)
        self._finish_task = asyncio.get_running_loop().create_task(
            self._finish(), name="recording-finish"
        )

    def _on_process_error(self, error: RecorderError) -> None:
        self._fail(error)

    async def _finish(self) -> None:
        if self.temp_path is None:
            self._fail(RecordingValidationError("No recording file was produced."))
            return
        try:
            result = await validate_output(
                self.temp_path, self.duration_ms(), self.options.container_format
            )
        except OSError as exc:
            if self._cleaned:
                return
            self._fail(
                RecordingValidationError("The recording could not be read.", detail=repr(exc))
            )
            return

        if self._cleaned or self.state in TERMINAL_STATES:
            return
        if not result.accepted:
            self._fail(
                RecordingValidationError(
                    result.reason or "The recording is unusable.",
                    severity=result.severity or "error",
                )
            )
            return

        self.result = result
        self._set_state(RecordingState.COMPLETED)
        self.cleanup()
        _LOG.info("Recording complete: %d bytes (%s)", len(result.data), result.mime_type)
        self._notify(self._on_recording_stop, result.data, result.mime_type, result.filename)

    def _fail(self, error: RecorderError, *, notify: bool = True) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.error = error
        _LOG.error("Recording failed (%s): %s", error.kind, error.message)
        self._set_state(RecordingState.FAILED)
        self.cleanup()
        if notify:
            self._notify(self._on_error, error)

    def _notify(self, callback: Optional[Callable[..., None]], *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001 - a host callback must not break the session
            _LOG.exception("Recording callback %r failed", callback)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class AudioRecorder:
    """Inbound facade used by hosts (CLI, control server, tests)."""

    def __init__(
        self,
        options: Optional[RecordingOptions] = None,
        *,
        on_recording_start: Optional[OnRecordingStart] = None,
        on_recording_stop: Optional[OnRecordingStop] = None,
        on_error: Optional[OnError] = None,
        profile: Optional[PlatformProfile] = None,
    ) -> None:
        self.options = options or RecordingOptions.from_cfg(get_cfg())
        self.profile = profile or current_profile()
        self.on_recording_start = on_recording_start
        self.on_recording_stop = on_recording_stop
        self.on_error = on_error
        self._session: Optional[RecordingSession] = None
        self._hook_loop: Optional[asyncio.AbstractEventLoop] = None
        self._hook_signals: list[tuple[int, bool, object]] = []
        self._atexit_registered = False

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def state(self) -> RecordingState:
        if self._session is None:
            return RecordingState.IDLE
        return self._session.state

    async def start_recording(self, options: Optional[RecordingOptions] = None) -> RecordingSession:
        if live_session() is not None:
            raise ConcurrentRecordingError("A recording is already in progress.")
        session = RecordingSession(
            options or self.options,
            profile=self.profile,
            on_recording_start=self.on_recording_start,
            on_recording_stop=self.on_recording_stop,
            on_error=self.on_error,
        )
        self._session = session
        await session.start()
        return session

    def stop_recording(self) -> None:
        session = self._session
        if session is None:
            return
        session.stop(reason="user")

    def is_recording(self) -> bool:
        return self.state in (RecordingState.RECORDING, RecordingState.STOPPING)

    def recording_duration_ms(self) -> int:
        if self._session is None or not self.is_recording():
            return 0
        return self._session.duration_ms()

    async def wait_finished(self) -> RecordingState:
        session = self._session
        if session is None:
            return RecordingState.IDLE
        return await session.wait_finished()

    def cleanup(self) -> None:
        session = self._session
        if session is not None:
            session.cleanup()

    async def aclose(self) -> None:
        session = self._session
        if session is not None:
            await session.aclose()

    def install_shutdown_hooks(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        signals: Iterable[int] = (signal.SIGTERM,),
    ) -> None:
        """Route host shutdown (signals and interpreter exit) to cleanup()."""

        if not self._atexit_registered:
            atexit.register(self.cleanup)
            self._atexit_registered = True

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        for sig in signals:
            if loop is not None:
                try:
                    loop.add_signal_handler(sig, self._on_shutdown_signal, sig)
                    self._hook_signals.append((sig, True, None))
                    continue
                except (NotImplementedError, RuntimeError):
                    pass
            previous = signal.signal(sig, lambda signum, _frame: self._on_shutdown_signal(signum))
            self._hook_signals.append((sig, False, previous))
        self._hook_loop = loop

    def remove_shutdown_hooks(self) -> None:
        for sig, via_loop, previous in self._hook_signals:
            if via_loop:
                if self._hook_loop is not None:
                    self._hook_loop.remove_signal_handler(sig)
            else:
                signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._hook_signals = []
        self._hook_loop = None
        if self._atexit_registered:
            atexit.unregister(self.cleanup)
            self._atexit_registered = False

    def _on_shutdown_signal(self, signum: int) -> None:
        _LOG.info("Received signal %s; cleaning up", signum)
        self.cleanup()


__all__ = [
    "AudioRecorder",
    "LIVE_STATES",
    "RecordingSession",
    "RecordingState",
    "TERMINAL_STATES",
    "live_session",
]
