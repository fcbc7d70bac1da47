"""Supervise one ffmpeg child process from spawn to exit.

- Streams stderr line by line and sniffs it for fatal device errors.
- stop() is two-phase: a graceful stop right away, then SIGKILL once the
  grace period runs out. ffmpeg needs the graceful path to finalize the
  container, so a straight kill risks a truncated file.
- on_completed fires exactly once per process, after stderr has drained.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
from typing import Callable, Iterable, Optional

from voxcap.errors import DeviceError, EncoderProcessError, RecorderError
from voxcap.ffmpeg_io import format_command

DEFAULT_GRACE_PERIOD_SECONDS = 5.0
STDERR_CHUNK_BYTES = 4096

_LINE_BREAK = re.compile(r"[\r\n]")

# (reason, predicate, message). Order matters: the macOS check is more specific
# than the generic "No such file or directory".
_FATAL_STDERR_RULES: tuple[tuple[str, Callable[[str], bool], str], ...] = (
    (
        "not_found",
        lambda line: "AVFoundation input device" in line and "not found" in line,
        "Audio input device not found on macOS. Please check microphone permissions "
        "in System Settings.",
    ),
    (
        "not_found",
        lambda line: "Could not find audio only device" in line,
        "Audio input device not found. Please check the selected microphone.",
    ),
    (
        "not_found",
        lambda line: "No such file or directory" in line,
        "Audio input device not found. Please check your microphone.",
    ),
    (
        "permission",
        lambda line: "Permission denied" in line,
        "Permission denied accessing microphone. Please grant microphone access "
        "to this application.",
    ),
    (
        "busy",
        lambda line: "Device or resource busy" in line,
        "Microphone is busy or being used by another application.",
    ),
    (
        "invalid_input",
        lambda line: "Invalid data found when processing input" in line,
        "Invalid audio input. Please check your microphone settings.",
    ),
)


def classify_stderr_line(line: str) -> Optional[DeviceError]:
    """Return a DeviceError when the line reports an unrecoverable device problem."""

    for reason, matches, message in _FATAL_STDERR_RULES:
        if matches(line):
            return DeviceError(message, reason=reason, detail=line.strip())
    return None


def split_stderr_lines(text: str, state: dict[str, str]) -> list[str]:
    """Split decoded stderr into complete lines, keeping any partial tail in state.

    ffmpeg terminates progress lines with a bare carriage return, so both
    ``\\r`` and ``\\n`` count as line breaks.
    """

    buffered = state.get("buffer", "") + text
    parts = _LINE_BREAK.split(buffered)
    state["buffer"] = parts.pop()
    return [part.strip() for part in parts if part.strip()]


def is_clean_exit(returncode: Optional[int], graceful_exit_codes: Iterable[int] = ()) -> bool:
    if returncode is None:
        return False
    return returncode == 0 or returncode in set(graceful_exit_codes)


class EncoderProcess:
    def __init__(
        self,
        command: Iterable[str],
        *,
        name: str = "ffmpeg",
        grace_period: float = DEFAULT_GRACE_PERIOD_SECONDS,
        stop_mode: str = "signal",
        graceful_exit_codes: Iterable[int] = (),
        on_stderr_line: Optional[Callable[[str], None]] = None,
        on_completed: Optional[Callable[[int], None]] = None,
        on_error: Optional[Callable[[RecorderError], None]] = None,
        detect_device_errors: bool = True,
        logger: Optional[logging.Logger] = None,
        lifecycle_level: int = logging.INFO,
    ) -> None:
        self.command = [str(part) for part in command]
        self.name = name
        self.grace_period = max(0.0, float(grace_period))
        self.stop_mode = stop_mode
        self.graceful_exit_codes = frozenset(graceful_exit_codes)
        self.returncode: Optional[int] = None

        self._on_stderr_line = on_stderr_line
        self._on_completed = on_completed
        self._on_error = on_error
        self._detect_device_errors = detect_device_errors
        self._log = logger or logging.getLogger("process_supervisor")
        # Level probes start every second; they log their lifecycle at DEBUG.
        self._lifecycle_level = lifecycle_level

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._grace_timer: Optional[asyncio.TimerHandle] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_state: dict[str, str] = {"buffer": ""}
        self._stop_requested = False
        self._kill_sent = False
        self._completed = False
        self._fatal_reported = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return (
            self._proc is not None
            and not self._completed
            and self._proc.returncode is None
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def completed(self) -> bool:
        return self._completed

    async def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError(f"{self.name} already started")

        self._log.log(
            self._lifecycle_level, "Launching %s: %s", self.name, format_command(self.command)
        )
        stdin = asyncio.subprocess.PIPE if self.stop_mode == "stdin" else asyncio.subprocess.DEVNULL
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=stdin,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise EncoderProcessError(
                f"Failed to start the audio encoder ({self.name}).", detail=repr(exc)
            ) from exc

        self._log.debug("%s started with pid %s", self.name, self._proc.pid)
        loop = asyncio.get_running_loop()
        self._watch_task = loop.create_task(self._watch(), name=f"{self.name}-watch")

    def stop(self) -> None:
        """Ask the process to finish its output, escalating to SIGKILL later."""

        proc = self._proc
        if proc is None or self._completed or proc.returncode is not None:
            return
        if self._stop_requested:
            return
        self._stop_requested = True

        self._log.log(self._lifecycle_level, "Stopping %s (pid %s)", self.name, proc.pid)
        try:
            if self.stop_mode == "stdin" and proc.stdin is not None:
                try:
                    proc.stdin.write(b"q")
                except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                    self._log.debug("%s stdin quit failed (%r); terminating", self.name, exc)
                    proc.terminate()
            else:
                proc.terminate()
        except ProcessLookupError:
            return

        loop = asyncio.get_running_loop()
        self._grace_timer = loop.call_later(self.grace_period, self._on_grace_expired)

    def kill(self) -> None:
        """Force the process down immediately. Safe to call repeatedly."""

        self._cancel_grace_timer()
        self._send_kill()

    async def wait(self) -> Optional[int]:
        task = self._watch_task
        if task is not None:
            await asyncio.shield(task)
        return self.returncode

    def _cancel_grace_timer(self) -> None:
        timer = self._grace_timer
        self._grace_timer = None
        if timer is not None:
            timer.cancel()

    def _on_grace_expired(self) -> None:
        self._grace_timer = None
        proc = self._proc
        if proc is None or self._completed or proc.returncode is not None:
            return
        self._log.warning(
            "%s did not exit %.1fs after graceful stop; sending SIGKILL",
            self.name,
            self.grace_period,
        )
        self._send_kill()

    def _send_kill(self) -> None:
        proc = self._proc
        if proc is None or self._kill_sent or self._completed or proc.returncode is not None:
            return
        self._kill_sent = True
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        except Exception as exc:
            # Do not swallow this; a surviving encoder keeps the device open.
            self._log.exception("%s kill() raised; process may remain: %r", self.name, exc)

    async def _watch(self) -> None:
        proc = self._proc
        assert proc is not None
        try:
            if proc.stderr is not None:
                while True:
                    chunk = await proc.stderr.read(STDERR_CHUNK_BYTES)
                    if not chunk:
                        break
                    self._consume(self._decoder.decode(chunk))
                self._consume(self._decoder.decode(b"", final=True))
                tail = self._line_state.get("buffer", "").strip()
                self._line_state["buffer"] = ""
                if tail:
                    self._handle_line(tail)
            returncode = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log.exception("Error while supervising %s", self.name)
            self._emit_error(
                EncoderProcessError("Lost track of the audio encoder process.", detail=repr(exc))
            )
            self._cancel_grace_timer()
            self._send_kill()
            returncode = await proc.wait()
        self._finish(returncode)

    def _consume(self, text: str) -> None:
        if not text:
            return
        for line in split_stderr_lines(text, self._line_state):
            self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        self._log.debug("[%s] %s", self.name, line)
        if self._on_stderr_line is not None:
            try:
                self._on_stderr_line(line)
            except Exception:  # noqa: BLE001 - a bad listener must not stop supervision
                self._log.exception("%s stderr listener failed", self.name)

        if "Immediate exit requested" in line:
            self._log.info("%s immediate exit (normal for short recordings)", self.name)
            return
        if not self._detect_device_errors or self._fatal_reported:
            return
        error = classify_stderr_line(line)
        if error is None:
            return
        self._fatal_reported = True
        self._log.error("%s reported a device error (%s): %s", self.name, error.reason, line)
        self._emit_error(error)

    def _emit_error(self, error: RecorderError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:  # noqa: BLE001 - diagnostics only
            self._log.exception("%s error listener failed", self.name)

    def _finish(self, returncode: int) -> None:
        self._cancel_grace_timer()
        if self._completed:
            return
        self._completed = True
        self.returncode = returncode

        if returncode == 0:
            self._log.log(self._lifecycle_level, "%s exited cleanly", self.name)
        elif is_clean_exit(returncode, self.graceful_exit_codes) and self._stop_requested:
            self._log.log(self._lifecycle_level, "%s stopped (rc=%s)", self.name, returncode)
        elif self._kill_sent:
            self._log.warning("%s killed; rc=%s", self.name, returncode)
        else:
            self._log.warning(
                "%s exited with code %s; checking its output anyway", self.name, returncode
            )

        if self._on_completed is not None:
            try:
                self._on_completed(returncode)
            except Exception:  # noqa: BLE001 - diagnostics only
                self._log.exception("%s completion listener failed", self.name)


__all__ = [
    "DEFAULT_GRACE_PERIOD_SECONDS",
    "EncoderProcess",
    "classify_stderr_line",
    "is_clean_exit",
    "split_stderr_lines",
]
