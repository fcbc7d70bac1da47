"""
Small HTTP control surface around AudioRecorder.

It plays the host role: supplies options from the configuration, starts and
stops recordings on request, and keeps the last recording (or error) the
recorder's callbacks delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web import AppKey

from voxcap import diagnostics
from voxcap.audio_devices import PlatformProfile, detect_input_devices, select_input_device
from voxcap.config import get_cfg
from voxcap.errors import (
    ConcurrentRecordingError,
    DeviceUnavailableError,
    EncoderProcessError,
    RecorderError,
)
from voxcap.options import RecordingOptions
from voxcap.recording_session import LIVE_STATES, AudioRecorder

MAX_TEST_RECORDING_SECONDS = 30.0


@dataclass
class ControlState:
    last_audio: Optional[bytes] = None
    last_mime_type: Optional[str] = None
    last_filename: Optional[str] = None
    last_error: Optional[Dict[str, str]] = None
    completed_recordings: int = 0


RECORDER_KEY: AppKey[AudioRecorder] = web.AppKey("recorder", AudioRecorder)
CONTROL_STATE_KEY: AppKey[ControlState] = web.AppKey("control_state", ControlState)


def _error_response(error: RecorderError, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": error.to_dict()}, status=status)


def build_app(
    cfg: Optional[Dict[str, Any]] = None,
    *,
    profile: Optional[PlatformProfile] = None,
) -> web.Application:
    log = logging.getLogger("control_server")
    cfg = cfg if cfg is not None else get_cfg()
    options = RecordingOptions.from_cfg(cfg)
    control = ControlState()

    def _on_start() -> None:
        log.info("Recording started")

    def _on_stop(data: bytes, mime_type: str, filename: str) -> None:
        control.last_audio = data
        control.last_mime_type = mime_type
        control.last_filename = filename
        control.last_error = None
        control.completed_recordings += 1

    def _on_error(error: RecorderError) -> None:
        control.last_error = error.to_dict()

    recorder = AudioRecorder(
        options,
        on_recording_start=_on_start,
        on_recording_stop=_on_stop,
        on_error=_on_error,
        profile=profile,
    )

    app = web.Application()
    app[RECORDER_KEY] = recorder
    app[CONTROL_STATE_KEY] = control

    def _status_payload() -> Dict[str, Any]:
        session = recorder.session
        return {
            "state": recorder.state.value,
            "recording": recorder.is_recording(),
            "duration_ms": recorder.recording_duration_ms(),
            "device": session.device_id if session is not None else None,
            "last_error": control.last_error,
            "has_recording": control.last_audio is not None,
            "completed_recordings": control.completed_recordings,
        }

    async def status(request: web.Request) -> web.Response:
        return web.json_response(_status_payload())

    async def recording_start(request: web.Request) -> web.Response:
        overrides: Dict[str, Any] = {}
        if request.can_read_body:
            try:
                data = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                return web.json_response({"ok": False, "error": f"Invalid JSON payload: {exc}"}, status=400)
            if data is not None and not isinstance(data, dict):
                return web.json_response(
                    {"ok": False, "error": "Expected a JSON object of recording options"}, status=400
                )
            overrides = data or {}
        try:
            session_options = options.with_overrides(**overrides) if overrides else options
        except ValueError as exc:
            return web.json_response({"ok": False, "error": str(exc)}, status=400)

        try:
            session = await recorder.start_recording(session_options)
        except ConcurrentRecordingError as exc:
            return _error_response(exc, 409)
        except DeviceUnavailableError as exc:
            control.last_error = exc.to_dict()
            return _error_response(exc, 503)
        except EncoderProcessError as exc:
            control.last_error = exc.to_dict()
            return _error_response(exc, 500)
        except RecorderError as exc:  # pragma: no cover - every start failure is typed above
            control.last_error = exc.to_dict()
            return _error_response(exc, 500)

        control.last_error = None
        payload = {"ok": True, "state": session.state.value, "device": session.device_id}
        return web.json_response(payload)

    async def recording_stop(request: web.Request) -> web.Response:
        recorder.stop_recording()
        return web.json_response({"ok": True, "state": recorder.state.value})

    async def recording_last(request: web.Request) -> web.Response:
        if control.last_audio is None:
            return web.json_response({"ok": False, "error": "No recording available"}, status=404)
        headers = {
            "Content-Type": control.last_mime_type or "application/octet-stream",
            "Content-Disposition": f'attachment; filename="{control.last_filename or "recording"}"',
        }
        return web.Response(body=control.last_audio, headers=headers)

    async def devices(request: web.Request) -> web.Response:
        found = await detect_input_devices(options.encoder_path, recorder.profile)
        chosen = select_input_device(found, options.selected_device_id, recorder.profile)
        return web.json_response(
            {
                "devices": [device.to_dict() for device in found],
                "selected": chosen.to_dict(),
            }
        )

    async def diagnostics_report(request: web.Request) -> web.Response:
        report = await diagnostics.run_diagnostics(options.encoder_path, recorder.profile)
        return web.json_response(report.to_dict())

    async def diagnostics_test(request: web.Request) -> web.Response:
        seconds = 2.0
        if request.can_read_body:
            try:
                data = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                return web.json_response({"ok": False, "error": f"Invalid JSON payload: {exc}"}, status=400)
            if isinstance(data, dict) and "seconds" in data:
                try:
                    seconds = float(data["seconds"])
                except (TypeError, ValueError):
                    return web.json_response({"ok": False, "error": "seconds must be a number"}, status=400)
        if not 0 < seconds <= MAX_TEST_RECORDING_SECONDS:
            return web.json_response(
                {"ok": False, "error": f"seconds must be in (0, {MAX_TEST_RECORDING_SECONDS:g}]"},
                status=400,
            )
        if recorder.state in LIVE_STATES:
            error = ConcurrentRecordingError("Stop the current recording before running a test.")
            return _error_response(error, 409)

        result = await diagnostics.test_recording(
            seconds,
            encoder_path=options.encoder_path,
            profile=recorder.profile,
            device_preference=options.selected_device_id,
            tmp_dir=options.tmp_dir,
        )
        return web.json_response(result.to_dict())

    async def _cleanup_recorder(app: web.Application) -> None:
        await app[RECORDER_KEY].aclose()

    app.router.add_get("/api/status", status)
    app.router.add_post("/api/recording/start", recording_start)
    app.router.add_post("/api/recording/stop", recording_stop)
    app.router.add_get("/api/recording/last", recording_last)
    app.router.add_get("/api/devices", devices)
    app.router.add_get("/api/diagnostics", diagnostics_report)
    app.router.add_post("/api/diagnostics/test", diagnostics_test)
    app.on_cleanup.append(_cleanup_recorder)
    return app


async def serve(
    host: Optional[str] = None,
    port: Optional[int] = None,
    *,
    cfg: Optional[Dict[str, Any]] = None,
    access_log: bool = False,
) -> None:
    """Run the control server until SIGINT or SIGTERM."""

    log = logging.getLogger("control_server")
    cfg = cfg if cfg is not None else get_cfg()
    server_cfg = cfg.get("control_server", {})
    bind_host = host or server_cfg.get("listen_host", "127.0.0.1")
    bind_port = port if port is not None else int(server_cfg.get("listen_port", 8765))

    app = build_app(cfg)
    runner = web.AppRunner(app, access_log=log if access_log else None)
    await runner.setup()
    site = web.TCPSite(runner, bind_host, bind_port)
    await site.start()
    log.info("control server listening on %s:%s", bind_host, bind_port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        log.info("Stopping control server ...")
        await runner.cleanup()


__all__ = [
    "CONTROL_STATE_KEY",
    "ControlState",
    "RECORDER_KEY",
    "build_app",
    "serve",
]
