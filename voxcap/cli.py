"""Command line entry point: ``voxcap record|devices|diagnose|test-recording|serve``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from voxcap import __version__, diagnostics
from voxcap.audio_devices import detect_input_devices, select_input_device
from voxcap.config import active_config_path, get_cfg, log_level_from_cfg
from voxcap.errors import RecorderError
from voxcap.ffmpeg_io import CONTAINER_FORMATS
from voxcap.options import RecordingOptions
from voxcap.recording_session import AudioRecorder, RecordingState


def _configure_logging(level_name: Optional[str], cfg: Dict[str, Any]) -> None:
    if level_name:
        level = getattr(logging, level_name.upper(), logging.INFO)
    else:
        level = log_level_from_cfg(cfg)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _options_from_args(args: argparse.Namespace, cfg: Dict[str, Any]) -> RecordingOptions:
    options = RecordingOptions.from_cfg(cfg)
    overrides: Dict[str, Any] = {}
    if args.device:
        overrides["selected_device_id"] = args.device
    if args.format:
        overrides["container_format"] = args.format
    if args.max_duration is not None:
        overrides["max_duration_seconds"] = args.max_duration if args.max_duration > 0 else None
    if args.no_silence:
        overrides["silence_detection_enabled"] = False
    return options.with_overrides(**overrides) if overrides else options


async def _record(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    log = logging.getLogger("voxcap")
    outcome: Dict[str, Any] = {}

    def _on_stop(data: bytes, mime_type: str, filename: str) -> None:
        outcome.update(data=data, mime_type=mime_type, filename=filename)

    def _on_error(error: RecorderError) -> None:
        outcome["error"] = error

    recorder = AudioRecorder(
        _options_from_args(args, cfg),
        on_recording_start=lambda: print("Recording... press Ctrl+C to stop.", file=sys.stderr),
        on_recording_stop=_on_stop,
        on_error=_on_error,
    )

    loop = asyncio.get_running_loop()
    sigint_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, recorder.stop_recording)
        sigint_installed = True
    except (NotImplementedError, RuntimeError):
        pass
    recorder.install_shutdown_hooks(loop, signals=(signal.SIGTERM,))

    try:
        try:
            await recorder.start_recording()
        except RecorderError as exc:
            log.debug("start failed: %r", exc)
            print(f"error: {exc.message}", file=sys.stderr)
            return 1
        state = await recorder.wait_finished()
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
        recorder.remove_shutdown_hooks()
        await recorder.aclose()

    if state is RecordingState.COMPLETED and "data" in outcome:
        target = Path(args.output or outcome["filename"])
        target.write_bytes(outcome["data"])
        print(f"Saved {len(outcome['data'])} bytes ({outcome['mime_type']}) to {target}")
        return 0

    error = outcome.get("error")
    if error is None and recorder.session is not None:
        error = recorder.session.error
    message = error.message if error is not None else f"recording ended in state {state.value}"
    print(f"error: {message}", file=sys.stderr)
    return 1


async def _devices(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    options = RecordingOptions.from_cfg(cfg)
    found = await detect_input_devices(options.encoder_path)
    chosen = select_input_device(found, options.selected_device_id)
    if args.json:
        print(json.dumps([device.to_dict() for device in found], indent=2))
        return 0
    for device in found:
        marker = "*" if device.identifier == chosen.identifier else " "
        default = " (default)" if device.is_default else ""
        print(f"{marker} {device.identifier:<24} {device.label}{default}")
    return 0


async def _diagnose(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    options = RecordingOptions.from_cfg(cfg)
    report = await diagnostics.run_diagnostics(options.encoder_path)
    payload = report.to_dict()
    config_path = active_config_path()
    payload["config_path"] = str(config_path) if config_path is not None else None
    print(json.dumps(payload, indent=2))
    return 0 if report.ok else 1


async def _test_recording(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    options = RecordingOptions.from_cfg(cfg)
    result = await diagnostics.test_recording(
        args.seconds,
        encoder_path=options.encoder_path,
        device_preference=options.selected_device_id,
        tmp_dir=options.tmp_dir,
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


async def _serve(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    from voxcap.control_server import serve

    await serve(args.host, args.port, cfg=cfg, access_log=args.access_log)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voxcap",
        description="Capture microphone audio through ffmpeg with silence detection.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Python logging level (default: from config).")
    sub = parser.add_subparsers(dest="command", required=True)

    record = sub.add_parser("record", help="Record until stopped, silent or at the duration cap.")
    record.add_argument("--output", "-o", help="Output file (default: recording.<format>).")
    record.add_argument("--device", help="Device id, or 'auto' for the system default.")
    record.add_argument("--format", choices=CONTAINER_FORMATS, help="Container format.")
    record.add_argument(
        "--max-duration",
        type=float,
        help="Hard cap in seconds (0 disables the cap).",
    )
    record.add_argument("--no-silence", action="store_true", help="Disable silence detection.")
    record.set_defaults(handler=_record)

    devices = sub.add_parser("devices", help="List audio input devices.")
    devices.add_argument("--json", action="store_true", help="Print JSON instead of a table.")
    devices.set_defaults(handler=_devices)

    diagnose = sub.add_parser("diagnose", help="Check ffmpeg and the input devices.")
    diagnose.set_defaults(handler=_diagnose)

    test = sub.add_parser("test-recording", help="Record a short test clip and report on it.")
    test.add_argument("--seconds", type=float, default=2.0, help="Clip length (default: 2).")
    test.set_defaults(handler=_test_recording)

    serve = sub.add_parser("serve", help="Run the HTTP control server.")
    serve.add_argument("--host", help="Override bind host (defaults to config).")
    serve.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    serve.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    serve.set_defaults(handler=_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = get_cfg()
    _configure_logging(args.log_level, cfg)
    try:
        return asyncio.run(args.handler(args, cfg))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
