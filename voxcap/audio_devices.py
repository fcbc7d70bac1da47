"""Enumerate microphone inputs through ffmpeg's device listing modes."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import sys
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from voxcap.encoder import resolve_encoder_path
from voxcap.errors import DeviceUnavailableError

_LOG = logging.getLogger("audio_devices")

LISTING_TIMEOUT_SECONDS = 5.0
FALLBACK_LABEL = "Default Audio Device"

_AVFOUNDATION_LINE = re.compile(
    r"\[AVFoundation[^\]]*\]\s+\[(?P<index>\d+)\]\s+(?P<name>.+?)\s*$"
)
_DSHOW_NAME = re.compile(r'"(?P<name>[^"]+)"(?:\s*\((?P<kind>[^)]*)\))?')
_PULSE_SOURCE = re.compile(
    r"^\s*(?P<default>\*)?\s*(?P<source>\S+)\s+\[(?P<description>[^\]]*)\]\s*$"
)


@dataclass(frozen=True)
class InputDevice:
    identifier: str
    label: str
    is_default: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"id": self.identifier, "name": self.label, "is_default": self.is_default}


@dataclass(frozen=True)
class PlatformProfile:
    """How ffmpeg reaches microphones on one platform family."""

    family: str
    input_format: str
    default_device: str
    list_args: tuple[str, ...]
    parse_listing: Callable[[str], List[InputDevice]] = field(compare=False)
    graceful_exit_codes: frozenset[int] = frozenset()
    # "signal" sends SIGTERM, "stdin" writes ffmpeg's interactive quit key.
    stop_mode: str = "signal"


def parse_avfoundation_listing(output: str) -> List[InputDevice]:
    devices: List[InputDevice] = []
    in_audio_section = False
    for line in output.splitlines():
        if "AVFoundation audio devices" in line:
            in_audio_section = True
            continue
        if "AVFoundation video devices" in line:
            in_audio_section = False
            continue
        if not in_audio_section:
            continue
        match = _AVFOUNDATION_LINE.search(line)
        if not match:
            continue
        name = match.group("name").strip()
        if not name:
            continue
        index = match.group("index")
        devices.append(
            InputDevice(identifier=f":{index}", label=name, is_default=index == "0")
        )
    return devices


def parse_dshow_listing(output: str) -> List[InputDevice]:
    devices: List[InputDevice] = []
    section: Optional[str] = None
    for line in output.splitlines():
        if "DirectShow video devices" in line:
            section = "video"
            continue
        if "DirectShow audio devices" in line:
            section = "audio"
            continue
        if "Alternative name" in line:
            continue
        match = _DSHOW_NAME.search(line)
        if not match:
            continue
        kind = (match.group("kind") or "").lower()
        if kind:
            if "audio" not in kind:
                continue
        elif section != "audio":
            continue
        name = match.group("name").strip()
        if not name:
            continue
        devices.append(
            InputDevice(identifier=f"audio={name}", label=name, is_default=not devices)
        )
    return devices


def parse_pulse_listing(output: str) -> List[InputDevice]:
    devices: List[InputDevice] = []
    for line in output.splitlines():
        if "sources for" in line.lower():
            continue
        match = _PULSE_SOURCE.match(line)
        if not match:
            continue
        source = match.group("source").strip()
        description = match.group("description").strip() or source
        devices.append(
            InputDevice(
                identifier=source,
                label=description,
                is_default=bool(match.group("default")),
            )
        )
    return devices


PROFILES: dict[str, PlatformProfile] = {
    "macos": PlatformProfile(
        family="macos",
        input_format="avfoundation",
        default_device=":0",
        list_args=("-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""),
        parse_listing=parse_avfoundation_listing,
        graceful_exit_codes=frozenset({255, -signal.SIGTERM}),
    ),
    "windows": PlatformProfile(
        family="windows",
        input_format="dshow",
        default_device="audio=Microphone",
        list_args=("-hide_banner", "-list_devices", "true", "-f", "dshow", "-i", "dummy"),
        parse_listing=parse_dshow_listing,
        graceful_exit_codes=frozenset({255}),
        stop_mode="stdin",
    ),
    "linux": PlatformProfile(
        family="linux",
        input_format="pulse",
        default_device="default",
        list_args=("-hide_banner", "-sources", "pulse"),
        parse_listing=parse_pulse_listing,
        graceful_exit_codes=frozenset({255, -signal.SIGTERM}),
    ),
}


def detect_platform() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def current_profile() -> PlatformProfile:
    return PROFILES[detect_platform()]


def fallback_device(profile: PlatformProfile, *, suffix: str = "") -> InputDevice:
    label = f"{FALLBACK_LABEL} ({suffix})" if suffix else FALLBACK_LABEL
    return InputDevice(identifier=profile.default_device, label=label, is_default=True)


def is_fallback_only(devices: Iterable[InputDevice], profile: PlatformProfile) -> bool:
    items = list(devices)
    return (
        len(items) == 1
        and items[0].identifier == profile.default_device
        and items[0].label.startswith(FALLBACK_LABEL)
    )


async def _run_listing(command: Iterable[str], timeout: float) -> str:
    argv = list(command)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise DeviceUnavailableError(
            "Unable to run the audio encoder to list devices.", detail=repr(exc)
        ) from exc

    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise DeviceUnavailableError(
            "Listing audio devices timed out.", detail=" ".join(argv)
        ) from exc

    # ffmpeg prints -list_devices output to stderr and -sources output to stdout.
    output = stdout_raw.decode("utf-8", errors="replace").strip()
    if not output:
        output = stderr_raw.decode("utf-8", errors="replace").strip()
    return output


async def list_input_devices(
    encoder_path: str | None = None,
    profile: PlatformProfile | None = None,
    *,
    timeout: float = LISTING_TIMEOUT_SECONDS,
) -> List[InputDevice]:
    """Return the microphones ffmpeg can see, or a single default placeholder.

    Never raises: a best-effort recording against the default device is still
    worth attempting when enumeration fails.
    """

    profile = profile or current_profile()
    executable = resolve_encoder_path(encoder_path)
    if executable is None:
        _LOG.warning("ffmpeg not found; assuming default input device %s", profile.default_device)
        return [fallback_device(profile, suffix="Error")]

    try:
        output = await _run_listing([executable, *profile.list_args], timeout)
    except DeviceUnavailableError as exc:
        _LOG.warning("Device enumeration failed: %s (%s)", exc.message, exc.detail)
        return [fallback_device(profile, suffix="Error")]

    seen_ids: set[str] = set()
    discovered: List[InputDevice] = []
    for device in profile.parse_listing(output):
        if device.identifier in seen_ids:
            continue
        seen_ids.add(device.identifier)
        discovered.append(device)

    if not discovered:
        _LOG.info("No input devices parsed from %s listing; using default", profile.family)
        _LOG.debug("Unparsed listing output: %s", output)
        return [fallback_device(profile)]
    return discovered


def select_input_device(
    devices: Iterable[InputDevice],
    preference: str | None,
    profile: PlatformProfile | None = None,
) -> InputDevice:
    """Pick the device for a recording; unknown preferences fall back to default."""

    profile = profile or current_profile()
    candidates = list(devices)

    def _default() -> InputDevice:
        for device in candidates:
            if device.is_default:
                return device
        if candidates:
            return candidates[0]
        return fallback_device(profile)

    wanted = (preference or "").strip()
    if not wanted or wanted.lower() == "auto":
        return _default()

    for device in candidates:
        if device.identifier == wanted:
            return device

    chosen = _default()
    _LOG.warning(
        "Configured input device %r not found; falling back to %s (%s)",
        wanted,
        chosen.identifier,
        chosen.label,
    )
    return chosen


async def detect_input_devices(
    encoder_path: str | None = None,
    profile: PlatformProfile | None = None,
) -> List[InputDevice]:
    """list_input_devices() for hosts and diagnostics; logs what was found."""

    profile = profile or current_profile()
    devices = await list_input_devices(encoder_path, profile)
    if is_fallback_only(devices, profile):
        _LOG.info("Only the default %s input is available", profile.family)
    else:
        _LOG.info(
            "Detected %d %s input device(s): %s",
            len(devices),
            profile.family,
            ", ".join(device.label for device in devices),
        )
    return devices


__all__ = [
    "InputDevice",
    "PROFILES",
    "PlatformProfile",
    "current_profile",
    "detect_input_devices",
    "detect_platform",
    "fallback_device",
    "is_fallback_only",
    "list_input_devices",
    "parse_avfoundation_listing",
    "parse_dshow_listing",
    "parse_pulse_listing",
    "select_input_device",
]
