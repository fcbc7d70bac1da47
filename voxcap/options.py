"""Recording options, fixed for the lifetime of one session."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from voxcap.config import SILENCE_THRESHOLD_RANGE, parse_bool, parse_float_like, parse_int_like
from voxcap.ffmpeg_io import CONTAINER_FORMATS, default_codec, normalize_format

_OPTIONAL_TEXT = frozenset({"codec", "encoder_path", "tmp_dir"})


def _coerce_option(name: str, value: Any) -> Any:
    if name in _OPTIONAL_TEXT or name == "selected_device_id":
        if value is None:
            text = ""
        elif isinstance(value, str):
            text = value.strip()
        else:
            raise ValueError(f"{name} must be a string")
        if name == "selected_device_id":
            return text or "auto"
        return text or None

    if name == "container_format":
        fmt = value.strip().lower() if isinstance(value, str) else None
        if fmt not in CONTAINER_FORMATS:
            raise ValueError(f"container_format must be one of: {', '.join(CONTAINER_FORMATS)}")
        return fmt

    if name == "silence_detection_enabled":
        enabled = parse_bool(value)
        if enabled is None:
            raise ValueError(f"{name} must be true or false, got {value!r}")
        return enabled

    if name in ("sample_rate", "channel_count"):
        parsed_int = parse_int_like(value)
        if parsed_int is None:
            raise ValueError(f"{name} must be an integer, got {value!r}")
        if name == "sample_rate":
            return max(8000, parsed_int)
        return min(2, max(1, parsed_int))

    if name == "max_duration_seconds" and value is None:
        return None
    parsed = parse_float_like(value)
    if parsed is None:
        raise ValueError(f"{name} must be a number, got {value!r}")
    if name == "max_duration_seconds":
        # Zero or negative means no cap, as in the configuration.
        return parsed if parsed > 0 else None
    if name == "silence_threshold_db":
        low, high = SILENCE_THRESHOLD_RANGE
        return min(high, max(low, parsed))
    if name == "warmup_seconds":
        if parsed < 0:
            raise ValueError(f"{name} must not be negative")
        return parsed
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


@dataclass(frozen=True)
class RecordingOptions:
    sample_rate: int = 16000
    channel_count: int = 1
    codec: Optional[str] = None
    container_format: str = "wav"
    max_duration_seconds: Optional[float] = None
    silence_detection_enabled: bool = False
    silence_threshold_db: float = 30.0
    silence_duration_seconds: float = 3.0
    selected_device_id: str = "auto"
    encoder_path: Optional[str] = None
    grace_period_seconds: float = 5.0
    segment_seconds: float = 1.0
    check_interval_seconds: float = 2.0
    warmup_seconds: float = 5.0
    tmp_dir: Optional[str] = None

    @property
    def resolved_codec(self) -> str:
        return self.codec or default_codec(self.container_format)

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "RecordingOptions":
        audio = cfg.get("audio", {})
        encoder = cfg.get("encoder", {})
        silence = cfg.get("silence", {})
        paths = cfg.get("paths", {})
        return cls(
            sample_rate=int(audio.get("sample_rate", 16000)),
            channel_count=int(audio.get("channels", 1)),
            codec=audio.get("codec") or None,
            container_format=normalize_format(audio.get("format")),
            max_duration_seconds=audio.get("max_duration_seconds") or None,
            silence_detection_enabled=bool(silence.get("enabled", False)),
            silence_threshold_db=float(silence.get("threshold_db", 30.0)),
            silence_duration_seconds=float(silence.get("duration_seconds", 3.0)),
            selected_device_id=str(audio.get("device") or "auto"),
            encoder_path=encoder.get("path") or None,
            grace_period_seconds=float(encoder.get("grace_period_seconds", 5.0)),
            segment_seconds=float(silence.get("segment_seconds", 1.0)),
            check_interval_seconds=float(silence.get("check_interval_seconds", 2.0)),
            warmup_seconds=float(silence.get("warmup_seconds", 5.0)),
            tmp_dir=paths.get("tmp_dir") or None,
        )

    def with_overrides(self, **overrides: Any) -> "RecordingOptions":
        """Copy with some fields replaced.

        Values may come from JSON or the command line, so each one is coerced
        to the field's type and clamped like the configuration is. Unknown
        names and unreadable values raise ValueError.
        """

        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown recording option(s): {', '.join(unknown)}")
        coerced = {name: _coerce_option(name, value) for name, value in overrides.items()}
        return dataclasses.replace(self, **coerced)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


__all__ = ["RecordingOptions"]
