#!/usr/bin/env python3
"""
Unified configuration loader for voxcap.

Search order, highest priority first:
  1) VOXCAP_CONFIG (env, absolute or relative to CWD)
  2) /etc/voxcap/config.yaml
  3) ~/.config/voxcap/config.yaml
  4) <project_root>/config.yaml (derived from this file's location)
  5) ./config.yaml (current working directory)

Every file found is merged over the defaults. Where two files set the same
key, the one earlier in this list wins; active_config_path() reports that
first file. Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, MutableMapping

import yaml

from voxcap.ffmpeg_io import CONTAINER_FORMATS, DEFAULT_CONTAINER_FORMAT

_LOG = logging.getLogger("config")

SILENCE_THRESHOLD_RANGE = (20.0, 80.0)

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "auto",
        "sample_rate": 16000,
        "channels": 1,
        "codec": "",
        "format": "wav",
        "max_duration_seconds": 60,
    },
    "encoder": {
        "path": "",
        "grace_period_seconds": 5.0,
    },
    "silence": {
        "enabled": True,
        "threshold_db": 30,
        "duration_seconds": 3.0,
        "segment_seconds": 1.0,
        "check_interval_seconds": 2.0,
        "warmup_seconds": 5.0,
    },
    "paths": {
        "tmp_dir": "",
    },
    "logging": {
        "level": "INFO",
        "dev_mode": False,
    },
    "control_server": {
        "listen_host": "127.0.0.1",
        "listen_port": 8765,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _LOG.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _LOG.warning("Ignoring config file %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("VOXCAP_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/voxcap/config.yaml"),
            Path("~/.config/voxcap/config.yaml").expanduser(),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    return None


def parse_int_like(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 10)
        except ValueError:
            try:
                float_candidate = float(text)
            except ValueError:
                return None
            if not math.isfinite(float_candidate) or not float_candidate.is_integer():
                return None
            return int(float_candidate)
    return None


def parse_float_like(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            candidate = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(candidate):
        return None
    return candidate


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    audio = cfg.setdefault("audio", {})
    encoder = cfg.setdefault("encoder", {})
    silence = cfg.setdefault("silence", {})

    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if os.getenv("LOG_LEVEL", "").strip():
        cfg.setdefault("logging", {})["level"] = os.environ["LOG_LEVEL"].strip().upper()

    env_device = os.getenv("AUDIO_DEV", "").strip()
    if env_device:
        audio["device"] = env_device
    for env_name, key in (("SAMPLE_RATE", "sample_rate"), ("AUDIO_CHANNELS", "channels")):
        if env_name in os.environ:
            parsed = parse_int_like(os.environ[env_name])
            if parsed is not None:
                audio[key] = parsed
    if os.getenv("AUDIO_FORMAT", "").strip():
        audio["format"] = os.environ["AUDIO_FORMAT"].strip().lower()
    if "MAX_DURATION" in os.environ:
        parsed_float = parse_float_like(os.environ["MAX_DURATION"])
        if parsed_float is not None:
            audio["max_duration_seconds"] = parsed_float

    if "FFMPEG_PATH" in os.environ:
        encoder["path"] = os.environ["FFMPEG_PATH"].strip()

    if "SILENCE_DETECTION" in os.environ:
        enabled = parse_bool(os.environ["SILENCE_DETECTION"])
        if enabled is not None:
            silence["enabled"] = enabled
    for env_name, key in (
        ("SILENCE_THRESHOLD_DB", "threshold_db"),
        ("SILENCE_DURATION", "duration_seconds"),
    ):
        if env_name in os.environ:
            parsed_float = parse_float_like(os.environ[env_name])
            if parsed_float is not None:
                silence[key] = parsed_float

    if "TMP_DIR" in os.environ:
        cfg.setdefault("paths", {})["tmp_dir"] = os.environ["TMP_DIR"].strip()


def _normalize_int_field(
    container: MutableMapping[str, Any],
    key: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> None:
    parsed = parse_int_like(container.get(key))
    if parsed is None:
        parsed = default
    if min_value is not None and parsed < min_value:
        parsed = min_value
    if max_value is not None and parsed > max_value:
        parsed = max_value
    container[key] = parsed


def _normalize_float_field(
    container: MutableMapping[str, Any],
    key: str,
    default: float,
    *,
    positive: bool = False,
    min_value: float | None = None,
    max_value: float | None = None,
) -> None:
    parsed = parse_float_like(container.get(key))
    if parsed is None or (positive and parsed <= 0):
        parsed = default
    if min_value is not None and parsed < min_value:
        parsed = min_value
    if max_value is not None and parsed > max_value:
        parsed = max_value
    container[key] = parsed


def _normalize(cfg: Dict[str, Any]) -> None:
    for section, defaults in _DEFAULTS.items():
        if not isinstance(cfg.get(section), dict):
            cfg[section] = copy.deepcopy(defaults)

    audio = cfg["audio"]
    audio_defaults = _DEFAULTS["audio"]
    _normalize_int_field(audio, "sample_rate", audio_defaults["sample_rate"], min_value=8000)
    _normalize_int_field(audio, "channels", audio_defaults["channels"], min_value=1, max_value=2)
    fmt = str(audio.get("format") or "").strip().lower()
    if fmt not in CONTAINER_FORMATS:
        _LOG.warning("Unknown audio format %r; using %s", audio.get("format"), DEFAULT_CONTAINER_FORMAT)
        fmt = DEFAULT_CONTAINER_FORMAT
    audio["format"] = fmt
    audio["codec"] = str(audio.get("codec") or "").strip()
    audio["device"] = str(audio.get("device") or "auto").strip() or "auto"
    max_duration = parse_float_like(audio.get("max_duration_seconds"))
    audio["max_duration_seconds"] = max_duration if max_duration and max_duration > 0 else None

    encoder = cfg["encoder"]
    encoder["path"] = str(encoder.get("path") or "").strip()
    _normalize_float_field(
        encoder, "grace_period_seconds", _DEFAULTS["encoder"]["grace_period_seconds"], positive=True
    )

    silence = cfg["silence"]
    silence_defaults = _DEFAULTS["silence"]
    enabled = parse_bool(silence.get("enabled"))
    silence["enabled"] = silence_defaults["enabled"] if enabled is None else enabled
    low, high = SILENCE_THRESHOLD_RANGE
    _normalize_float_field(
        silence, "threshold_db", float(silence_defaults["threshold_db"]), min_value=low, max_value=high
    )
    for key in ("duration_seconds", "segment_seconds", "check_interval_seconds"):
        _normalize_float_field(silence, key, silence_defaults[key], positive=True)
    warmup = parse_float_like(silence.get("warmup_seconds"))
    silence["warmup_seconds"] = warmup if warmup is not None and warmup >= 0 else silence_defaults["warmup_seconds"]

    paths = cfg["paths"]
    paths["tmp_dir"] = str(paths.get("tmp_dir") or "").strip()

    log_cfg = cfg["logging"]
    log_cfg["level"] = str(log_cfg.get("level") or "INFO").strip().upper()
    dev_mode = parse_bool(log_cfg.get("dev_mode"))
    log_cfg["dev_mode"] = bool(dev_mode)

    server = cfg["control_server"]
    server["listen_host"] = str(server.get("listen_host") or "127.0.0.1").strip()
    _normalize_int_field(
        server, "listen_port", _DEFAULTS["control_server"]["listen_port"], min_value=0, max_value=65535
    )


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # voxcap/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _normalize(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def default_config() -> Dict[str, Any]:
    cfg = copy.deepcopy(_DEFAULTS)
    _normalize(cfg)
    return cfg


def log_level_from_cfg(cfg: Dict[str, Any]) -> int:
    log_cfg = cfg.get("logging", {})
    if log_cfg.get("dev_mode"):
        return logging.DEBUG
    level = logging.getLevelName(str(log_cfg.get("level", "INFO")).upper())
    return level if isinstance(level, int) else logging.INFO


__all__ = [
    "active_config_path",
    "default_config",
    "get_cfg",
    "log_level_from_cfg",
    "parse_bool",
    "parse_float_like",
    "parse_int_like",
    "reload_cfg",
]
