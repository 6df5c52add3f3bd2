#!/usr/bin/env python3
"""
Unified configuration loader for meetguard.

Load order (first found wins for the "active" path, all found files merge):
  1) MEETGUARD_CONFIG (env, absolute or relative to CWD)
  2) /etc/meetguard/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "capture": {
        "width": 1280,
        "height": 720,
        "frame_rate": 30,
        "rotation_interval_sec": 5.0,
        "snapshot_settle_ms": 100,
        "snapshots_enabled": True,
        "video_bitrate": "3M",
        "handover_timeout_sec": 2.0,
        "finalize_timeout_sec": 10.0,
        "finalize_workers": 2,
        "source": {
            "input_format": "x11grab",
            "input": ":0.0",
            "extra_args": [],
        },
    },
    "audio": {
        "sample_rate": 48000,
        "channels": 1,
        "poll_interval_sec": 10.0,
        "transcode_workers": 4,
        "min_age_sec": 0.5,
        "raw_ext": ".pcm",
        "near_end_tag": "mic",
        "far_end_tag": "tap",
        "source_prefix": "zoom",
        "output_prefix": "Zoom",
        "ignore_suffixes": [".part", ".partial", ".tmp", ".incomplete"],
    },
    "paths": {
        "data_dir": "/apps/meetguard/data",
        "drop_dir": "/apps/meetguard/drop",
        "video_dir": "",
        "image_dir": "",
        "audio_dir": "",
        "work_dir": "",
    },
    "detectors": {
        "max_workers": 4,
        "max_retries": 0,
        "retry_backoff_sec": 1.5,
        "manipulation": {
            "enabled": True,
            "api_key": "",
            "base_url": "https://api.prd.realitydefender.xyz",
            "poll_interval_sec": 5.0,
            "timeout_sec": 240.0,
        },
        "phishing": {
            "enabled": True,
            "api_key": "",
            "base_url": "https://api.dify.ai/v1",
            "user": "",
            "timeout_sec": 300.0,
        },
    },
    "alerts": {
        "source_label": "Zoom",
        "jsonl_path": "/apps/meetguard/data/alerts.jsonl",
        "webhook": {},
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        _log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("MEETGUARD_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/meetguard/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
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


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "MEETGUARD_DROP_DIR": (("paths",), "drop_dir", str),
        "MEETGUARD_DATA_DIR": (("paths",), "data_dir", str),
        "ROTATION_INTERVAL_SEC": (("capture",), "rotation_interval_sec", float),
        "SNAPSHOT_SETTLE_MS": (("capture",), "snapshot_settle_ms", int),
        "AUDIO_POLL_INTERVAL_SEC": (("audio",), "poll_interval_sec", float),
        "AUDIO_SAMPLE_RATE": (("audio",), "sample_rate", int),
        "RD_API_KEY": (("detectors", "manipulation"), "api_key", str),
        "DIFY_API_KEY": (("detectors", "phishing"), "api_key", str),
        "DIFY_USER": (("detectors", "phishing"), "user", str),
        "ALERT_WEBHOOK_URL": (("alerts", "webhook"), "url", str),
    }
    for env_key, (sections, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            continue
        target = cfg
        for section in sections:
            target = target.setdefault(section, {})
        target[key] = value


def _derive_paths(cfg: Dict[str, Any]) -> None:
    paths = cfg.setdefault("paths", {})
    data_dir = Path(str(paths.get("data_dir") or "."))
    for key, leaf in (
        ("video_dir", "video"),
        ("image_dir", "images"),
        ("audio_dir", "audio"),
        ("work_dir", "work"),
    ):
        if not paths.get(key):
            paths[key] = str(data_dir / leaf)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (meetguard/ -> project root)
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _derive_paths(cfg)
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


def search_paths() -> list[Path]:
    if _cfg_cache is None:
        get_cfg()
    return list(_search_paths)


def mask_secret(value: str | None) -> str:
    if not value:
        return "<unset>"
    return "****" + value[-4:] if len(value) > 4 else "****"
