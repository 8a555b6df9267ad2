import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

CONFIG_FILENAME = ".codex-intel/config.yml"
CONFIG_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "codex": {
        "binary": "codex",
        "model": "gpt-5-codex",
        "reasoning_effort": "medium",
        "extra_args": [],
    },
    "session": {
        "bootstrap": True,
        # Extra phrases that mark a session as stale, on top of the built-in ones.
        "stale_phrases": [],
    },
    "history": {
        "max_messages": 8,
        "max_chars": 700,
    },
    "changes": {
        "max_preview_lines": 200,
        "max_file_bytes": 512_000,
        "max_files": 5000,
    },
    "log": {
        "path": ".codex-intel/codex-intel.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

REASONING_EFFORTS = ("minimal", "low", "medium", "high", "xhigh")


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class EngineConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    codex_binary: str
    codex_model: str
    codex_reasoning_effort: str
    codex_extra_args: List[str]
    session_bootstrap: bool
    session_stale_phrases: List[str]
    history_max_messages: int
    history_max_chars: int
    changes_max_preview_lines: int
    changes_max_file_bytes: int
    changes_max_files: int
    log: LogConfig

    def with_overrides(
        self,
        *,
        model: Optional[str] = None,
        reasoning_effort: Optional[str] = None,
        binary: Optional[str] = None,
    ) -> "EngineConfig":
        updated = dataclasses.replace(self)
        if model:
            updated.codex_model = model
        if reasoning_effort:
            if reasoning_effort not in REASONING_EFFORTS:
                raise ConfigError(
                    f"reasoning effort must be one of {', '.join(REASONING_EFFORTS)}"
                )
            updated.codex_reasoning_effort = reasoning_effort
        if binary:
            updated.codex_binary = binary
        return updated


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .codex-intel/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_config(config_path: Path) -> None:
    """
    Best-effort load of environment variables for this config root.

    Loads from the project root and the .codex-intel directory, never from
    the process CWD.
    """
    try:
        root = config_path.parent.parent.resolve()
        for candidate in (root / ".env", config_path.parent / ".env"):
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def load_config(start: Path) -> EngineConfig:
    """
    Load the nearest config walking upward from the provided path.
    A project without a config file runs on defaults rooted at `start`.
    """
    config_path = find_nearest_config_path(start)
    if not config_path:
        root = start.resolve()
        merged = _merge_defaults(DEFAULT_CONFIG, {})
        return _build_config(root, merged)
    _load_dotenv_for_config(config_path)
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _validate_config(merged)
    return _build_config(config_path.parent.parent.resolve(), merged)


def _build_config(root: Path, cfg: Dict[str, Any]) -> EngineConfig:
    _validate_config(cfg)
    codex = cfg["codex"]
    session = cfg["session"]
    history = cfg["history"]
    changes = cfg["changes"]
    log_cfg = cfg["log"]
    return EngineConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        codex_binary=str(codex["binary"]),
        codex_model=str(codex["model"]),
        codex_reasoning_effort=str(codex["reasoning_effort"]),
        codex_extra_args=[str(arg) for arg in codex.get("extra_args") or []],
        session_bootstrap=bool(session["bootstrap"]),
        session_stale_phrases=[str(p) for p in session.get("stale_phrases") or []],
        history_max_messages=int(history["max_messages"]),
        history_max_chars=int(history["max_chars"]),
        changes_max_preview_lines=int(changes["max_preview_lines"]),
        changes_max_file_bytes=int(changes["max_file_bytes"]),
        changes_max_files=int(changes["max_files"]),
        log=LogConfig(
            path=root / log_cfg["path"],
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    for section in ("codex", "session", "history", "changes", "log"):
        if not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} section must be a mapping")
    codex = cfg["codex"]
    for key in ("binary", "model"):
        if not isinstance(codex.get(key), str) or not codex[key].strip():
            raise ConfigError(f"codex.{key} must be a non-empty string")
    if codex.get("reasoning_effort") not in REASONING_EFFORTS:
        raise ConfigError(
            f"codex.reasoning_effort must be one of {', '.join(REASONING_EFFORTS)}"
        )
    if not isinstance(codex.get("extra_args", []), list):
        raise ConfigError("codex.extra_args must be a list")
    if not isinstance(cfg["session"].get("stale_phrases", []), list):
        raise ConfigError("session.stale_phrases must be a list")
    for section, key in (
        ("history", "max_messages"),
        ("history", "max_chars"),
        ("changes", "max_preview_lines"),
        ("changes", "max_file_bytes"),
        ("changes", "max_files"),
        ("log", "max_bytes"),
    ):
        value = cfg[section].get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"{section}.{key} must be a positive integer")
    backup_count = cfg["log"].get("backup_count")
    if not isinstance(backup_count, int) or backup_count < 0:
        raise ConfigError("log.backup_count must be an integer >= 0")
    if not isinstance(cfg["log"].get("path"), str):
        raise ConfigError("log.path must be a string")
