from __future__ import annotations

import os
import re
try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    try:
        import tomli as tomllib  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover
        raise RuntimeError(
            "TOML parser unavailable. Use Python 3.11+ or install tomli for Python 3.10."
        ) from exc
from copy import deepcopy
from pathlib import Path
from typing import Any


CONFIG_FILE_NAME = ".assoc.toml"

# Tick rate of the reconciliation loop (ms).
TICK_RATE_MS = 250

# File watcher debounce window (ms).
DEBOUNCE_MS = 200

# How many lines to load from the end of a transcript on first open.
JSONL_TAIL_LINES = 200

# Maximum number of output/error lines retained per spawned process.
MAX_PROCESS_OUTPUT_LINES = 10_000

# Ticket tracker polling interval (s).
TRACKER_POLL_SECONDS = 60.0

FEATURES = ("sessions", "teams", "todos", "git", "plans")

DEFAULT_CONFIG: dict[str, Any] = {
    "display": {
        "tick_rate": TICK_RATE_MS,
        "tail_lines": JSONL_TAIL_LINES,
    },
    "tabs": {feature: True for feature in FEATURES},
    "processes": {
        "claude_bin": "claude",
        "max_output_lines": MAX_PROCESS_OUTPUT_LINES,
    },
    "trackers": {
        "poll_seconds": TRACKER_POLL_SECONDS,
    },
}


class ConfigError(RuntimeError):
    pass


def claude_home() -> Path:
    override = os.getenv("CLAUDE_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    base = os.getenv("HOME") or os.getenv("USERPROFILE") or "."
    return Path(base) / ".claude"


def encode_project_path(project_dir: str | Path) -> str:
    # Session transcripts live under projects/<path with every non-alnum char as "-">.
    return re.sub(r"[^A-Za-z0-9]", "-", str(project_dir))


def _deep_merge(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in incoming.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _require_int(section: dict[str, Any], dotted: str, key: str, minimum: int) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{dotted}.{key} must be an integer >= {minimum}")
    return value


def load_config(project_dir: Path, config_path: str | None = None) -> tuple[dict[str, Any], Path]:
    cfg_path = Path(config_path).expanduser() if config_path else (project_dir / CONFIG_FILE_NAME)
    if not cfg_path.is_absolute():
        cfg_path = (project_dir / cfg_path).resolve()

    if not cfg_path.exists():
        if config_path:
            raise ConfigError(f"config file not found: {cfg_path}")
        return deepcopy(DEFAULT_CONFIG), cfg_path

    try:
        parsed = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid TOML in {cfg_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"unable to read {cfg_path}: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ConfigError(f"invalid config root (expected table): {cfg_path}")

    merged = _deep_merge(DEFAULT_CONFIG, parsed)

    for section in ("display", "tabs", "processes", "trackers"):
        if not isinstance(merged.get(section), dict):
            raise ConfigError(f"[{section}] must be a table")

    _require_int(merged["display"], "display", "tick_rate", 10)
    _require_int(merged["display"], "display", "tail_lines", 1)
    _require_int(merged["processes"], "processes", "max_output_lines", 1)

    for feature, enabled in merged["tabs"].items():
        if not isinstance(enabled, bool):
            raise ConfigError(f"tabs.{feature} must be true or false")

    poll_seconds = merged["trackers"].get("poll_seconds")
    if isinstance(poll_seconds, bool) or not isinstance(poll_seconds, (int, float)) or poll_seconds <= 0:
        raise ConfigError("trackers.poll_seconds must be a positive number")

    claude_bin = str(merged["processes"].get("claude_bin", "")).strip()
    if not claude_bin:
        raise ConfigError("processes.claude_bin must not be empty")
    merged["processes"]["claude_bin"] = claude_bin

    return merged, cfg_path


def resolve_context(
    project_dir: Path,
    config: dict[str, Any],
    home_arg: str | None = None,
    config_path: Path | None = None,
) -> dict[str, Any]:
    home = Path(home_arg).expanduser().resolve() if home_arg else claude_home()
    encoded = encode_project_path(project_dir)

    tabs = {feature: bool(config["tabs"].get(feature, True)) for feature in FEATURES}

    return {
        "project_dir": str(project_dir),
        "project_name": project_dir.name,
        "claude_home": str(home),
        "encoded_project": encoded,
        "sessions_dir": str(home / "projects" / encoded),
        "teams_dir": str(home / "teams"),
        "tasks_dir": str(home / "tasks"),
        "todos_dir": str(home / "todos"),
        "plans_dir": str(home / "plans"),
        "git_dir": str(project_dir / ".git"),
        "config_path": str(config_path) if config_path else "",
        "tabs": tabs,
        "tick_rate_ms": int(config["display"]["tick_rate"]),
        "tail_lines": int(config["display"]["tail_lines"]),
        "claude_bin": str(config["processes"]["claude_bin"]),
        "max_output_lines": int(config["processes"]["max_output_lines"]),
        "tracker_poll_seconds": float(config["trackers"]["poll_seconds"]),
    }
