"""Configuration file loading and merging for omni.

Reads TOML config from ~/.config/omni/config.toml (global) and
<workspace>/omni.toml (project). Precedence: CLI > profile > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .approval import POLICIES
from .providers import Backend
from .report import ConfigError
from .tools import SANDBOX_MODES

_UNSET = object()  # Sentinel for "not set by CLI"


CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "sandbox": str,
    "approval_policy": str,
    "retry_on_failure": bool,
    "max_steps": int,
    "max_checkpoints": int,
    "system_prompt": str,
    "context_file": str,
    "no_context_files": bool,
    "color": bool,
    "quiet": bool,
    "debug": bool,
    "profile": str,
}

PROFILE_KEYS = ("provider", "model", "sandbox", "approval_policy", "max_steps")

_CHOICES: dict[str, tuple[str, ...]] = {
    "provider": tuple(b.value for b in Backend),
    "sandbox": SANDBOX_MODES,
    "approval_policy": POLICIES,
}

_POSITIVE_INTS = ("max_steps", "max_checkpoints")

# Argparse dest -> hardcoded default
DEFAULTS: dict[str, Any] = {
    "provider": "openai",
    "model": None,
    "api_key": None,
    "base_url": None,
    "sandbox": "workspace-write",
    "approval_policy": "on-request",
    "retry_on_failure": False,
    "max_steps": 10,
    "max_checkpoints": 10,
    "system_prompt": None,
    "context_file": None,
    "no_context_files": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "debug": False,
    "profile": None,
}


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "omni"
    return Path.home() / ".config" / "omni"


def data_dir() -> Path:
    """Return the data directory (history, checkpoints), respecting XDG_DATA_HOME."""
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "omni"
    return Path.home() / ".local" / "share" / "omni"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str, allowed=CONFIG_KEYS) -> dict:
    """Type-check known keys and return them; unknown keys only warn."""
    known = {}
    for key, value in config.items():
        if key not in allowed:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{source}: {key!r} expected {_type_name(expected)}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )
        if key in _POSITIVE_INTS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")
        known[key] = value
    return known


def _load_single(path: Path, label: str) -> tuple[dict, dict]:
    """Load one TOML file. Returns (settings, profiles); both empty if missing."""
    if not path.is_file():
        return {}, {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    raw_profiles = config.pop("profiles", {})
    if not isinstance(raw_profiles, dict):
        raise ConfigError(f"{label}: 'profiles' must be a table")

    profiles = {}
    for name, table in raw_profiles.items():
        if not isinstance(table, dict):
            raise ConfigError(f"{label}: profiles.{name} must be a table")
        profiles[name] = _validate_config(table, f"{label}: profiles.{name}", PROFILE_KEYS)

    settings = _validate_config(config, label)
    if "context_file" in settings:
        p = Path(settings["context_file"]).expanduser()
        settings["context_file"] = str(p if p.is_absolute() else path.parent / p)
    return settings, profiles


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def config_paths(base_dir: Path) -> tuple[Path, Path]:
    """Return the (global, project) config file locations."""
    return global_config_dir() / "config.toml", Path(base_dir).resolve() / "omni.toml"


def load_config(base_dir: Path, profile: str | None = None) -> dict:
    """Load and merge global + project config, then apply a profile.

    Only keys actually set in config files are returned (no defaults).
    The profile comes from the argument, else from the merged ``profile`` key.
    """
    global_path, project_path = config_paths(base_dir)
    global_config, global_profiles = _load_single(global_path, str(global_path))

    project_config, project_profiles = _load_single(project_path, str(project_path))
    _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    profiles = {**global_profiles, **project_profiles}

    name = profile or merged.get("profile")
    if name:
        if name not in profiles:
            available = ", ".join(sorted(profiles)) or "none defined"
            raise ConfigError(f"unknown profile {name!r} (available: {available})")
        merged.update(profiles[name])
        merged["profile"] = name
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from DEFAULTS."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key != "color" and _is_unset(key):
            setattr(args, key, value)

    for dest, default in DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)
