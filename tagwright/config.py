"""Configuration file loading and merging for tagwright.

Reads TOML config from ~/.config/tagwright/config.toml (global) and
<base_dir>/tagwright.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .prompts import PERSONALITIES
from .report import ConfigError
from .transport import PROVIDERS

_UNSET = object()  # Sentinel for "not set by CLI"

API_KEY_ENV_VARS = ("TAGWRIGHT_API_KEY", "XAI_API_KEY", "OPENAI_API_KEY")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "vision_model": str,
    "api_key": str,
    "base_url": str,
    "max_tokens": int,
    "temperature": (int, float),
    "request_timeout": (int, float),
    "max_context_messages": int,
    "context_compression": bool,
    "personality": str,
    "stream": bool,
    "color": bool,
    "quiet": bool,
    "no_project_context": bool,
    "command_timeout": int,
}

_POSITIVE_KEYS = {"max_tokens", "request_timeout", "max_context_messages", "command_timeout"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "xai",
    "model": None,
    "vision_model": None,
    "api_key": None,
    "base_url": None,
    "max_tokens": 16384,
    "temperature": 0.7,
    "request_timeout": 60.0,
    "max_context_messages": 200,
    "context_compression": True,
    "personality": "normal",
    "stream": True,
    "color": False,
    "no_color": False,
    "quiet": False,
    "no_project_context": False,
    "command_timeout": 120,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "tagwright"
    return Path.home() / ".config" / "tagwright"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and allowed values in a parsed config dict.

    Raises ConfigError for type mismatches or bad values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, reject it for numeric fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {config['provider']!r}, "
            f"expected one of: {', '.join(PROVIDERS)}"
        )
    if "personality" in config and config["personality"] not in PERSONALITIES:
        raise ConfigError(
            f"{source}: unknown personality {config['personality']!r}, "
            f"expected one of: {', '.join(PERSONALITIES)}"
        )


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


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys actually set in config files.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "tagwright.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_api_key(explicit: str | None) -> str | None:
    """Return the explicit key or the first API key environment variable that is set."""
    if explicit:
        return explicit
    for var in API_KEY_ENV_VARS:
        value = os.environ.get(var)
        if value:
            return value
    return None


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# tagwright configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/tagwright.toml' if project else '~/.config/tagwright/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "xai"                # "xai" | "openrouter" | "lmstudio" | "generic"',
        '# model = "grok-4-1-fast-reasoning"',
        '# vision_model = "grok-4-1-fast-non-reasoning"',
        '# api_key = "xai-..."              # prefer TAGWRIGHT_API_KEY or XAI_API_KEY',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_tokens = 16384",
        "# temperature = 0.7",
        "# request_timeout = 60",
        "# stream = true",
        "",
        "# --- Agent behaviour ---",
        '# personality = "normal"          # "normal" | "depressed" | "sarcasm" | "unhinged"',
        "# context_compression = true",
        "# max_context_messages = 200",
        "# no_project_context = false",
        "# command_timeout = 120           # seconds, default for <bash> actions",
        "",
        "# --- Output ---",
        "# color = true",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
