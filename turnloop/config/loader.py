"""Reads ``EngineConfig`` from TOML plus command-line overrides."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from turnloop.config.models import EngineConfig

CONFIG_ENV_VAR = "TURNLOOP_CONFIG"

# Tables that map onto nested sub-configurations; everything else lives under [engine]
_SECTIONS = ("retry", "compression", "generator")


def _set_dotted(target: dict[str, Any], dotted_key: str, value: Any) -> None:
    """``_set_dotted(d, "retry.max_attempts", 3)`` sets ``d["retry"]["max_attempts"]``."""
    *parents, leaf = dotted_key.split(".")
    node = target
    for name in parents:
        child = node.get(name)
        if not isinstance(child, dict):
            child = node[name] = {}
        node = child
    node[leaf] = value


def _flatten_toml(raw: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = dict(raw.get("engine", {}))
    merged.update({name: dict(raw[name]) for name in _SECTIONS if name in raw})
    return merged


def load_config_from_file(path: Path) -> EngineConfig:
    """Like :func:`load_config`, but the file must exist.

    Raises:
        FileNotFoundError: When ``path`` is missing.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    return load_config(path)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> EngineConfig:
    """Build the engine configuration.

    Args:
        config_path: TOML file with an ``[engine]`` table and optional
            ``[retry]``, ``[compression]`` and ``[generator]`` tables.
            A missing file is treated as empty.
        overrides: Values applied on top of the file. Keys may be dotted
            (``"retry.max_attempts"``); ``None`` values are ignored.
    """
    values: dict[str, Any] = {}
    if config_path is not None and config_path.is_file():
        with open(config_path, "rb") as f:
            values = _flatten_toml(tomllib.load(f))

    for key, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(values, key, value)

    return EngineConfig(**values)


def find_config_file() -> Optional[Path]:
    """Locate a config file.

    ``$TURNLOOP_CONFIG`` wins when set; otherwise the first existing
    of ``./turnloop.toml`` and ``~/.config/turnloop/config.toml``.
    """
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit).expanduser()

    candidates = (
        Path.cwd() / "turnloop.toml",
        Path.home() / ".config" / "turnloop" / "config.toml",
    )
    return next((p for p in candidates if p.is_file()), None)
