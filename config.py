from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "tick_limit": None,
    "on_unsupported": "fail",
    "trace": False,
    "input": None,
}

UNSUPPORTED_POLICIES = ("fail", "skip")


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        # tick_limit: None means run until halt
        v = cfg.get("tick_limit")
        cfg["tick_limit"] = None if v is None else int(v)

        cfg["on_unsupported"] = str(cfg.get("on_unsupported") or DEFAULTS["on_unsupported"]).lower()

        # trace (bool coercion)
        cfg["trace"] = bool(cfg.get("trace", DEFAULTS["trace"]))

        v = cfg.get("input")
        cfg["input"] = None if v is None else str(v)
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if cfg["tick_limit"] is not None and cfg["tick_limit"] < 0:
        msg = "tick_limit must be non-negative or null"
        raise ConfigError(msg)

    if cfg["on_unsupported"] not in UNSUPPORTED_POLICIES:
        choices = ", ".join(UNSUPPORTED_POLICIES)
        msg = f"on_unsupported must be one of: {choices} (got {cfg['on_unsupported']!r})"
        raise ConfigError(msg)

    try:
        if cfg["input"] is not None:
            cfg["input"].encode("latin-1")
    except UnicodeEncodeError as e:
        msg = f"input must be latin-1 text: {e}"
        raise ConfigError(msg) from e


def load_config(path_or_dict: str | Path | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str or Path -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, (str, Path)):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
