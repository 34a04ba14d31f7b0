"""
Configuration Loader (``erp_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the frozen dataclasses of
``erp_config.schema``.  Every section and key is checked against the
schema: unknown keys and wrongly-typed values are rejected rather than
silently ignored.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section/key or wrong value type  -> ``ConfigurationError``.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from erp_config.schema import (
    ApprovalSettings,
    AutomationSettings,
    CreditSettings,
    DatabaseSettings,
    ErpSettings,
    LoggingSettings,
    RetrySettings,
)
from erp_kernel.exceptions import ConfigurationError

_SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "logging": LoggingSettings,
    "retry": RetrySettings,
    "automation": AutomationSettings,
    "approval": ApprovalSettings,
    "credit": CreditSettings,
}

_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "ERP_DATABASE_URL": ("database", "url"),
    "ERP_LOG_LEVEL": ("logging", "level"),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Postconditions:
        - Returns a ``dict`` (empty if the YAML document is empty).
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("top level must be a mapping", str(path))
    return data


def _coerce(value: Any, default: Any, where: str) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"expected boolean, got {value!r}", where)
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"expected integer, got {value!r}", where)
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"expected number, got {value!r}", where)
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigurationError(f"expected string, got {value!r}", where)
        return value
    if isinstance(default, tuple):
        if not isinstance(value, (list, tuple)) or not all(
            isinstance(v, str) for v in value
        ):
            raise ConfigurationError(f"expected list of strings, got {value!r}", where)
        return tuple(value)
    return value


def _parse_section(name: str, cls: type, raw: Any) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigurationError("section must be a mapping", name)
    defaults = cls()
    known = {f.name for f in dataclasses.fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            raise ConfigurationError("unknown key", f"{name}.{key}")
        kwargs[key] = _coerce(value, getattr(defaults, key), f"{name}.{key}")
    return cls(**kwargs)


def parse_settings(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> ErpSettings:
    """Build ErpSettings from a parsed mapping plus environment overrides."""
    merged: dict[str, dict[str, Any]] = {}
    for key, value in data.items():
        if key not in _SECTIONS:
            raise ConfigurationError("unknown section", key)
        merged[key] = dict(value) if isinstance(value, Mapping) else value

    env = os.environ if environ is None else environ
    for var, (section, key) in _ENV_OVERRIDES.items():
        if env.get(var):
            section_values = merged.get(section) or {}
            if not isinstance(section_values, dict):
                raise ConfigurationError("section must be a mapping", section)
            merged[section] = {**section_values, key: env[var]}

    return ErpSettings(
        **{
            name: _parse_section(name, cls, merged.get(name))
            for name, cls in _SECTIONS.items()
        }
    )


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ErpSettings:
    """Load settings from ``path`` (optional) and the environment."""
    data = load_yaml_file(Path(path)) if path is not None else {}
    return parse_settings(data, environ)
