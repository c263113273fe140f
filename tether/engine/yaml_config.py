"""YAML configuration loader.

Loads a single YAML file whose sections map onto TetherConfig fields.
Env vars (TETHER_*) still take precedence; see TetherConfig.from_env.

Example YAML:
    client:
      reconnect_interval: 3
      reconnect_attempts: 10
      settle_delay: 2
      reload:
        base: 2
        factor: 1.5
        max: 30
        jitter: 0.2
        attempts: 50

    server:
      host: 127.0.0.1
      port: 3847
      secret: change-me
      base_branch: main
      remote: origin
      git_poll_interval: 2

    agent:
      model: claude-sonnet-4-5
      permission_mode: bypassPermissions

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import TetherConfig

logger = logging.getLogger(__name__)

# (section, key) -> TetherConfig field
_FIELD_MAP: dict[tuple[str, str], str] = {
    ("client", "reconnect_interval"): "session_reconnect_interval",
    ("client", "reconnect_attempts"): "session_max_attempts",
    ("client", "settle_delay"): "settle_delay",
    ("client", "upload_timeout"): "upload_timeout",
    ("reload", "base"): "reload_backoff_base",
    ("reload", "factor"): "reload_backoff_factor",
    ("reload", "max"): "reload_backoff_max",
    ("reload", "jitter"): "reload_backoff_jitter",
    ("reload", "attempts"): "reload_max_attempts",
    ("server", "host"): "host",
    ("server", "port"): "port",
    ("server", "secret"): "secret",
    ("server", "project_root"): "project_root",
    ("server", "base_branch"): "base_branch",
    ("server", "remote"): "remote",
    ("server", "git_poll_interval"): "git_poll_interval",
    ("server", "git_status"): "git_status_enabled",
    ("agent", "model"): "model",
    ("agent", "permission_mode"): "permission_mode",
    ("logging", "level"): "log_level",
}


def default_config_path(cwd: Path | None = None) -> Path:
    """Return the auto-discovered config location for a project."""
    return (cwd or Path.cwd()) / ".tether" / "tether.yaml"


def _flatten(data: dict[str, Any]) -> dict[str, Any]:
    """Collect known (section, key) pairs into TetherConfig kwargs."""
    sections: dict[str, dict[str, Any]] = {}
    for name in ("client", "server", "agent", "logging"):
        value = data.get(name) or {}
        if not isinstance(value, dict):
            logger.warning("Ignoring non-mapping config section %r", name)
            continue
        sections[name] = value
    # reload settings nest under client
    reload_section = sections.get("client", {}).get("reload") or {}
    if isinstance(reload_section, dict):
        sections["reload"] = reload_section

    kwargs: dict[str, Any] = {}
    for (section, key), field_name in _FIELD_MAP.items():
        if key in sections.get(section, {}):
            kwargs[field_name] = sections[section][key]
    return kwargs


def load_yaml_config(
    path: str | Path,
    base: TetherConfig | None = None,
) -> TetherConfig:
    """Load a YAML config file on top of *base* (defaults if omitted).

    A missing file yields *base* unchanged. A file that fails to parse
    raises ``yaml.YAMLError`` so a broken config is never silently ignored.
    """
    path = Path(path)
    base = base or TetherConfig()
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    if not path.is_file():
        return base

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"{path}: top level must be a mapping")

    kwargs = _flatten(data)
    unknown = set(data) - {"client", "server", "agent", "logging"}
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown sections in %s: %s",
            path, ", ".join(sorted(unknown)),
        )
    logger.info(
        "load_yaml_config: applied %d setting(s) from %s", len(kwargs), path,
    )
    return replace(base, **kwargs)


def resolve_config(
    config_path: str | Path | None = None,
    cwd: Path | None = None,
) -> TetherConfig:
    """Defaults → YAML (explicit or auto-discovered) → TETHER_* env."""
    path = Path(config_path) if config_path else default_config_path(cwd)
    return TetherConfig.from_env(load_yaml_config(path))
