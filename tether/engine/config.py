"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TETHER_* env vars, or
via a YAML file (see yaml_config.py); env vars win over YAML.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


# Optional callback fired for each decoded inbound frame.
# Signature: def callback(frame: dict[str, Any]) -> None
FrameCallback = Callable[[dict[str, Any]], None]

# Optional async callback for server-side event emission.
# Signature: async def callback(frame: dict[str, Any]) -> None
EmitCallback = Callable[[dict[str, Any]], Awaitable[None]]


def fire_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke a user callback if set, logging (never raising) its errors."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Callback %r raised", callback)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class TetherConfig:
    """Relay configuration shared by the client and the prompt server."""

    # Session channel: fixed interval, capped attempts, no jitter.
    session_reconnect_interval: float = 3.0
    session_max_attempts: int = 10

    # Build-reload channel: exponential backoff with jitter.
    reload_backoff_base: float = 2.0
    reload_backoff_factor: float = 1.5
    reload_backoff_max: float = 30.0
    reload_backoff_jitter: float = 0.2
    reload_max_attempts: int = 50

    # Delay before the post-reconnect side effect (reload retrigger).
    settle_delay: float = 2.0

    # Attachment upload timeout.
    upload_timeout: float = 30.0

    # Prompt server
    host: str = "127.0.0.1"
    port: int = 3847
    secret: str | None = None
    project_root: str = "."
    base_branch: str = "main"
    remote: str = "origin"
    git_poll_interval: float = 2.0
    git_status_enabled: bool = True

    # Agent backend
    model: str | None = None
    permission_mode: str = "bypassPermissions"

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, base: TetherConfig | None = None) -> TetherConfig:
        """Load configuration from TETHER_* environment variables.

        Values not set in the environment fall back to *base* (typically
        the YAML-loaded config) and then to the dataclass defaults.
        """
        base = base or cls()
        tether_vars = {
            k: ("***" if k == "TETHER_SECRET" else v)
            for k, v in os.environ.items()
            if k.startswith("TETHER_")
        }
        if tether_vars:
            logger.info(
                "TetherConfig.from_env: TETHER_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(tether_vars.items())),
            )
        else:
            logger.debug("TetherConfig.from_env: no TETHER_* env vars set")

        config = cls(
            session_reconnect_interval=float(os.getenv(
                "TETHER_RECONNECT_INTERVAL", str(base.session_reconnect_interval)
            )),
            session_max_attempts=int(os.getenv(
                "TETHER_RECONNECT_ATTEMPTS", str(base.session_max_attempts)
            )),
            reload_backoff_base=float(os.getenv(
                "TETHER_RELOAD_BACKOFF_BASE", str(base.reload_backoff_base)
            )),
            reload_backoff_factor=float(os.getenv(
                "TETHER_RELOAD_BACKOFF_FACTOR", str(base.reload_backoff_factor)
            )),
            reload_backoff_max=float(os.getenv(
                "TETHER_RELOAD_BACKOFF_MAX", str(base.reload_backoff_max)
            )),
            reload_backoff_jitter=float(os.getenv(
                "TETHER_RELOAD_BACKOFF_JITTER", str(base.reload_backoff_jitter)
            )),
            reload_max_attempts=int(os.getenv(
                "TETHER_RELOAD_ATTEMPTS", str(base.reload_max_attempts)
            )),
            settle_delay=float(os.getenv(
                "TETHER_SETTLE_DELAY", str(base.settle_delay)
            )),
            upload_timeout=float(os.getenv(
                "TETHER_UPLOAD_TIMEOUT", str(base.upload_timeout)
            )),
            host=os.getenv("TETHER_HOST", base.host),
            port=int(os.getenv("TETHER_PORT", str(base.port))),
            secret=os.getenv("TETHER_SECRET") or base.secret,
            project_root=os.getenv("TETHER_PROJECT_ROOT", base.project_root),
            base_branch=os.getenv("TETHER_BASE_BRANCH", base.base_branch),
            remote=os.getenv("TETHER_REMOTE", base.remote),
            git_poll_interval=float(os.getenv(
                "TETHER_GIT_POLL_INTERVAL", str(base.git_poll_interval)
            )),
            git_status_enabled=_env_bool(
                "TETHER_GIT_STATUS", base.git_status_enabled
            ),
            model=os.getenv("TETHER_MODEL") or base.model,
            permission_mode=os.getenv(
                "TETHER_PERMISSION_MODE", base.permission_mode
            ),
            log_level=os.getenv("TETHER_LOG_LEVEL", base.log_level),
        )
        logger.info(
            "TetherConfig.from_env: host=%s port=%s project_root=%s "
            "base_branch=%s log_level=%s secret=%s",
            config.host, config.port, config.project_root,
            config.base_branch, config.log_level,
            "set" if config.secret else "none",
        )
        return config
