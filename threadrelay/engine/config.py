"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars or
a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field

from .models import BackendKind

logger = logging.getLogger(__name__)

PORT_MIN = 14097
PORT_MAX = 14200


@dataclass
class RelayConfig:
    """Execution orchestration configuration."""

    # Which execution style runs prompts ("sdk" or "remote").
    backend: BackendKind = BackendKind.SDK

    # Remote worker settings. Each worker is started as
    # `<worker_command> --port <port>` in the project directory.
    port_min: int = PORT_MIN
    port_max: int = PORT_MAX
    worker_command: list[str] = field(
        default_factory=lambda: ["opencode", "serve"]
    )
    worker_host: str = "localhost"
    ready_timeout_seconds: float = 10.0
    ready_poll_interval_seconds: float = 0.5
    liveness_timeout_seconds: float = 2.0

    # In-process SDK settings
    default_model: str | None = None
    permission_mode: str = "bypassPermissions"

    # How often callers sample accumulated text for display
    progress_interval_seconds: float = 1.0

    # Optional JSON file backing the thread store
    store_path: str | None = None

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not isinstance(self.backend, BackendKind):
            self.backend = BackendKind(str(self.backend).lower())
        if self.port_min > self.port_max:
            raise ValueError(
                f"port_min ({self.port_min}) exceeds port_max ({self.port_max})"
            )

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        worker_command = os.getenv("RELAY_WORKER_COMMAND")
        config = cls(
            backend=os.getenv("RELAY_BACKEND", cls.backend.value),
            port_min=int(os.getenv("RELAY_PORT_MIN", str(cls.port_min))),
            port_max=int(os.getenv("RELAY_PORT_MAX", str(cls.port_max))),
            worker_command=(
                shlex.split(worker_command)
                if worker_command
                else ["opencode", "serve"]
            ),
            worker_host=os.getenv("RELAY_HOST", cls.worker_host),
            ready_timeout_seconds=float(os.getenv(
                "RELAY_READY_TIMEOUT", str(cls.ready_timeout_seconds)
            )),
            progress_interval_seconds=float(os.getenv(
                "RELAY_PROGRESS_INTERVAL", str(cls.progress_interval_seconds)
            )),
            default_model=os.getenv("RELAY_MODEL") or None,
            permission_mode=os.getenv(
                "RELAY_PERMISSION_MODE", cls.permission_mode
            ),
            store_path=os.getenv("RELAY_STORE_PATH") or None,
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "RelayConfig.from_env: backend=%s ports=%d-%d log_level=%s",
            config.backend.value, config.port_min, config.port_max,
            config.log_level,
        )
        return config
