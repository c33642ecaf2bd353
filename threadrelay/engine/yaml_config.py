"""YAML configuration loader.

Loads a single YAML file describing engine settings, the projects
prompts can run in and which channel is bound to which project. When
no YAML is provided, RELAY_* env vars work exactly as before.

Example YAML:
    engine:
      backend: remote
      port_min: 14097
      port_max: 14200
      worker_command: opencode serve
      ready_timeout_seconds: 10
      default_model: claude-sonnet-4-5
      store_path: ~/.threadrelay/store.json

    projects:
      api:
        path: /home/me/src/api
        auto_worktree: true
      docs:
        path: /home/me/src/docs

    bindings:
      "#api-dev":
        project: api
        model: claude-opus-4-1
      "#docs": docs
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from threadrelay.shared.services.thread_store import ThreadStore

from .config import RelayConfig
from .models import ChannelBinding, ProjectConfig

logger = logging.getLogger(__name__)

_FLOAT_FIELDS = {
    "ready_timeout_seconds",
    "ready_poll_interval_seconds",
    "liveness_timeout_seconds",
    "progress_interval_seconds",
}
_INT_FIELDS = {"port_min", "port_max"}


@dataclass
class RelayFileConfig:
    """Everything a YAML file can define."""
    engine: RelayConfig = field(default_factory=RelayConfig)
    projects: dict[str, ProjectConfig] = field(default_factory=dict)
    bindings: dict[str, ChannelBinding] = field(default_factory=dict)


def _parse_engine(engine_raw: dict[str, Any]) -> RelayConfig:
    known = {f.name for f in fields(RelayConfig)}
    unknown = sorted(set(engine_raw) - known)
    if unknown:
        logger.warning("Ignoring unknown engine settings: %s", ", ".join(unknown))

    kwargs: dict[str, Any] = {}
    for key, value in engine_raw.items():
        if key not in known or value is None:
            continue
        if key in _FLOAT_FIELDS:
            value = float(value)
        elif key in _INT_FIELDS:
            value = int(value)
        elif key == "worker_command" and isinstance(value, str):
            value = shlex.split(value)
        elif key == "store_path":
            value = os.path.expanduser(str(value))
        kwargs[key] = value
    return RelayConfig(**kwargs)


def _parse_projects(projects_raw: dict[str, Any]) -> dict[str, ProjectConfig]:
    projects: dict[str, ProjectConfig] = {}
    for alias, cfg in projects_raw.items():
        if isinstance(cfg, str):
            cfg = {"path": cfg}
        if not isinstance(cfg, dict) or not cfg.get("path"):
            raise ValueError(f"Project '{alias}' needs a path")
        projects[str(alias)] = ProjectConfig(
            alias=str(alias),
            path=os.path.expanduser(str(cfg["path"])),
            auto_worktree=bool(cfg.get("auto_worktree", False)),
        )
    return projects


def _parse_bindings(
    bindings_raw: dict[str, Any], projects: dict[str, ProjectConfig],
) -> dict[str, ChannelBinding]:
    bindings: dict[str, ChannelBinding] = {}
    for channel_id, cfg in bindings_raw.items():
        # Shorthand: "channel: project_alias"
        if isinstance(cfg, str):
            cfg = {"project": cfg}
        alias = cfg.get("project") if isinstance(cfg, dict) else None
        if not alias:
            raise ValueError(f"Binding for channel '{channel_id}' needs a project")
        if alias not in projects:
            logger.warning(
                "Binding for channel %s references unknown project %s",
                channel_id, alias,
            )
        bindings[str(channel_id)] = ChannelBinding(
            channel_id=str(channel_id),
            project_alias=str(alias),
            model=cfg.get("model"),
        )
    return bindings


def load_yaml_config(path: str | Path) -> RelayFileConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    engine = _parse_engine(raw.get("engine") or {})
    projects = _parse_projects(raw.get("projects") or {})
    bindings = _parse_bindings(raw.get("bindings") or {}, projects)
    logger.info(
        "Loaded %d project(s), %d binding(s), backend=%s",
        len(projects), len(bindings), engine.backend.value,
    )
    return RelayFileConfig(engine=engine, projects=projects, bindings=bindings)


def apply_to_store(file_config: RelayFileConfig, store: ThreadStore) -> None:
    """Seed a thread store with the file's projects and bindings."""
    for project in file_config.projects.values():
        store.add_project(project)
    for binding in file_config.bindings.values():
        store.set_channel_binding(binding)
