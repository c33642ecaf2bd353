"""CLI argument handling and the rich console renderer."""

from __future__ import annotations

import io
import sys

import pytest
from rich.console import Console

from threadrelay import cli
from threadrelay.cli import ConsoleRenderer, _load_config, build_parser
from threadrelay.engine.models import BackendKind


def test_parser_defaults():
    args = build_parser().parse_args(["do the thing"])

    assert args.prompts == ["do the thing"]
    assert args.thread == "cli"
    assert args.channel == "cli"
    assert args.backend is None
    assert args.fresh_context is False
    assert args.continue_on_failure is False


def test_project_flag_binds_channel(tmp_path, monkeypatch):
    for key in ("RELAY_BACKEND", "RELAY_STORE_PATH"):
        monkeypatch.delenv(key, raising=False)
    project = tmp_path / "api"
    project.mkdir()
    args = build_parser().parse_args([
        "--project", str(project),
        "--backend", "remote",
        "--model", "opus",
        "--auto-worktree",
        "--store", str(tmp_path / "store.json"),
        "hello",
    ])

    config, store = _load_config(args)

    assert config.backend is BackendKind.REMOTE
    assert config.store_path == str(tmp_path / "store.json")
    assert store.get_channel_project_path("cli") == str(project.resolve())
    assert store.get_channel_model("cli") == "opus"
    assert store.get_project_auto_worktree("api") is True
    assert (tmp_path / "store.json").exists()


def test_config_file_bindings_are_used(tmp_path):
    config_path = tmp_path / "relay.yaml"
    config_path.write_text(
        "engine:\n  backend: remote\n"
        "projects:\n  docs:\n    path: /src/docs\n"
        "bindings:\n  '#docs': docs\n",
        encoding="utf-8",
    )
    args = build_parser().parse_args([
        "--config", str(config_path), "--channel", "#docs", "--model", "haiku", "fix typos",
    ])

    config, store = _load_config(args)

    assert config.backend is BackendKind.REMOTE
    assert store.get_channel_project_path("#docs") == "/src/docs"
    assert store.get_channel_model("#docs") == "haiku"


@pytest.mark.asyncio
async def test_console_renderer_lifecycle():
    buffer = io.StringIO()
    renderer = ConsoleRenderer(Console(file=buffer, force_terminal=False, width=100))

    await renderer.started("t1", "Write the README\nwith examples", "main", "default")
    await renderer.status("t1", "Starting new session")
    await renderer.progress("t1", "Drafting...", 1)
    await renderer.completed("t1", "# README\n\nDone.", "Done | 2 turns")
    await renderer.failed("t1", "worker crashed")
    await renderer.notice("t1", "Queued at position 1.")
    renderer.close()

    output = buffer.getvalue()
    assert "> Write the README" in output
    assert "Done | 2 turns" in output
    assert "Starting new session" in output
    assert "Error: worker crashed" in output
    assert "Queued at position 1." in output
    assert renderer.completions == 1
    assert renderer.failures == 1


def test_malformed_config_exits_with_usage_error(tmp_path, monkeypatch, capsys):
    config_path = tmp_path / "relay.yaml"
    config_path.write_text("engine: [unclosed\n", encoding="utf-8")
    monkeypatch.setattr(cli, "_configure_logging", lambda verbose: tmp_path / "relay.log")
    monkeypatch.setattr(sys, "argv", ["threadrelay", "--config", str(config_path), "hello"])

    with pytest.raises(SystemExit) as exc_info:
        cli.main()

    assert exc_info.value.code == 2
    assert capsys.readouterr().out.startswith("Error:")
