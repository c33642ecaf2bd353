"""CLI entry point: run prompts for a project in one thread.

Usage:
    threadrelay --project ~/src/api "Add a health check endpoint"
    threadrelay --project . --backend remote "Fix the lint errors" "Now run the tests"
    threadrelay --config relay.yaml --channel '#api-dev' --thread bug-42 "Investigate #42"

The first prompt runs immediately; the rest wait in the thread's queue
and run one after another. Ctrl+C interrupts the running prompt and
drops the queue; a second Ctrl+C exits.
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.spinner import Spinner
from rich.text import Text

from threadrelay.engine.config import RelayConfig
from threadrelay.engine.dispatcher import Dispatcher
from threadrelay.engine.models import BackendKind, ChannelBinding, ProjectConfig
from threadrelay.engine.yaml_config import apply_to_store, load_yaml_config
from threadrelay.shared.services.thread_store import ThreadStore

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "cli"
# Characters of streamed text shown in the live panel
PREVIEW_CHARS = 1200


class ConsoleRenderer:
    """Live terminal progress for dispatcher events."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=False)
        self.failures = 0
        self.completions = 0
        self._live: Live | None = None
        self._header = ""

    def _stop_live(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def _panel(self, text: str, tick: int) -> Panel:
        preview = text[-PREVIEW_CHARS:] if text else ""
        body = Text(preview) if preview else Spinner("dots", text=" Processing...")
        return Panel(body, title=self._header, subtitle=f"{tick}s", border_style="cyan")

    async def started(self, thread_id: str, prompt: str, branch: str, model: str) -> None:
        self._stop_live()
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
        self._header = f"[{thread_id}] {branch} | {model}"
        self.console.print(Text(f"> {first_line[:100]}", style="bold"))
        self._live = Live(
            self._panel("", 0), console=self.console, refresh_per_second=4, transient=True,
        )
        self._live.start()

    async def status(self, thread_id: str, message: str) -> None:
        self.console.print(Text(message, style="dim"))

    async def progress(self, thread_id: str, text: str, tick: int) -> None:
        if self._live is not None:
            self._live.update(self._panel(text, tick))

    async def completed(self, thread_id: str, text: str, summary: str) -> None:
        self._stop_live()
        self.completions += 1
        self.console.print(Panel(Markdown(text), title=self._header, border_style="green"))
        self.console.print(Text(summary, style="dim"))

    async def failed(self, thread_id: str, message: str) -> None:
        self._stop_live()
        self.failures += 1
        self.console.print(Text(f"Error: {message}", style="bold red"))

    async def notice(self, thread_id: str, message: str) -> None:
        self.console.print(Text(message, style="yellow"))

    def close(self) -> None:
        self._stop_live()


def _configure_logging(verbose: bool) -> Path:
    log_dir = Path.home() / ".threadrelay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "threadrelay.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    # Console output belongs to the renderer; stderr only gets warnings
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(stream_handler)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadrelay",
        description="Run prompts through a coding-agent backend, one thread at a time",
    )
    parser.add_argument(
        "prompts",
        nargs="*",
        help="Prompts to run in order (default: read one prompt from stdin)",
    )
    parser.add_argument(
        "--project", "-p",
        default=None,
        help="Project directory to bind to the channel",
    )
    parser.add_argument(
        "--channel",
        default=DEFAULT_CHANNEL,
        help=f"Channel whose binding selects the project (default: {DEFAULT_CHANNEL})",
    )
    parser.add_argument(
        "--thread", "-t",
        default="cli",
        help="Thread id; reuse it to continue a conversation (default: cli)",
    )
    parser.add_argument(
        "--backend",
        choices=["sdk", "remote"],
        default=None,
        help="Execution style (default: from config)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model for this channel (default: from config)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file with engine, projects and bindings",
    )
    parser.add_argument(
        "--store",
        default=None,
        help="JSON file persisting sessions and queues between runs",
    )
    parser.add_argument(
        "--fresh-context",
        action="store_true",
        help="Start a new session for every prompt",
    )
    parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="Keep running queued prompts after one fails",
    )
    parser.add_argument(
        "--auto-worktree",
        action="store_true",
        help="Run the thread in its own git worktree",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _load_config(args: argparse.Namespace) -> tuple[RelayConfig, ThreadStore]:
    file_config = load_yaml_config(args.config) if args.config else None
    config = file_config.engine if file_config else RelayConfig.from_env()
    if args.backend is not None:
        config.backend = BackendKind(args.backend)
    if args.store is not None:
        config.store_path = args.store

    store = ThreadStore.load(config.store_path) if config.store_path else ThreadStore()
    if file_config is not None:
        apply_to_store(file_config, store)

    if args.project is not None:
        project_path = str(Path(args.project).expanduser().resolve())
        alias = Path(project_path).name or "project"
        store.add_project(ProjectConfig(
            alias=alias, path=project_path, auto_worktree=args.auto_worktree,
        ))
        store.set_channel_binding(ChannelBinding(
            channel_id=args.channel, project_alias=alias, model=args.model,
        ))
    elif args.model is not None:
        binding = store.get_channel_binding(args.channel)
        if binding is not None:
            binding.model = args.model
            store.set_channel_binding(binding)
    return config, store


def _read_prompts(args: argparse.Namespace) -> list[str]:
    if args.prompts:
        return [p for p in args.prompts if p.strip()]
    if not sys.stdin.isatty():
        text = sys.stdin.read().strip()
        return [text] if text else []
    return []


async def _run(args: argparse.Namespace, prompts: list[str]) -> int:
    config, store = _load_config(args)
    if not args.verbose:
        logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    if store.get_channel_project_path(args.channel) is None:
        print(f"Error: channel '{args.channel}' is not bound to a project. Use --project or --config.")
        return 2

    renderer = ConsoleRenderer()
    dispatcher = Dispatcher(config, store, renderer)
    thread_id = args.thread
    dispatcher.queue.update_settings(
        thread_id,
        paused=False,
        fresh_context=args.fresh_context,
        continue_on_failure=args.continue_on_failure,
    )

    stop = asyncio.Event()
    interrupted = False

    def _on_sigint() -> None:
        nonlocal interrupted
        if interrupted:
            stop.set()
            return
        interrupted = True
        renderer.console.print(Text("Interrupting... (Ctrl+C again to exit)", style="yellow"))
        dispatcher.queue.clear(thread_id)
        asyncio.ensure_future(dispatcher.interrupt(thread_id))

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler not supported on this platform")

    requester = getpass.getuser()
    try:
        for prompt in prompts:
            await dispatcher.submit(thread_id, args.channel, prompt, requester)

        idle = asyncio.ensure_future(dispatcher.wait_idle(thread_id))
        stopped = asyncio.ensure_future(stop.wait())
        await asyncio.wait({idle, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for task in (idle, stopped):
            task.cancel()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await dispatcher.shutdown()
        renderer.close()

    if stop.is_set():
        return 130
    return 1 if renderer.failures else 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    prompts = _read_prompts(args)
    if not prompts:
        print("Error: Provide at least one prompt.")
        sys.exit(2)

    log_file = _configure_logging(args.verbose)
    logger.info("threadrelay starting (log file %s)", log_file)

    try:
        code = asyncio.run(_run(args, prompts))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}")
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
