"""Workspace helper: git worktrees that give a thread its own checkout.

Executions run in the *effective* workspace path: the thread's worktree
when one is mapped, otherwise the project directory bound to the channel.
"""
from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

_INVALID_BRANCH_CHARS = re.compile(r"[^A-Za-z0-9._/-]+")


class WorkspaceError(Exception):
    """A git worktree operation failed."""


def sanitize_branch_name(name: str) -> str:
    """Make an arbitrary string usable as a git branch name."""
    cleaned = _INVALID_BRANCH_CHARS.sub("-", name.strip())
    cleaned = re.sub(r"/{2,}", "/", cleaned)
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    cleaned = cleaned.strip("/.-")
    if cleaned.endswith(".lock"):
        cleaned = cleaned[: -len(".lock")]
    return cleaned or "branch"


def worktree_root(project_path: str) -> Path:
    """Directory holding a project's auto-created worktrees."""
    project = Path(project_path)
    return project.parent / f"{project.name}-worktrees"


def _run_git(args: list[str], cwd: str, timeout: float = 30) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def create_worktree(project_path: str, branch: str) -> str:
    """Create a worktree on a new branch and return its path."""
    branch = sanitize_branch_name(branch)
    target = worktree_root(project_path) / branch.replace("/", "-")
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        result = _run_git(
            ["worktree", "add", "-b", branch, str(target)], cwd=project_path,
        )
    except subprocess.TimeoutExpired as exc:
        raise WorkspaceError("git worktree add timed out") from exc
    except FileNotFoundError as exc:
        raise WorkspaceError("git not found") from exc
    if result.returncode != 0:
        raise WorkspaceError(result.stderr.strip() or "git worktree add failed")
    logger.info("Created worktree %s on branch %s", target, branch)
    return str(target)


def get_current_branch(path: str) -> str | None:
    """Current branch of path, or None outside git or on a detached HEAD."""
    try:
        result = _run_git(["symbolic-ref", "--short", "HEAD"], cwd=path, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode == 0:
        return result.stdout.strip() or None
    return None


def worktree_exists(path: str) -> bool:
    return (Path(path) / ".git").exists()


def remove_worktree(
    path: str, force: bool = False, project_path: str | None = None,
) -> None:
    """Remove a worktree; git runs from project_path when given."""
    args = ["worktree", "remove"]
    if force:
        args.append("--force")
    args.append(path)
    try:
        result = _run_git(args, cwd=project_path or path)
    except subprocess.TimeoutExpired as exc:
        raise WorkspaceError("git worktree remove timed out") from exc
    except FileNotFoundError as exc:
        raise WorkspaceError("git not found") from exc
    if result.returncode != 0:
        raise WorkspaceError(result.stderr.strip() or "git worktree remove failed")
    logger.info("Removed worktree %s", path)
