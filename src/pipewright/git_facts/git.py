# git.py
# Thin wrapper around the Git CLI so the rest of pipewright never calls
# subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


class GitError(RuntimeError):
    """A git invocation failed (not a repository, unknown ref, no git binary)."""


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: if git is missing or exits non-zero.
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    True if the working tree has modified, staged or untracked files.

    `git status --porcelain` is machine-readable; any output means dirty.
    """
    return _git(["status", "--porcelain"], cwd) != ""


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Current branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return None if name == "HEAD" else name


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    return out.splitlines() if out else []


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged, staged and untracked paths of a dirty working tree."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit SHA of the common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd)


def tracked_files(cwd: Optional[str | Path] = None) -> List[str]:
    out = _git(["ls-files"], cwd)
    return out.splitlines() if out else []
