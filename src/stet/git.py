"""Async wrappers around the git commands stet relies on."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .constants import NOTES_REF, STATE_DIR_NAME, WORKTREE_PREFIX
from .errors import BaselineNotAncestor, DiffError, GitError, InvalidRef, WorktreeExists

logger = logging.getLogger(__name__)


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str


def minimal_env(repo_root: str | Path | None = None) -> dict[str, str]:
    """Environment for git subprocesses: no prompts, no pager, user config only.

    When ``repo_root`` has a ``.git`` directory, ``GIT_DIR`` is pinned to it.
    """
    env = {
        "PATH": os.environ.get("PATH", ""),
        "GIT_TERMINAL_PROMPT": "0",
        "GIT_PAGER": "cat",
    }
    home = os.environ.get("HOME")
    if home:
        env["HOME"] = home
    if repo_root is not None:
        git_dir = Path(repo_root) / ".git"
        if git_dir.is_dir():
            env["GIT_DIR"] = str(git_dir)
            env["GIT_WORK_TREE"] = str(repo_root)
    return env


async def _terminate_process(proc: asyncio.subprocess.Process) -> None:
    """Terminate a subprocess, killing it if it does not exit promptly."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("git did not terminate, forcing kill")
            proc.kill()
            await proc.wait()
    except ProcessLookupError:
        pass


async def run_git(
    repo_root: str | Path,
    *args: str,
    timeout: float | None = None,
    pin_git_dir: bool = False,
) -> GitResult:
    """Run ``git <args>`` in ``repo_root`` and capture its output.

    Cancellation and timeouts terminate the subprocess before propagating.

    Raises:
        GitError: If git cannot be started or times out.
        asyncio.CancelledError: If the calling task is cancelled.
    """
    env = minimal_env(repo_root if pin_git_dir else None)
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(repo_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        if proc:
            await _terminate_process(proc)
        raise GitError(f"git {args[0]} timed out after {timeout} seconds") from e
    except asyncio.CancelledError:
        if proc:
            await _terminate_process(proc)
        raise
    except OSError as e:
        raise GitError(f"failed to run git: {e}") from e
    return GitResult(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def _git_output(repo_root: str | Path, *args: str) -> str:
    result = await run_git(repo_root, *args)
    if result.returncode != 0:
        raise GitError(f"git {' '.join(args)}: {result.stderr.strip()}")
    return result.stdout


async def repo_root(directory: str | Path) -> Path:
    """Top-level directory of the repository containing ``directory``."""
    try:
        out = await _git_output(directory, "rev-parse", "--show-toplevel")
    except GitError as e:
        raise GitError(f"not a git repository: {directory}") from e
    return Path(out.strip())


async def rev_parse(repo_root: str | Path, ref: str) -> str:
    """Resolve ``ref`` to a full commit SHA.

    Raises:
        InvalidRef: If the ref does not name a commit.
    """
    result = await run_git(repo_root, "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
    sha = result.stdout.strip()
    if result.returncode != 0 or not sha:
        raise InvalidRef(f"invalid ref {ref!r}")
    return sha


async def rev_parse_short(repo_root: str | Path, ref: str, length: int = 12) -> str:
    result = await run_git(repo_root, "rev-parse", f"--short={length}", ref)
    if result.returncode != 0:
        raise InvalidRef(f"invalid ref {ref!r}")
    return result.stdout.strip()


async def is_ancestor(repo_root: str | Path, ancestor: str, descendant: str) -> bool:
    """``git merge-base --is-ancestor``: exit 0 is True, exit 1 is False."""
    result = await run_git(repo_root, "merge-base", "--is-ancestor", ancestor, descendant)
    if result.returncode == 0:
        return True
    if result.returncode == 1:
        return False
    raise GitError(f"git merge-base --is-ancestor: {result.stderr.strip()}")


async def is_clean(repo_root: str | Path) -> bool:
    """True when the working tree has no uncommitted changes (ignoring the state dir)."""
    out = await _git_output(repo_root, "status", "--porcelain")
    for line in out.splitlines():
        path = line[3:].strip()
        if path == STATE_DIR_NAME or path.startswith(STATE_DIR_NAME + "/"):
            continue
        if line.strip():
            return False
    return True


async def user_intent(repo_root: str | Path) -> tuple[str, str]:
    """Current branch name and last commit message; either may be empty."""
    branch_result = await run_git(repo_root, "rev-parse", "--abbrev-ref", "HEAD")
    branch = branch_result.stdout.strip() if branch_result.returncode == 0 else ""
    if branch == "HEAD":
        branch = ""
    msg_result = await run_git(repo_root, "log", "-1", "--format=%B")
    message = msg_result.stdout.strip() if msg_result.returncode == 0 else ""
    return branch, message


async def diff(repo_root: str | Path, baseline: str, head: str) -> str:
    """Unified diff ``baseline..head``.

    Raises:
        DiffError: If git diff fails.
    """
    result = await run_git(
        repo_root, "diff", "--no-color", "--no-ext-diff", f"{baseline}..{head}", pin_git_dir=True
    )
    if result.returncode != 0:
        raise DiffError(f"git diff {baseline}..{head}: {result.stderr.strip()}")
    return result.stdout


async def rev_list(repo_root: str | Path, since: str, until: str) -> list[str]:
    """Commits reachable from ``until`` but not ``since``, newest first.

    An empty ``since`` lists every commit reachable from ``until``.
    """
    out = await _git_output(repo_root, "rev-list", f"{since}..{until}" if since else until)
    return [line.strip() for line in out.splitlines() if line.strip()]


async def add_note(repo_root: str | Path, commit: str, body: str, notes_ref: str = NOTES_REF) -> None:
    await _git_output(repo_root, "notes", f"--ref={notes_ref}", "add", "-f", "-m", body, commit)


async def get_note(repo_root: str | Path, commit: str, notes_ref: str = NOTES_REF) -> str:
    return (await _git_output(repo_root, "notes", f"--ref={notes_ref}", "show", commit)).strip()


async def worktree_path(repo_root: str | Path, ref: str, worktree_root: str | Path | None = None) -> Path:
    short = await rev_parse_short(repo_root, ref, 12)
    base = Path(worktree_root) if worktree_root else Path(repo_root) / STATE_DIR_NAME / "worktrees"
    return (base / f"{WORKTREE_PREFIX}{short}").resolve()


async def create_worktree(repo_root: str | Path, ref: str, worktree_root: str | Path | None = None) -> Path:
    """Create a detached worktree for ``ref``.

    Raises:
        BaselineNotAncestor: If ``ref`` is not an ancestor of HEAD.
        WorktreeExists: If the target path is already occupied.
    """
    if not await is_ancestor(repo_root, ref, "HEAD"):
        raise BaselineNotAncestor(f"baseline {ref} is not an ancestor of HEAD")
    path = await worktree_path(repo_root, ref, worktree_root)
    if path.exists():
        raise WorktreeExists(f"worktree already exists at {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    result = await run_git(repo_root, "worktree", "add", "--detach", str(path), ref)
    if result.returncode != 0:
        msg = result.stderr.strip()
        lowered = msg.lower()
        if "already checked out" in lowered or "already exists" in lowered:
            raise WorktreeExists(f"worktree already exists at {path}")
        raise GitError(f"git worktree add: {msg}")
    return path


async def remove_worktree(repo_root: str | Path, path: str | Path) -> None:
    await _git_output(repo_root, "worktree", "remove", "--force", str(path))
