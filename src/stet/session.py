"""Session document persistence and the per-state-dir run lock."""

import fcntl
import json
import logging
import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import aiofiles

from .constants import LOCK_FILE_NAME, MAX_PROMPT_SHADOWS, PROMPT_CONTEXT_MAX_BYTES, SESSION_FILE_NAME
from .errors import NoSession, SessionError, SessionLocked, StetError
from .findings import Finding
from .prompt import Shadow

logger = logging.getLogger(__name__)


def truncate_prompt_context(text: str, max_bytes: int = PROMPT_CONTEXT_MAX_BYTES) -> str:
    """First ``max_bytes`` bytes of ``text`` without splitting a UTF-8 sequence."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    return data[:max_bytes].decode("utf-8", errors="ignore")


@dataclass
class Usage:
    """Token usage of the most recent run."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    eval_duration_ns: int = 0

    def add(self, other: "Usage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.eval_duration_ns += other.eval_duration_ns

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "eval_duration_ns": self.eval_duration_ns,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Usage":
        return cls(
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            eval_duration_ns=data.get("eval_duration_ns", 0),
        )


@dataclass
class PinnedOptions:
    """Options fixed at ``start`` and reused by later runs of the session."""

    strictness: str = ""
    nitpicky: bool = False
    context_limit: int = 0
    num_ctx: int = 0
    rag_symbol_max_definitions: int = 0
    rag_symbol_max_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "strictness": self.strictness,
            "nitpicky": self.nitpicky,
            "context_limit": self.context_limit,
            "num_ctx": self.num_ctx,
            "rag_symbol_max_definitions": self.rag_symbol_max_definitions,
            "rag_symbol_max_tokens": self.rag_symbol_max_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PinnedOptions":
        return cls(
            strictness=data.get("strictness", ""),
            nitpicky=bool(data.get("nitpicky", False)),
            context_limit=data.get("context_limit", 0),
            num_ctx=data.get("num_ctx", 0),
            rag_symbol_max_definitions=data.get("rag_symbol_max_definitions", 0),
            rag_symbol_max_tokens=data.get("rag_symbol_max_tokens", 0),
        )


@dataclass
class Session:
    """The persisted state of a single review."""

    session_id: str = ""
    baseline_ref: str = ""
    last_reviewed_at: str = ""
    worktree_path: str = ""
    started_at: str = ""
    findings: list[Finding] = field(default_factory=list)
    dismissed_ids: list[str] = field(default_factory=list)
    finding_prompt_context: dict[str, str] = field(default_factory=dict)
    prompt_shadows: list[Shadow] = field(default_factory=list)
    last_run: Usage = field(default_factory=Usage)
    options: PinnedOptions = field(default_factory=PinnedOptions)

    @property
    def exists(self) -> bool:
        return bool(self.baseline_ref)

    def dismiss(self, finding_id: str) -> bool:
        """Add ``finding_id`` to the dismissed set; False if it was already there."""
        if finding_id in self.dismissed_ids:
            return False
        self.dismissed_ids.append(finding_id)
        return True

    def add_shadow(self, finding_id: str, prompt_context: str) -> None:
        self.prompt_shadows = [s for s in self.prompt_shadows if s.finding_id != finding_id]
        self.prompt_shadows.append(Shadow(finding_id=finding_id, prompt_context=prompt_context))
        if len(self.prompt_shadows) > MAX_PROMPT_SHADOWS:
            self.prompt_shadows = self.prompt_shadows[-MAX_PROMPT_SHADOWS:]

    def active_findings(self) -> list[Finding]:
        dismissed = set(self.dismissed_ids)
        return [f for f in self.findings if f.id not in dismissed]

    def finding_by_id(self, finding_id: str) -> Finding | None:
        for f in self.findings:
            if f.id == finding_id:
                return f
        return None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "baseline_ref": self.baseline_ref,
            "last_reviewed_at": self.last_reviewed_at,
            "worktree_path": self.worktree_path,
            "started_at": self.started_at,
            "findings": [f.to_dict() for f in self.findings],
            "dismissed_ids": list(self.dismissed_ids),
            "finding_prompt_context": dict(self.finding_prompt_context),
            "prompt_shadows": [s.to_dict() for s in self.prompt_shadows],
            "last_run": self.last_run.to_dict(),
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            session_id=data.get("session_id", ""),
            baseline_ref=data.get("baseline_ref", ""),
            last_reviewed_at=data.get("last_reviewed_at", ""),
            worktree_path=data.get("worktree_path", ""),
            started_at=data.get("started_at", ""),
            findings=[Finding.from_dict(f) for f in data.get("findings") or []],
            dismissed_ids=list(data.get("dismissed_ids") or []),
            finding_prompt_context=dict(data.get("finding_prompt_context") or {}),
            prompt_shadows=[Shadow.from_dict(s) for s in data.get("prompt_shadows") or []],
            last_run=Usage.from_dict(data.get("last_run") or {}),
            options=PinnedOptions.from_dict(data.get("options") or {}),
        )

    @classmethod
    def new(cls, baseline_ref: str) -> "Session":
        return cls(
            session_id=secrets.token_hex(16),
            baseline_ref=baseline_ref,
            started_at=datetime.now(timezone.utc).isoformat(),
        )


class SessionLock:
    """Exclusive advisory lock on ``session.lock`` held for a whole run.

    Usable as a context manager::

        with SessionLock(state_dir):
            ...
    """

    def __init__(self, state_dir: Path):
        self.path = Path(state_dir) / LOCK_FILE_NAME
        self._fd: int | None = None

    def acquire(self) -> None:
        """Take the lock without blocking.

        Raises:
            SessionLocked: If another process holds the lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise SessionLocked(f"session is locked ({self.path})") from e
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SessionStore:
    """Loads and atomically saves ``session.json`` in a state directory."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.session_file = self.state_dir / SESSION_FILE_NAME

    async def load(self) -> Session:
        """Load the session; a missing file yields an empty session.

        Raises:
            SessionError: If the file exists but cannot be read or decoded.
        """
        try:
            async with aiofiles.open(self.session_file, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return Session()
        except OSError as e:
            raise SessionError(f"read session {self.session_file}: {e}") from e
        try:
            return Session.from_dict(json.loads(content))
        except (ValueError, TypeError, AttributeError, StetError) as e:
            raise SessionError(f"session file {self.session_file} is corrupt: {e}") from e

    async def load_existing(self) -> Session:
        """Load the session, requiring that ``start`` has been run.

        Raises:
            NoSession: If no session has been started.
        """
        session = await self.load()
        if not session.exists:
            raise NoSession("no active session")
        return session

    async def save(self, session: Session) -> None:
        """Write the session to a temp file, fsync, then rename over the original."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.session_file.with_name(f".{SESSION_FILE_NAME}.{secrets.token_hex(4)}.tmp")
        payload = json.dumps(session.to_dict(), indent=2, ensure_ascii=False)
        try:
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.session_file)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise SessionError(f"save session {self.session_file}: {e}") from e
        logger.debug(f"Saved session {session.session_id} ({len(session.findings)} findings)")

    def delete(self) -> None:
        self.session_file.unlink(missing_ok=True)
