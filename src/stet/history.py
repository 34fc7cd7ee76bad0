"""Append-only review history log (``history.jsonl``) with rotation."""

import asyncio
import fcntl
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .constants import DEFAULT_HISTORY_MAX_RECORDS, HISTORY_FILE_NAME
from .errors import ValidationError
from .findings import Finding

logger = logging.getLogger(__name__)

DISMISSAL_REASONS = ("false_positive", "already_correct", "wrong_suggestion", "out_of_scope")

_ARCHIVE_NAME = re.compile(r"^history\.(\d+)\.jsonl$")
_WS_RUN = re.compile(r"\s+")


@dataclass
class Dismissal:
    finding_id: str
    reason: str = ""
    prompt_context: str = ""

    def to_dict(self) -> dict:
        data = {"finding_id": self.finding_id}
        if self.reason:
            data["reason"] = self.reason
        if self.prompt_context:
            data["prompt_context"] = self.prompt_context
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Dismissal":
        return cls(
            finding_id=data.get("finding_id", ""),
            reason=data.get("reason", ""),
            prompt_context=data.get("prompt_context", ""),
        )


@dataclass
class UserAction:
    dismissed_ids: list[str] = field(default_factory=list)
    dismissals: list[Dismissal] = field(default_factory=list)
    finished_at: str = ""
    replace_findings: bool = False

    def to_dict(self) -> dict:
        data: dict = {}
        if self.dismissed_ids:
            data["dismissed_ids"] = list(self.dismissed_ids)
        if self.dismissals:
            data["dismissals"] = [d.to_dict() for d in self.dismissals]
        if self.finished_at:
            data["finished_at"] = self.finished_at
        if self.replace_findings:
            data["replace_findings"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UserAction":
        return cls(
            dismissed_ids=list(data.get("dismissed_ids") or []),
            dismissals=[Dismissal.from_dict(d) for d in data.get("dismissals") or []],
            finished_at=data.get("finished_at", ""),
            replace_findings=bool(data.get("replace_findings", False)),
        )


@dataclass
class RunConfig:
    model: str = ""
    strictness: str = ""
    rag_symbol_max_definitions: int = 0
    rag_symbol_max_tokens: int = 0
    nitpicky: bool = False

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "strictness": self.strictness,
            "rag_symbol_max_definitions": self.rag_symbol_max_definitions,
            "rag_symbol_max_tokens": self.rag_symbol_max_tokens,
            "nitpicky": self.nitpicky,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunConfig":
        return cls(
            model=data.get("model", ""),
            strictness=data.get("strictness", ""),
            rag_symbol_max_definitions=data.get("rag_symbol_max_definitions", 0),
            rag_symbol_max_tokens=data.get("rag_symbol_max_tokens", 0),
            nitpicky=bool(data.get("nitpicky", False)),
        )


@dataclass
class Record:
    """One history entry: a review run, a dismissal or a finish."""

    diff_ref: str = ""
    review_output: list[Finding] = field(default_factory=list)
    user_action: UserAction = field(default_factory=UserAction)
    run_config: RunConfig | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    eval_duration_ns: int = 0

    def to_dict(self) -> dict:
        data: dict = {
            "diff_ref": self.diff_ref,
            "review_output": [f.to_dict() for f in self.review_output],
            "user_action": self.user_action.to_dict(),
        }
        if self.run_config is not None:
            data["run_config"] = self.run_config.to_dict()
        if self.prompt_tokens or self.completion_tokens or self.eval_duration_ns:
            data["prompt_tokens"] = self.prompt_tokens
            data["completion_tokens"] = self.completion_tokens
            data["eval_duration_ns"] = self.eval_duration_ns
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Record":
        run_config = data.get("run_config")
        return cls(
            diff_ref=data.get("diff_ref", ""),
            review_output=[Finding.from_dict(f) for f in data.get("review_output") or []],
            user_action=UserAction.from_dict(data.get("user_action") or {}),
            run_config=RunConfig.from_dict(run_config) if run_config else None,
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            eval_duration_ns=data.get("eval_duration_ns", 0),
        )


def _count_lines(path: Path) -> int:
    try:
        with open(path, "rb") as f:
            return sum(1 for line in f if line.strip())
    except FileNotFoundError:
        return 0


def _archives(state_dir: Path) -> list[tuple[int, Path]]:
    found = []
    for p in state_dir.glob("history.*.jsonl"):
        m = _ARCHIVE_NAME.match(p.name)
        if m:
            found.append((int(m.group(1)), p))
    return sorted(found)


def _rotate(state_dir: Path, active: Path) -> Path:
    archives = _archives(state_dir)
    next_n = archives[-1][0] + 1 if archives else 1
    target = state_dir / f"history.{next_n}.jsonl"
    os.replace(active, target)
    logger.info(f"Rotated history to {target.name}")
    return target


def append_record(state_dir: str | Path, record: Record, max_records: int = DEFAULT_HISTORY_MAX_RECORDS) -> None:
    """Append one record and fsync; rotate the active file once it holds too many.

    The append is serialized across processes with an exclusive flock on the
    active file.

    Raises:
        OSError: If the record cannot be written.
    """
    state = Path(state_dir)
    state.mkdir(parents=True, exist_ok=True)
    active = state / HISTORY_FILE_NAME
    line = json.dumps(record.to_dict(), separators=(",", ":")) + "\n"
    with open(active, "a", encoding="utf-8") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
            if max_records > 0 and _count_lines(active) > max_records:
                _rotate(state, active)
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


async def append(state_dir: str | Path, record: Record, max_records: int = DEFAULT_HISTORY_MAX_RECORDS) -> None:
    await asyncio.to_thread(append_record, state_dir, record, max_records)


def _read_file(path: Path) -> list[Record]:
    records = []
    with open(path, encoding="utf-8") as f:
        for n, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(Record.from_dict(json.loads(line)))
            except (ValueError, TypeError, ValidationError) as e:
                # A concurrent append may leave a partial last line
                logger.debug(f"Skipping unreadable history line {path.name}:{n}: {e}")
    return records


def read_records(state_dir: str | Path) -> list[Record]:
    """All records: archives in rotation order, then the active file."""
    state = Path(state_dir)
    paths = [p for _, p in _archives(state)]
    active = state / HISTORY_FILE_NAME
    if active.exists():
        paths.append(active)
    records: list[Record] = []
    for path in paths:
        try:
            records.extend(_read_file(path))
        except FileNotFoundError:
            continue
    return records


def _format_example(f: Finding) -> str:
    if not f.file:
        return f.message
    if f.location > 0:
        return f"{f.file}:{f.location}: {f.message}"
    return f"{f.file}: {f.message}"


def suppression_examples(records: list[Record], max_records: int, max_examples: int) -> list[str]:
    """``file:line: message`` lines for findings the user dismissed.

    Only the last ``max_records`` records are scanned. Duplicates (ignoring
    whitespace differences) are collapsed and the newest ``max_examples``
    are returned, oldest first.
    """
    if max_records > 0:
        records = records[-max_records:]
    examples: dict[str, str] = {}
    for record in records:
        by_id = {f.id: f for f in record.review_output if f.id}
        # finish snapshots list dismissed_ids without reasons; only explicit
        # dismissals count
        for finding_id in (d.finding_id for d in record.user_action.dismissals):
            finding = by_id.get(finding_id)
            if finding is None or not finding.message:
                continue
            text = _format_example(finding)
            key = _WS_RUN.sub(" ", text).strip()
            # Re-seen examples move to the newest position
            examples.pop(key, None)
            examples[key] = text
    out = list(examples.values())
    if max_examples > 0:
        out = out[-max_examples:]
    return out
