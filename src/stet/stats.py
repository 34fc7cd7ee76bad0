"""Summaries over the history log and the review notes."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from . import git
from .errors import GitError
from .history import Record

logger = logging.getLogger(__name__)

# Scope counters written into each finish note
NOTE_SCOPE_FIELDS = (
    "hunks_reviewed",
    "lines_added",
    "lines_removed",
    "chars_added",
    "chars_deleted",
    "chars_reviewed",
)


@dataclass
class QualityReport:
    records: int = 0
    findings: int = 0
    dismissals: int = 0
    dismissals_by_reason: dict[str, int] = field(default_factory=dict)
    findings_by_category: dict[str, int] = field(default_factory=dict)

    @property
    def dismissal_rate(self) -> float:
        """Dismissed findings as a fraction of reported findings."""
        if self.findings == 0:
            return 0.0
        return self.dismissals / self.findings

    def to_dict(self) -> dict:
        return {
            "records": self.records,
            "findings": self.findings,
            "dismissals": self.dismissals,
            "dismissal_rate": round(self.dismissal_rate, 4),
            "dismissals_by_reason": dict(self.dismissals_by_reason),
            "findings_by_category": dict(self.findings_by_category),
        }


@dataclass
class UsageReport:
    records: int = 0
    runs_with_usage: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    eval_duration_ns: int = 0

    def to_dict(self) -> dict:
        return {
            "records": self.records,
            "runs_with_usage": self.runs_with_usage,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "eval_duration_ns": self.eval_duration_ns,
        }


@dataclass
class VolumeReport:
    commits_in_range: int = 0
    commits_with_note: int = 0
    findings: int = 0
    dismissals: int = 0
    totals: dict[str, int] = field(default_factory=lambda: dict.fromkeys(NOTE_SCOPE_FIELDS, 0))

    @property
    def percent_commits_with_note(self) -> float:
        if self.commits_in_range == 0:
            return 0.0
        return 100 * self.commits_with_note / self.commits_in_range

    def to_dict(self) -> dict:
        return {
            "commits_in_range": self.commits_in_range,
            "commits_with_note": self.commits_with_note,
            "percent_commits_with_note": round(self.percent_commits_with_note, 2),
            "findings": self.findings,
            "dismissals": self.dismissals,
            **{f"total_{key}": value for key, value in self.totals.items()},
        }


def quality(records: list[Record]) -> QualityReport:
    """Count findings and dismissals across ``records``.

    Findings are counted once per ID; only review runs (records carrying a
    ``run_config``) contribute findings. A dismissal without a reason is
    counted under ``unspecified``.
    """
    report = QualityReport(records=len(records))
    seen: set[str] = set()
    categories: Counter = Counter()
    reasons: Counter = Counter()
    dismissed: set[str] = set()
    for record in records:
        if record.run_config is not None:
            for f in record.review_output:
                key = f.id or f"{f.file}:{f.location}:{f.message}"
                if key in seen:
                    continue
                seen.add(key)
                categories[f.category] += 1
        if record.user_action.finished_at:
            continue
        for d in record.user_action.dismissals:
            if d.finding_id in dismissed:
                continue
            dismissed.add(d.finding_id)
            reasons[d.reason or "unspecified"] += 1
    report.findings = len(seen)
    report.dismissals = len(dismissed)
    report.dismissals_by_reason = dict(reasons.most_common())
    report.findings_by_category = dict(categories.most_common())
    return report


def usage(records: list[Record]) -> UsageReport:
    report = UsageReport(records=len(records))
    for record in records:
        if not (record.prompt_tokens or record.completion_tokens or record.eval_duration_ns):
            continue
        report.runs_with_usage += 1
        report.prompt_tokens += record.prompt_tokens
        report.completion_tokens += record.completion_tokens
        report.eval_duration_ns += record.eval_duration_ns
    return report


async def volume(repo_root: str | Path, since: str, until: str = "HEAD") -> VolumeReport:
    """Sum the finish notes on commits in ``since..until``.

    An empty ``since`` walks every commit reachable from ``until``. Commits
    without a note, or with a note that is not a JSON object, only count
    towards ``commits_in_range``.

    Raises:
        GitError: If the range cannot be listed.
    """
    commits = await git.rev_list(repo_root, since, until)
    report = VolumeReport(commits_in_range=len(commits))
    for sha in commits:
        try:
            body = await git.get_note(repo_root, sha)
        except GitError:
            continue
        try:
            note = json.loads(body)
        except json.JSONDecodeError as e:
            logger.debug(f"Skipping malformed note on {sha[:12]}: {e}")
            continue
        if not isinstance(note, dict):
            continue
        report.commits_with_note += 1
        report.findings += _as_int(note.get("findings_count"))
        report.dismissals += _as_int(note.get("dismissals_count"))
        for key in NOTE_SCOPE_FIELDS:
            report.totals[key] += _as_int(note.get(key))
    return report


def _as_int(value) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0
