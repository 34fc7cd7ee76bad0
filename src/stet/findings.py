"""Finding model, validation, stable IDs and post-filters."""

import re
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path

from .constants import MIN_ID_PREFIX_LENGTH, SHORT_ID_LENGTH
from .errors import ConfigError, StetError, ValidationError
from .hunkid import stable_finding_id

SEVERITIES = ("error", "warning", "info", "nitpick")
CATEGORIES = (
    "bug",
    "security",
    "correctness",
    "performance",
    "style",
    "maintainability",
    "best_practice",
    "testing",
    "documentation",
    "design",
    "accessibility",
)
# Categories held to the stricter maintainability threshold
MAINTAINABILITY_CATEGORIES = frozenset(
    {"maintainability", "style", "best_practice", "documentation", "testing", "design"}
)

DEFAULT_MIN_CONFIDENCE_KEEP = 0.8
DEFAULT_MIN_CONFIDENCE_MAINT = 0.9

_STRICTNESS_PRESETS = {
    "strict": (0.6, 0.7),
    "default": (DEFAULT_MIN_CONFIDENCE_KEEP, DEFAULT_MIN_CONFIDENCE_MAINT),
    "lenient": (0.9, 0.95),
}

FP_BANNED_PHRASES = (
    "Consider adding comments",
    "Consider adding a comment",
    "Ensure that...",
    "It might be beneficial",
    "You might want to",
    "it may be beneficial",
    "consider adding documentation",
)
_FP_PATTERNS = [re.compile(re.escape(p), re.IGNORECASE) for p in FP_BANNED_PHRASES]


@dataclass
class LineRange:
    start: int
    end: int

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}


@dataclass
class Finding:
    """A reviewer-reported issue.

    A finding without ``line`` but with ``range`` is located at
    ``range.start``.
    """

    file: str
    severity: str
    category: str
    message: str
    confidence: float = 0.0
    line: int = 0
    range: LineRange | None = None
    suggestion: str = ""
    cursor_uri: str = ""
    id: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @property
    def location(self) -> int:
        """Effective 1-based line, or 0 when the finding has no location."""
        if self.line > 0:
            return self.line
        if self.range is not None and self.range.start > 0:
            return self.range.start
        return 0

    def span(self) -> tuple[int, int] | None:
        """``(start, end)`` lines covered by the finding, or None if unlocated."""
        if self.range is not None and 0 < self.range.start <= self.range.end:
            return self.range.start, self.range.end
        if self.line > 0:
            return self.line, self.line
        return None

    def compute_id(self) -> str:
        start, end = (self.range.start, self.range.end) if self.range else (0, 0)
        return stable_finding_id(self.file, self.line, start, end, self.message)

    def normalize(self) -> None:
        """Map unknown severities to ``warning`` and unknown categories to ``bug``."""
        if self.severity not in SEVERITIES:
            self.severity = "warning"
        if self.category not in CATEGORIES:
            self.category = "bug"

    def validate(self) -> None:
        """Raise ValidationError if the finding does not satisfy the schema."""
        if not self.severity:
            raise ValidationError("severity is required")
        if self.severity not in SEVERITIES:
            raise ValidationError(f"invalid severity {self.severity!r}")
        if not self.category:
            raise ValidationError("category is required")
        if self.category not in CATEGORIES:
            raise ValidationError(f"invalid category {self.category!r}")
        if not 0 <= self.confidence <= 1:
            raise ValidationError(f"confidence {self.confidence} must be between 0 and 1")
        if not self.file:
            raise ValidationError("file is required")
        if not self.message:
            raise ValidationError("message is required")
        if self.range is not None and self.range.start > self.range.end:
            raise ValidationError(f"range start {self.range.start} must be <= end {self.range.end}")

    def to_dict(self) -> dict:
        data: dict = {}
        if self.id:
            data["id"] = self.id
        data["file"] = self.file
        if self.line:
            data["line"] = self.line
        if self.range is not None:
            data["range"] = self.range.to_dict()
        data["severity"] = self.severity
        data["category"] = self.category
        data["confidence"] = self.confidence
        data["message"] = self.message
        if self.suggestion:
            data["suggestion"] = self.suggestion
        if self.cursor_uri:
            data["cursor_uri"] = self.cursor_uri
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        """Build a finding from decoded JSON.

        Raises:
            ValidationError: If a field has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"finding must be an object, got {type(data).__name__}")
        range_data = data.get("range")
        line_range = None
        if range_data is not None:
            if not isinstance(range_data, dict):
                raise ValidationError("range must be an object")
            line_range = LineRange(
                start=_as_int(range_data.get("start", 0), "range.start"),
                end=_as_int(range_data.get("end", 0), "range.end"),
            )
        return cls(
            id=_as_str(data.get("id", ""), "id"),
            file=_as_str(data.get("file", ""), "file"),
            line=_as_int(data.get("line", 0), "line"),
            range=line_range,
            severity=_as_str(data.get("severity", ""), "severity"),
            category=_as_str(data.get("category", ""), "category"),
            confidence=_as_float(data.get("confidence", 0), "confidence"),
            message=_as_str(data.get("message", ""), "message"),
            suggestion=_as_str(data.get("suggestion", ""), "suggestion"),
            cursor_uri=_as_str(data.get("cursor_uri", ""), "cursor_uri"),
        )


def _as_str(value, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def _as_int(value, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"{name} must be an integer")
    return int(value)


def _as_float(value, name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    return float(value)


def resolve_strictness(strictness: str) -> tuple[float, float, bool]:
    """Map a strictness preset to ``(min_keep, min_maint, apply_fp_kill_list)``.

    A trailing ``+`` keeps the thresholds but disables the FP kill list.

    Raises:
        ConfigError: If the preset is unknown.
    """
    norm = strictness.strip().lower()
    base = norm.removesuffix("+")
    if base not in _STRICTNESS_PRESETS or norm.count("+") > 1:
        raise ConfigError(
            f"invalid strictness {strictness!r}: use strict, default, lenient, strict+, default+, or lenient+"
        )
    min_keep, min_maint = _STRICTNESS_PRESETS[base]
    return min_keep, min_maint, not norm.endswith("+")


def filter_abstention(
    findings: Iterable[Finding],
    min_keep: float = DEFAULT_MIN_CONFIDENCE_KEEP,
    min_maint: float = DEFAULT_MIN_CONFIDENCE_MAINT,
) -> list[Finding]:
    """Drop findings the model is not confident enough about."""
    out = []
    for f in findings:
        threshold = min_maint if f.category in MAINTAINABILITY_CATEGORIES else min_keep
        if f.confidence < threshold:
            continue
        out.append(f)
    return out


def matches_fp_kill_list(message: str) -> bool:
    return any(p.search(message) for p in _FP_PATTERNS)


def filter_fp_kill_list(findings: Iterable[Finding]) -> list[Finding]:
    """Drop findings whose message matches a known false-positive phrase."""
    return [f for f in findings if not matches_fp_kill_list(f.message)]


def filter_by_hunk_lines(findings: Iterable[Finding], file_path: str, hunk_start: int, hunk_end: int) -> list[Finding]:
    """Drop findings located in ``file_path`` but outside ``[hunk_start, hunk_end]``.

    Findings for other files and findings without a location are kept. An
    invalid hunk range keeps everything.
    """
    findings = list(findings)
    if hunk_start <= 0 or hunk_end < hunk_start:
        return findings
    out = []
    for f in findings:
        if f.file != file_path or (f.line == 0 and f.range is None):
            out.append(f)
            continue
        if f.range is not None:
            if f.range.start > f.range.end:
                continue
            if f.range.start <= hunk_end and f.range.end >= hunk_start:
                out.append(f)
            continue
        if hunk_start <= f.line <= hunk_end:
            out.append(f)
    return out


def cursor_uri(repo_root: str | Path, finding: Finding) -> str:
    """``file://`` URL for a finding with a ``#L`` line anchor when located."""
    abs_path = (Path(repo_root) / finding.file).resolve()
    uri = abs_path.as_uri()
    r = finding.range
    if r is not None and r.start > 0 and r.end >= r.start:
        return f"{uri}#L{r.start}-{r.end}"
    line = finding.location
    if line > 0:
        return f"{uri}#L{line}"
    return uri


def set_cursor_uris(repo_root: str | Path, findings: list[Finding]) -> list[Finding]:
    return [f if f.cursor_uri else replace(f, cursor_uri=cursor_uri(repo_root, f)) for f in findings]


class IDResolutionError(StetError):
    """A finding ID prefix matched nothing or more than one finding."""


def resolve_finding_id(prefix: str, ids: Iterable[str]) -> str:
    """Resolve a full ID or a case-insensitive prefix of at least 4 chars.

    Raises:
        IDResolutionError: If the prefix is too short, unknown or ambiguous.
    """
    needle = prefix.strip().lower()
    if len(needle) < MIN_ID_PREFIX_LENGTH:
        raise IDResolutionError(f"finding ID prefix {prefix!r} is too short (need at least {MIN_ID_PREFIX_LENGTH} characters)")
    ids = list(dict.fromkeys(ids))
    for candidate in ids:
        if candidate.lower() == needle:
            return candidate
    matches = [c for c in ids if c.lower().startswith(needle)]
    if not matches:
        raise IDResolutionError(f"no finding matches ID {prefix!r}")
    if len(matches) > 1:
        shown = ", ".join(m[:SHORT_ID_LENGTH] for m in matches[:5])
        raise IDResolutionError(f"ID prefix {prefix!r} is ambiguous ({shown})")
    return matches[0]


@dataclass
class FilterCounts:
    """Finding counts at each filter boundary for one hunk."""

    parsed: int = 0
    after_abstention: int = 0
    after_fp: int = 0
    after_evidence: int = 0
    after_critic: int = 0
