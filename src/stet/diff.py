"""Unified diff parsing, hunk line ranges and scope filtering."""

import fnmatch
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from pathlib import PurePosixPath

from .constants import DEFAULT_EXCLUDE_PATTERNS

logger = logging.getLogger(__name__)

_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")
_HUNK_RANGE = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)(?:,(\d+))? @@")
_DIFF_GIT_HEADER = re.compile(r"^a/(.+?) b/(.+)$")
_SECTION_SPLIT = re.compile(r"^diff --git ", re.MULTILINE)
_BINARY_MARKER = "Binary files "


@dataclass(frozen=True)
class Hunk:
    """A single reviewable block of a unified diff.

    ``raw_content`` is the ``@@`` header plus body lines. ``context`` is what
    goes into the prompt; it equals ``raw_content`` unless the hunk was
    expanded with its enclosing function.
    """

    file_path: str
    raw_content: str
    context: str = ""

    def __post_init__(self):
        if not self.context:
            object.__setattr__(self, "context", self.raw_content)

    def with_context(self, context: str) -> "Hunk":
        return replace(self, context=context)


@dataclass
class HunkScope:
    """Line and character counts over a set of hunks."""

    hunks: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    chars_added: int = 0
    chars_deleted: int = 0
    chars_reviewed: int = 0

    def to_dict(self) -> dict:
        return {
            "hunks_reviewed": self.hunks,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "chars_added": self.chars_added,
            "chars_deleted": self.chars_deleted,
            "chars_reviewed": self.chars_reviewed,
        }


def _strip_path_prefix(path: str) -> str:
    path = path.split("\t", 1)[0].strip()
    if path.startswith("a/") or path.startswith("b/"):
        return path[2:]
    return path


def _section_path(lines: list[str]) -> str:
    """Path of the post-change side of a file section."""
    header = lines[0] if lines else ""
    match = _DIFF_GIT_HEADER.match(header.strip())
    if match:
        return match.group(2)
    minus_path = ""
    for line in lines[1:]:
        if line.startswith("+++ "):
            candidate = _strip_path_prefix(line[4:])
            if candidate and candidate != "/dev/null":
                return candidate
        elif line.startswith("--- "):
            candidate = _strip_path_prefix(line[4:])
            if candidate != "/dev/null":
                minus_path = candidate
        elif line.startswith("@@"):
            break
    if minus_path:
        return minus_path
    # "a/x b/x" with spaces in names: fall back to the a/ side
    parts = header.split(" b/", 1)
    if parts[0].startswith("a/"):
        return parts[0][2:]
    return ""


def _is_body_line(line: str) -> bool:
    return line == "" or line[0] in " +-"


def parse_unified_diff(text: str) -> list[Hunk]:
    """Split unified diff text into hunks in the diff's natural order.

    Binary file sections are skipped. Empty or whitespace-only input yields an
    empty list.
    """
    if not text.strip():
        return []

    hunks: list[Hunk] = []
    for section in _SECTION_SPLIT.split(text):
        section = section.strip()
        if not section:
            continue
        if _BINARY_MARKER in section:
            continue
        lines = section.split("\n")
        path = _section_path(lines)
        if not path:
            logger.debug("Skipping diff section without a path")
            continue

        current: list[str] | None = None
        for line in lines[1:]:
            if _HUNK_HEADER.match(line):
                if current:
                    hunks.append(Hunk(path, "\n".join(current)))
                current = [line]
                continue
            # "\ No newline at end of file" and other metadata lines are dropped
            if current is not None and _is_body_line(line):
                current.append(line)
        if current:
            hunks.append(Hunk(path, "\n".join(current)))

    return hunks


def hunk_line_range(hunk: Hunk) -> tuple[int, int] | None:
    """New-file ``(start, end)`` lines of a hunk, or None if the header is invalid."""
    first = hunk.raw_content.split("\n", 1)[0]
    match = _HUNK_RANGE.match(first)
    if not match:
        return None
    start = int(match.group(1))
    count = int(match.group(2)) if match.group(2) is not None else 1
    if start <= 0 or count <= 0:
        return None
    return start, start + count - 1


def count_hunk_scope(hunks: Iterable[Hunk]) -> HunkScope:
    scope = HunkScope()
    for hunk in hunks:
        scope.hunks += 1
        scope.chars_reviewed += len(hunk.raw_content.encode("utf-8"))
        for line in hunk.raw_content.split("\n")[1:]:
            if line.startswith("+") and not line.startswith("+++"):
                scope.lines_added += 1
                scope.chars_added += len(line[1:].encode("utf-8"))
            elif line.startswith("-") and not line.startswith("---"):
                scope.lines_removed += 1
                scope.chars_deleted += len(line[1:].encode("utf-8"))
    return scope


_UNTERMINATED_CLASS = re.compile(r"\[[^\]]*$")
_ESCAPED_CHAR = re.compile(r"\\(.)")


def _compile_glob(pattern: str) -> list[str]:
    """Split a glob into per-segment ``fnmatch`` patterns.

    Raises:
        ValueError: For an unterminated ``[`` class or a trailing backslash.
    """
    segments = []
    for segment in pattern.split("/"):
        bare = _ESCAPED_CHAR.sub("", segment)
        if bare.endswith("\\"):
            raise ValueError("trailing backslash")
        if _UNTERMINATED_CLASS.search(bare):
            raise ValueError("unterminated character class")
        segment = _ESCAPED_CHAR.sub(lambda m: f"[{m.group(1)}]", segment)
        segments.append(segment.replace("[^", "[!"))
    return segments


def _glob_match(segments: list[str], path: str) -> bool:
    # one segment per path component, so ``*`` never crosses a slash
    parts = path.split("/")
    if len(parts) != len(segments):
        return False
    return all(fnmatch.fnmatchcase(part, seg) for part, seg in zip(parts, segments))


class ScopeFilter:
    """Glob-based exclusion of generated and vendored paths.

    ``patterns=None`` applies the defaults; an empty sequence disables all
    exclusions. Patterns starting with ``vendor`` or ``coverage`` are
    directory prefixes; every other pattern is tried against the full path,
    then the base name. Malformed patterns are logged and skipped.
    """

    def __init__(self, patterns: Sequence[str] | None = None):
        if patterns is None:
            patterns = DEFAULT_EXCLUDE_PATTERNS
        self.patterns = list(patterns)
        self._globs: list[tuple[str, list[str]]] = []
        for pattern in self.patterns:
            try:
                self._globs.append((pattern, _compile_glob(pattern)))
            except ValueError as e:
                logger.warning(f"Skipping malformed exclude pattern {pattern!r}: {e}")

    def is_excluded(self, path: str) -> bool:
        path = path.replace("\\", "/")
        base = PurePosixPath(path).name
        for pattern, segments in self._globs:
            if pattern.startswith("vendor"):
                if path == "vendor" or path.startswith("vendor/"):
                    return True
                continue
            if pattern.startswith("coverage"):
                if path == "coverage" or path.startswith("coverage/") or "/coverage/" in path:
                    return True
                continue
            if _glob_match(segments, path) or _glob_match(segments, base):
                return True
        return False

    def filter(self, hunks: Iterable[Hunk]) -> list[Hunk]:
        return [h for h in hunks if not self.is_excluded(h.file_path)]
