"""Enclosing-function expansion of hunks for languages with a parser frontend.

Expansion is fail-open: any problem (bad path, oversized file, parse error,
no enclosing function) returns the hunk unchanged.
"""

import ast
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .constants import MAX_EXPAND_FILE_BYTES
from .diff import Hunk, hunk_line_range
from .tokens import CHARS_PER_TOKEN

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "// ... (truncated)"
ENCLOSING_HEADER = "## Enclosing function context"
DIFF_HUNK_HEADER = "## Diff hunk"


@dataclass(frozen=True)
class FunctionSpan:
    """A function declaration located in a source file (1-based, inclusive lines)."""

    name: str
    start_line: int
    end_line: int

    def contains(self, start: int, end: int) -> bool:
        return self.start_line <= start and end <= self.end_line

    @property
    def size(self) -> int:
        return self.end_line - self.start_line


def _python_functions(source: str) -> list[FunctionSpan]:
    tree = ast.parse(source)
    spans = []
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            start = min([node.lineno] + [d.lineno for d in node.decorator_list])
            spans.append(FunctionSpan(node.name, start, node.end_lineno or node.lineno))
    return spans


_GO_FUNC = re.compile(r"^func\s*(\(([^)]*)\))?\s*([A-Za-z_][A-Za-z0-9_]*)")


def _go_receiver_type(receiver: str) -> str:
    parts = receiver.split()
    typ = parts[-1] if parts else ""
    return typ.lstrip("*").split("[", 1)[0]


def _skip_go_literal(src: str, i: int) -> int:
    """Index just past the string, rune or comment that starts at ``src[i]``."""
    c = src[i]
    n = len(src)
    if c == "`":
        end = src.find("`", i + 1)
        return n if end == -1 else end + 1
    if c in "\"'":
        j = i + 1
        while j < n and src[j] != c and src[j] != "\n":
            j += 2 if src[j] == "\\" else 1
        return j + 1
    if src.startswith("//", i):
        end = src.find("\n", i)
        return n if end == -1 else end
    if src.startswith("/*", i):
        end = src.find("*/", i + 2)
        return n if end == -1 else end + 2
    return i + 1


def _ends_line(src: str, i: int) -> bool:
    """True if only whitespace or a line comment follows ``src[i:]`` on its line."""
    end = src.find("\n", i)
    rest = (src[i:] if end == -1 else src[i:end]).strip()
    return rest == "" or rest.startswith("//")


def _go_functions(source: str) -> list[FunctionSpan]:
    """Top-level func declarations of a gofmt-formatted Go file.

    Raises:
        SyntaxError: If a function body has unbalanced braces.
    """
    line_starts = [0]
    for m in re.finditer("\n", source):
        line_starts.append(m.end())

    def line_of(offset: int) -> int:
        lo, hi = 0, len(line_starts) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if line_starts[mid] <= offset:
                lo = mid
            else:
                hi = mid - 1
        return lo + 1

    spans = []
    i, n = 0, len(source)
    depth = 0
    current: tuple[str, int] | None = None
    while i < n:
        c = source[i]
        at_line_start = i == 0 or source[i - 1] == "\n"
        if depth == 0 and at_line_start and source.startswith("func", i):
            m = _GO_FUNC.match(source, i)
            if m:
                name = m.group(3)
                if m.group(1):
                    name = f"({_go_receiver_type(m.group(2))}).{name}"
                current = (name, line_of(i))
        if c in "`\"'" or source.startswith("//", i) or source.startswith("/*", i):
            i = _skip_go_literal(source, i)
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth < 0:
                raise SyntaxError(f"unbalanced '}}' at line {line_of(i)}")
            if depth == 0 and current is not None and _ends_line(source, i + 1):
                spans.append(FunctionSpan(current[0], current[1], line_of(i)))
                current = None
        i += 1
    if depth != 0:
        raise SyntaxError("unbalanced braces at end of file")
    return spans


# Parser frontends keyed by file extension
FRONTENDS: dict[str, tuple[str, Callable[[str], list[FunctionSpan]]]] = {
    ".go": ("go", _go_functions),
    ".py": ("python", _python_functions),
}


def _resolve_in_repo(repo_root: Path, file_path: str) -> Path | None:
    root = repo_root.resolve()
    candidate = (root / file_path).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    return candidate


def _read_source(repo_root: str | Path, file_path: str) -> str | None:
    path = _resolve_in_repo(Path(repo_root), file_path)
    if path is None:
        logger.debug(f"Expand: {file_path} escapes the repository root")
        return None
    try:
        if path.stat().st_size > MAX_EXPAND_FILE_BYTES:
            logger.debug(f"Expand: {file_path} is larger than {MAX_EXPAND_FILE_BYTES} bytes")
            return None
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Expand: cannot read {file_path}: {e}")
        return None


def find_enclosing_function(repo_root: str | Path, file_path: str, start: int, end: int) -> tuple[FunctionSpan, str] | None:
    """Smallest function fully containing lines ``[start, end]``, with the file source."""
    frontend = FRONTENDS.get(Path(file_path).suffix)
    if frontend is None:
        return None
    source = _read_source(repo_root, file_path)
    if source is None:
        return None
    try:
        spans = frontend[1](source)
    except (SyntaxError, ValueError) as e:
        logger.debug(f"Expand: cannot parse {file_path}: {e}")
        return None
    enclosing = [s for s in spans if s.contains(start, end)]
    if not enclosing:
        return None
    return min(enclosing, key=lambda s: s.size), source


def enclosing_function_name(repo_root: str | Path, file_path: str, start: int, end: int) -> str:
    found = find_enclosing_function(repo_root, file_path, start, end)
    return found[0].name if found else ""


def function_source(source: str, span: FunctionSpan) -> str:
    lines = source.split("\n")
    return "\n".join(lines[span.start_line - 1 : span.end_line])


def truncate_function(text: str, max_tokens: int) -> str:
    """Keep the head of ``text`` (the signature) within ``max_tokens``.

    The cut prefers the last newline past the midpoint of the budget.
    """
    if max_tokens <= 0:
        return text
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER) - 1)
    truncated = text[:keep]
    cut = truncated.rfind("\n")
    if cut > max_chars // 2:
        truncated = truncated[:cut]
    return truncated + "\n" + TRUNCATION_MARKER


def expand_hunk(repo_root: str | Path, hunk: Hunk, max_tokens: int = 0) -> Hunk:
    """Prepend the enclosing function to the hunk's prompt context.

    ``raw_content`` is never changed. Returns the hunk unchanged when
    expansion does not apply.
    """
    line_range = hunk_line_range(hunk)
    if line_range is None:
        return hunk
    found = find_enclosing_function(repo_root, hunk.file_path, *line_range)
    if found is None:
        return hunk
    span, source = found
    fence_lang = FRONTENDS[Path(hunk.file_path).suffix][0]
    fn_src = truncate_function(function_source(source, span), max_tokens)
    context = f"{ENCLOSING_HEADER}\n\n```{fence_lang}\n{fn_src}\n```\n\n{DIFF_HUNK_HEADER}\n\n{hunk.raw_content}"
    return hunk.with_context(context)
