"""Shared machinery for git-grep based symbol resolvers."""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import DEFAULT_RAG_MAX_DEFINITIONS, MAX_SYMBOL_CANDIDATES, RESOLVER_TIMEOUT
from ..errors import GitError
from ..git import run_git
from ..tokens import estimate

logger = logging.getLogger(__name__)

SIGNATURE_CONTEXT_LINES = 5
MAX_PRECEDING_COMMENT_LINES = 5


@dataclass
class Definition:
    """A symbol definition found in the repository."""

    symbol: str
    file: str
    line: int
    signature: str
    docstring: str = ""

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "file": self.file,
            "line": self.line,
            "signature": self.signature,
            "docstring": self.docstring,
        }


@dataclass
class CallGraphResult:
    callers: list[Definition] = field(default_factory=list)
    callees: list[Definition] = field(default_factory=list)


def definition_tokens(d: Definition) -> int:
    return estimate(d.file) + estimate(d.signature) + estimate(d.docstring) + 8


def cap_definitions_by_tokens(defs: list[Definition], max_tokens: int) -> list[Definition]:
    """Keep definitions while they fit in ``max_tokens``; the first is always kept."""
    if max_tokens <= 0 or not defs:
        return defs
    out = [defs[0]]
    used = definition_tokens(defs[0])
    for d in defs[1:]:
        cost = definition_tokens(d)
        if used + cost > max_tokens:
            break
        out.append(d)
        used += cost
    return out


def parse_grep_line(line: str) -> tuple[str, int, str] | None:
    """Split ``path:lineno:content`` from ``git grep -n``.

    Paths containing ``..`` are rejected. Paths with colons are not supported.
    """
    parts = line.split(":", 2)
    if len(parts) != 3:
        return None
    path, lineno, content = parts
    if not path or ".." in path:
        return None
    try:
        number = int(lineno)
    except ValueError:
        return None
    if number < 1:
        return None
    return path, number, content


async def git_grep(repo_root: str | Path, pattern: str, timeout: float = RESOLVER_TIMEOUT) -> list[tuple[str, int, str]]:
    """Run ``git grep -n -E pattern``; no match yields an empty list.

    Raises:
        GitError: If git fails for a reason other than "no match" or times out.
    """
    result = await run_git(repo_root, "grep", "-n", "-E", pattern, timeout=timeout, pin_git_dir=True)
    if result.returncode == 1:
        return []
    if result.returncode != 0:
        raise GitError(f"git grep: {result.stderr.strip()}")
    hits = []
    for line in result.stdout.splitlines():
        parsed = parse_grep_line(line)
        if parsed is not None:
            hits.append(parsed)
    return hits


def read_lines(path: Path, limit: int) -> list[str]:
    lines = []
    with open(path, encoding="utf-8", errors="replace") as f:
        for i, line in enumerate(f):
            if i >= limit:
                break
            lines.append(line.rstrip("\n"))
    return lines


def added_lines(hunk_content: str) -> str:
    """Added and context lines of a hunk, without the diff prefix."""
    out = []
    for line in hunk_content.split("\n")[1:]:
        if line.startswith("-"):
            continue
        out.append(line[1:] if line else line)
    return "\n".join(out)


class SymbolResolver(ABC):
    """Looks up definitions of identifiers used in a hunk via ``git grep``."""

    keywords: frozenset[str] = frozenset()
    identifier_patterns: tuple[re.Pattern, ...] = ()

    def extract_symbols(self, hunk_content: str) -> list[str]:
        text = added_lines(hunk_content)
        seen: list[str] = []
        for pattern in self.identifier_patterns:
            for m in pattern.finditer(text):
                name = m.group(1)
                if name in self.keywords or name in seen:
                    continue
                seen.append(name)
                if len(seen) >= MAX_SYMBOL_CANDIDATES:
                    return seen
        return seen

    @abstractmethod
    def definition_pattern(self, symbol: str) -> str:
        """Extended regex matching a definition of ``symbol``."""

    @abstractmethod
    def signature_and_doc(self, lines: list[str], line_no: int, declaration: str) -> tuple[str, str]:
        """Signature text and docstring for a definition at ``line_no`` (1-based)."""

    async def lookup(self, repo_root: Path, symbol: str) -> Definition | None:
        hits = await git_grep(repo_root, self.definition_pattern(symbol))
        if not hits:
            return None
        path, line_no, content = hits[0]
        try:
            lines = read_lines(repo_root / path, line_no + 10)
        except OSError:
            lines = []
        if 1 <= line_no <= len(lines):
            signature, doc = self.signature_and_doc(lines, line_no, content)
        else:
            signature, doc = content.strip(), ""
        return Definition(symbol=symbol, file=path, line=line_no, signature=signature or content.strip(), docstring=doc)

    async def resolve_symbols(
        self,
        repo_root: str | Path,
        file_path: str,
        hunk_content: str,
        max_definitions: int = DEFAULT_RAG_MAX_DEFINITIONS,
        max_tokens: int = 0,
    ) -> list[Definition]:
        """Definitions for symbols used in the hunk, capped by count and tokens."""
        symbols = self.extract_symbols(hunk_content)
        if not symbols:
            return []
        if max_definitions <= 0:
            max_definitions = DEFAULT_RAG_MAX_DEFINITIONS
        root = Path(repo_root).resolve()
        defs: list[Definition] = []
        for symbol in symbols:
            if len(defs) >= max_definitions:
                break
            definition = await self.lookup(root, symbol)
            if definition is not None:
                defs.append(definition)
        return cap_definitions_by_tokens(defs, max_tokens)


def preceding_comment(lines: list[str], line_no: int, prefix: str) -> str:
    """Up to five comment lines directly above ``line_no`` with ``prefix`` stripped."""
    doc: list[str] = []
    i = line_no - 2
    while i >= 0 and len(doc) < MAX_PRECEDING_COMMENT_LINES:
        stripped = lines[i].strip()
        if not stripped.startswith(prefix):
            break
        doc.insert(0, stripped[len(prefix) :].strip())
        i -= 1
    return "\n".join(doc)


def signature_until(lines: list[str], line_no: int, terminator: str) -> str:
    """Declaration line plus continuation lines up to the one containing ``terminator``."""
    sig = [lines[line_no - 1].strip()]
    if terminator in sig[0]:
        return sig[0]
    for i in range(line_no, min(len(lines), line_no + SIGNATURE_CONTEXT_LINES)):
        sig.append(lines[i])
        if terminator in lines[i]:
            break
    return "\n".join(sig)


_ERE_SPECIAL = re.compile(r"([.^$*+?()\[\]{}|\\])")


def ere_quote(text: str) -> str:
    """Escape POSIX extended-regex metacharacters."""
    return _ERE_SPECIAL.sub(r"\\\1", text)
