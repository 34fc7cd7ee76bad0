"""Callers and callees of the Go function enclosing a hunk."""

import asyncio
import logging
import re
from pathlib import Path

from ..constants import DEFAULT_CALL_GRAPH_CALLEES, DEFAULT_CALL_GRAPH_CALLERS
from ..diff import Hunk, hunk_line_range
from ..errors import GitError
from ..expand import find_enclosing_function, function_source
from .base import CallGraphResult, Definition, ere_quote, git_grep
from .go import GO_KEYWORDS, GoResolver

logger = logging.getLogger(__name__)

MAX_CALL_SITE_CHARS = 200
_CALLED_NAME = re.compile(r"\b([A-Za-z_][A-Za-z0-9_]*)\s*\(")
GO_BUILTINS = frozenset(
    {"append", "cap", "close", "complex", "copy", "delete", "imag", "len", "make",
     "new", "panic", "print", "println", "real", "recover", "min", "max", "clear"}
)


def _caller_pattern(func_name: str) -> str:
    # "(T).Method" is matched as a selector call ".Method("
    if func_name.startswith("(") and ")." in func_name:
        method = func_name.split(").", 1)[1]
        return rf"\.{ere_quote(method)}[[:space:]]*\("
    return rf"{ere_quote(func_name)}[[:space:]]*\("


def _called_names(body: str, own_name: str) -> list[str]:
    names: list[str] = []
    for m in _CALLED_NAME.finditer(body):
        name = m.group(1)
        if name in GO_KEYWORDS or name in GO_BUILTINS or name == own_name or name in names:
            continue
        names.append(name)
    return names


class GoCallGraphResolver:
    def __init__(self):
        self._symbols = GoResolver()

    async def find_callers(self, repo_root: Path, func_name: str, limit: int) -> list[Definition]:
        callers = []
        for path, line_no, content in await git_grep(repo_root, _caller_pattern(func_name)):
            if len(callers) >= limit:
                break
            content = content.strip()
            if content.startswith("func "):
                continue
            if len(content) > MAX_CALL_SITE_CHARS:
                content = content[:MAX_CALL_SITE_CHARS] + "..."
            callers.append(Definition(symbol=func_name, file=path, line=line_no, signature=content))
        return callers

    async def find_callees(self, repo_root: Path, body: str, own_name: str, limit: int) -> list[Definition]:
        callees = []
        for name in _called_names(body, own_name.rsplit(".", 1)[-1]):
            if len(callees) >= limit:
                break
            definition = await self._symbols.lookup(repo_root, name)
            if definition is not None:
                definition.docstring = ""
                callees.append(definition)
        return callees

    async def resolve_call_graph(
        self,
        repo_root: str | Path,
        file_path: str,
        hunk_content: str,
        callers_max: int = DEFAULT_CALL_GRAPH_CALLERS,
        callees_max: int = DEFAULT_CALL_GRAPH_CALLEES,
    ) -> CallGraphResult | None:
        """Call graph around the hunk's enclosing function; None when not applicable."""
        line_range = hunk_line_range(Hunk(file_path, hunk_content))
        if line_range is None:
            return None
        found = await asyncio.to_thread(find_enclosing_function, repo_root, file_path, *line_range)
        if found is None:
            return None
        span, source = found
        root = Path(repo_root).resolve()
        try:
            callers = await self.find_callers(root, span.name, callers_max or DEFAULT_CALL_GRAPH_CALLERS)
            callees = await self.find_callees(
                root, function_source(source, span), span.name, callees_max or DEFAULT_CALL_GRAPH_CALLEES
            )
        except GitError as e:
            logger.debug(f"Call graph lookup failed for {file_path}: {e}")
            return None
        if not callers and not callees:
            return None
        return CallGraphResult(callers=callers, callees=callees)
