"""Per-hunk prompt preparation: rules, expansion, suppression and symbol context."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import (
    DEFAULT_RAG_MAX_DEFINITIONS,
    DEFAULT_RESPONSE_RESERVE,
    MAX_EXPAND_TOKENS,
    MAX_RULE_TOKENS,
    SUPPRESSION_MAX_EXAMPLES,
    SUPPRESSION_MAX_TOKENS,
)
from ..diff import Hunk
from ..errors import GitError
from ..expand import DIFF_HUNK_HEADER, expand_hunk
from ..minify import minify_hunk, should_minify
from ..prompt import (
    append_cursor_rules,
    append_suppression_examples,
    estimate_suppression_block,
    format_call_graph,
    format_symbol_definitions,
    user_prompt,
    user_prompt_with_context_blocks,
)
from ..rag import ResolverRegistry
from ..rules import CursorRule
from ..tokens import effective_rag_token_cap, estimate

logger = logging.getLogger(__name__)


@dataclass
class PrepareConfig:
    """Run-wide inputs to prompt preparation."""

    system_base: str
    repo_root: Path | None = None
    # Rules preloaded per file path before the pipeline starts
    rules_by_file: dict[str, list[CursorRule]] = field(default_factory=dict)
    context_limit: int = 0
    response_reserve: int = DEFAULT_RESPONSE_RESERVE
    suppression_examples: list[str] = field(default_factory=list)
    rag_max_definitions: int = DEFAULT_RAG_MAX_DEFINITIONS
    rag_max_tokens: int = 0
    call_graph_enabled: bool = False
    call_graph_max_tokens: int = 0
    resolvers: ResolverRegistry | None = None


@dataclass
class Prepared:
    """A hunk's prompts, or the error that prevented building them."""

    index: int
    hunk: Hunk
    system: str = ""
    user: str = ""
    error: BaseException | None = None


def expand_budget(context_limit: int) -> int:
    """Token cap for the enclosing-function block; 0 means unlimited."""
    if context_limit <= 0:
        return 0
    return min(context_limit // 4, MAX_EXPAND_TOKENS)


def _minify_context(hunk: Hunk) -> Hunk:
    minified = minify_hunk(hunk.raw_content)
    marker = f"{DIFF_HUNK_HEADER}\n\n"
    ctx = hunk.context
    if marker in ctx:
        head = ctx[: ctx.rindex(marker) + len(marker)]
        return hunk.with_context(head + minified)
    return hunk.with_context(minified)


def fit_suppression_examples(
    examples: Sequence[str], system: str, user: str, context_limit: int, response_reserve: int
) -> list[str]:
    """Newest examples whose block fits the remaining prompt budget."""
    if not examples:
        return []
    candidates = list(examples)[-SUPPRESSION_MAX_EXAMPLES:]
    if context_limit <= 0:
        return candidates
    budget = context_limit - (estimate(system + "\n" + user) + response_reserve)
    budget = min(budget, SUPPRESSION_MAX_TOKENS)
    if budget <= 0:
        return []
    n = len(candidates)
    while n > 0 and estimate_suppression_block(candidates, n) > budget:
        n -= 1
    return candidates[-n:] if n else []


class PromptBuilder:
    """Builds ``(system, user)`` for one hunk at a time.

    Enrichment failures (expansion, symbol lookup) are logged and skipped.
    """

    def __init__(self, config: PrepareConfig):
        self.config = config

    async def _symbol_block(self, hunk: Hunk, base_tokens: int) -> str:
        cfg = self.config
        if cfg.repo_root is None or cfg.resolvers is None or cfg.rag_max_definitions <= 0:
            return ""
        effective = effective_rag_token_cap(cfg.context_limit, base_tokens, cfg.rag_max_tokens, cfg.response_reserve)
        if cfg.context_limit > 0 and effective <= 0:
            return ""
        blocks = []
        resolver = cfg.resolvers.symbol_resolver(hunk.file_path)
        if resolver is not None:
            try:
                defs = await resolver.resolve_symbols(
                    cfg.repo_root, hunk.file_path, hunk.raw_content, cfg.rag_max_definitions, effective
                )
            except (GitError, OSError) as e:
                logger.debug(f"Symbol lookup failed for {hunk.file_path}: {e}")
                defs = []
            block = format_symbol_definitions(defs, effective)
            if block:
                blocks.append(block)
        if cfg.call_graph_enabled:
            graph_resolver = cfg.resolvers.call_graph_resolver(hunk.file_path)
            if graph_resolver is not None:
                cap = cfg.call_graph_max_tokens or effective // 2
                graph = await graph_resolver.resolve_call_graph(cfg.repo_root, hunk.file_path, hunk.raw_content)
                if graph is not None:
                    block = format_call_graph(graph.callers, graph.callees, cap)
                    if block:
                        blocks.append(block)
        return "\n\n".join(blocks)

    async def build(self, hunk: Hunk) -> tuple[str, str, Hunk]:
        """Return ``(system, user, hunk)`` where ``hunk`` carries the expanded context."""
        cfg = self.config
        system = append_cursor_rules(
            cfg.system_base, cfg.rules_by_file.get(hunk.file_path, []), hunk.file_path, MAX_RULE_TOKENS
        )

        if cfg.repo_root is not None:
            hunk = await asyncio.to_thread(expand_hunk, cfg.repo_root, hunk, expand_budget(cfg.context_limit))
        if should_minify(hunk.file_path):
            hunk = _minify_context(hunk)

        user = user_prompt(hunk)
        examples = fit_suppression_examples(
            cfg.suppression_examples, system, user, cfg.context_limit, cfg.response_reserve
        )
        system = append_suppression_examples(system, examples)

        base_tokens = estimate(system + "\n" + user)
        context_block = await self._symbol_block(hunk, base_tokens)
        user = user_prompt_with_context_blocks(user, context_block)
        return system, user, hunk

    async def prepare(self, index: int, hunk: Hunk) -> Prepared:
        """Like :meth:`build` but captures any failure in the result."""
        try:
            system, user, expanded = await self.build(hunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Preparing {hunk.file_path} failed: {e}")
            return Prepared(index=index, hunk=hunk, error=e)
        return Prepared(index=index, hunk=expanded, system=system, user=user)
