"""System and user prompt assembly for hunk review."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from .constants import (
    MAX_RULE_TOKENS,
    MAX_SHADOW_CONTEXT_CHARS,
    OPTIMIZED_PROMPT_FILE_NAME,
    PROMPT_SHADOWS_IN_PROMPT,
)
from .diff import Hunk
from .errors import ConfigError
from .rag import Definition
from .rules import CursorRule, filter_rules
from .tokens import estimate, truncate_to_tokens

logger = logging.getLogger(__name__)

USER_INTENT_HEADER = "## User Intent\n"
PROJECT_CRITERIA_HEADER = "## Project review criteria\n"
NEGATIVE_EXAMPLES_HEADER = "## Negative examples (do not report)\n"
SUPPRESSION_HEADER = "## Do not report issues similar to\n"
SYMBOL_DEFINITIONS_HEADER = "## Symbol definitions (for context)\n\n"
CALLERS_HEADER = "## Callers (for context)\n\n"
CALLEES_HEADER = "## Callees (for context)\n\n"
CODE_UNDER_REVIEW_REPEAT_HEADER = "## Code under review (repeated)\n\n"
TRUNCATED = "[truncated]"

DEFAULT_SYSTEM_PROMPT = """You are a Senior Defect Analyst. Review the provided code diff hunk using step-by-step verification. Your goal is to find bugs, security vulnerabilities, and performance issues. Do not comment on style unless it introduces a defect.

## User Intent
(Not provided.)

## Review steps (follow in order)
1. Logic: Check for logic errors (off-by-one, null/zero checks, control flow). Verify variables and functions exist before flagging: if a variable, function, or type is used in the hunk but its definition is not present in the hunk, assume it is valid. Do not report "undefined", "not declared", or "variable not found" for identifiers whose definition is outside the hunk.
2. Security: Check for injection risks, sensitive data exposure, unsafe use of inputs. Before reporting a security or robustness finding, trace back through the code and check for validation in the same function or block. If validation exists, do not report it: look for path-under-root checks before flagging path traversal, size checks before flagging unbounded reads, and bounds checks before flagging index errors.
3. Performance: Check for expensive operations in loops, unnecessary allocations, blocking calls.
4. Output: Emit only high-confidence, actionable findings. Before outputting: if a finding is a nitpick or style-only and not a defect, discard it. Prefer fewer, high-confidence findings over volume.

Review the added and changed lines. Do not report issues that exist only in the removed lines.

Report only actionable issues: the developer should be able to apply the suggestion or fix the issue without reverting correct behavior. Do not suggest reverting intentional changes, adding code that already exists, or changing behavior that matches documented design.

Respond with a single JSON array of findings. Each finding is an object with:
- file (string, required): path to the file
- line (integer, optional if range is set): line number in the new file
- range (object, optional): { "start": n, "end": n } for a line span
- severity (string, required): one of "error" | "warning" | "info" | "nitpick"
- category (string, required): one of "bug" | "security" | "correctness" | "performance" | "style" | "maintainability" | "best_practice" | "testing" | "documentation" | "design" | "accessibility"
- confidence (number, required): 0.0 to 1.0, how sure you are the issue is real
- message (string, required): review comment
- suggestion (string, optional): suggested fix

Return only the JSON array, no other text. Return [] when there is nothing to report. Example: [{"file":"pkg.go","line":10,"severity":"warning","category":"bug","confidence":0.9,"message":"Loop bound skips the last element"}]"""

NITPICKY_INSTRUCTIONS = """

## Nitpicky mode
Also report convention and polish issues: typos in identifiers, comments and strings; naming that breaks the conventions used elsewhere in the file; inconsistent formatting; misleading comments. Use severity "nitpick" and category "style" or "documentation" for these."""


@dataclass
class Shadow:
    """A dismissed finding's prompt context, replayed as a negative example."""

    finding_id: str
    prompt_context: str

    def to_dict(self) -> dict:
        return {"finding_id": self.finding_id, "prompt_context": self.prompt_context}

    @classmethod
    def from_dict(cls, data: dict) -> "Shadow":
        return cls(finding_id=data.get("finding_id", ""), prompt_context=data.get("prompt_context", ""))


async def load_system_prompt(state_dir: str | Path | None) -> str:
    """The optimized system prompt from the state directory, or the default.

    Raises:
        ConfigError: If the optimized prompt exists but cannot be read.
    """
    if not state_dir:
        return DEFAULT_SYSTEM_PROMPT
    path = Path(state_dir) / OPTIMIZED_PROMPT_FILE_NAME
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        return DEFAULT_SYSTEM_PROMPT
    except OSError as e:
        raise ConfigError(f"read optimized prompt {path}: {e}") from e
    logger.info(f"Using optimized system prompt from {path}")
    return content.strip()


def inject_user_intent(system_prompt: str, branch: str, commit_msg: str) -> str:
    """Replace the body of the ``## User Intent`` section.

    Sections that follow are preserved. A prompt without the section is
    returned unchanged.
    """
    idx = system_prompt.find(USER_INTENT_HEADER)
    if idx == -1:
        return system_prompt
    lines = []
    if branch:
        lines.append(f"Branch: {branch}")
    if commit_msg:
        lines.append(f"Commit: {commit_msg}")
    body = "\n".join(lines).strip() or "(Not provided.)"
    body_start = idx + len(USER_INTENT_HEADER)
    next_section = system_prompt.find("\n## ", body_start)
    if next_section == -1:
        return system_prompt[:idx] + USER_INTENT_HEADER + body
    # Keep one blank line before the next heading
    return system_prompt[:idx] + USER_INTENT_HEADER + body + "\n" + system_prompt[next_section:]


def append_prompt_shadows(system_prompt: str, shadows: Sequence[Shadow]) -> str:
    """Append the most recent dismissed contexts as negative examples."""
    if not shadows:
        return system_prompt
    recent = list(shadows)[-PROMPT_SHADOWS_IN_PROMPT:]
    parts = [
        system_prompt,
        "\n\n",
        NEGATIVE_EXAMPLES_HEADER,
        "The user dismissed findings on the following code. Do not report similar issues:\n",
    ]
    for shadow in recent:
        ctx = shadow.prompt_context
        if len(ctx) > MAX_SHADOW_CONTEXT_CHARS:
            ctx = ctx[:MAX_SHADOW_CONTEXT_CHARS] + "\n" + TRUNCATED
        parts.append(f"\n```\n{ctx}\n```\n")
    return "".join(parts).rstrip("\n")


def append_nitpicky(system_prompt: str) -> str:
    return system_prompt + NITPICKY_INSTRUCTIONS


def append_cursor_rules(
    system_prompt: str, rules: Sequence[CursorRule], file_path: str, max_tokens: int = MAX_RULE_TOKENS
) -> str:
    """Append the content of rules that apply to ``file_path``, token-capped."""
    matched = [r for r in filter_rules(list(rules), file_path) if r.content]
    if not matched:
        return system_prompt
    combined = "\n\n".join(r.content for r in matched)
    combined = truncate_to_tokens(combined, max_tokens, "\n\n" + TRUNCATED)
    return f"{system_prompt}\n\n{PROJECT_CRITERIA_HEADER}{combined}"


def _suppression_block(examples: Sequence[str]) -> str:
    lines = "".join(f"- {ex}\n" for ex in examples)
    return f"\n\n{SUPPRESSION_HEADER}{lines}".rstrip("\n")


def estimate_suppression_block(examples: Sequence[str], n: int) -> int:
    """Token estimate of the block built from the last ``n`` examples."""
    if n <= 0:
        return 0
    return estimate(_suppression_block(list(examples)[-n:]))


def append_suppression_examples(system_prompt: str, examples: Sequence[str]) -> str:
    if not examples:
        return system_prompt
    return system_prompt + _suppression_block(examples)


def user_prompt(hunk: Hunk) -> str:
    return f"File: {hunk.file_path}\n\n{hunk.context or hunk.raw_content}"


def _format_definition(d: Definition) -> str:
    lines = [f"(File: {d.file}, Line: {d.line})"]
    if d.docstring:
        lines.append(d.docstring)
    lines.append(f"```\n{d.signature}\n```")
    return "\n".join(lines)


def format_symbol_definitions(defs: Sequence[Definition], max_tokens: int = 0) -> str:
    """Symbol definitions block; later entries are dropped once the cap is hit."""
    if not defs:
        return ""
    text = SYMBOL_DEFINITIONS_HEADER + "\n\n".join(_format_definition(d) for d in defs)
    return truncate_to_tokens(text, max_tokens, "\n" + TRUNCATED)


def format_call_graph(callers: Sequence[Definition], callees: Sequence[Definition], max_tokens: int = 0) -> str:
    blocks = []
    if callers:
        blocks.append(CALLERS_HEADER + "\n\n".join(_format_definition(d) for d in callers))
    if callees:
        blocks.append(CALLEES_HEADER + "\n\n".join(_format_definition(d) for d in callees))
    if not blocks:
        return ""
    return truncate_to_tokens("\n\n".join(blocks), max_tokens, "\n" + TRUNCATED)


def user_prompt_with_context_blocks(hunk_block: str, context_block: str) -> str:
    """Place symbol context after the hunk and repeat the hunk at the end."""
    if not context_block:
        return hunk_block
    return f"{hunk_block}\n\n{context_block}\n\n{CODE_UNDER_REVIEW_REPEAT_HEADER}{hunk_block}"
