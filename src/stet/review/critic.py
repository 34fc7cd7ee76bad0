"""Second-pass critic that keeps only findings a model confirms."""

import asyncio
import json
import logging
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass

from ..constants import CRITIC_MAX_HUNK_CHARS, KEEP_ALIVE_AFTER_RUN
from ..findings import Finding
from ..llm import GenerateOptions, GenerateResult, LLMClient
from .parse import strip_code_fence

logger = logging.getLogger(__name__)

CRITIC_SYSTEM_PROMPT = "You are a code review critic. Output only valid JSON."


@dataclass
class CriticConfig:
    """Critic settings for a run. ``model`` empty means the critic is disabled."""

    model: str = ""
    # Same model as the review; the critic then shares the inference lock and keep-alive
    shares_review_model: bool = False

    @property
    def enabled(self) -> bool:
        return bool(self.model)


def _location(f: Finding) -> str:
    if f.range is not None and f.range.start != f.range.end:
        return f"lines {f.range.start}-{f.range.end}"
    return f"line {f.location}"


def build_critic_prompt(finding: Finding, hunk_content: str) -> str:
    if len(hunk_content) > CRITIC_MAX_HUNK_CHARS:
        hunk_content = hunk_content[:CRITIC_MAX_HUNK_CHARS] + "\n[truncated]"
    lines = [
        "Finding:",
        f"- file: {finding.file}",
        f"- location: {_location(finding)}",
        f"- severity: {finding.severity}",
        f"- category: {finding.category}",
        f"- message: {finding.message}",
    ]
    if finding.suggestion:
        lines.append(f"- suggestion: {finding.suggestion}")
    return (
        "\n".join(lines)
        + f"\n\nCode under review:\n```\n{hunk_content}\n```\n\n"
        + 'Is this finding correct and actionable for this code? Answer with a JSON object only: '
        + '{"verdict": "yes" or "no", "reason": "brief reason"}. No other text.'
    )


def parse_verdict(text: str) -> bool | None:
    """True for "yes", False for any other verdict, None when unparseable."""
    try:
        data = json.loads(strip_code_fence(text))
    except ValueError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("verdict"), str):
        return None
    return data["verdict"].strip().lower() == "yes"


class Critic:
    """Asks a model to confirm each finding; rejected or unparseable ones are dropped."""

    def __init__(
        self,
        client: LLMClient,
        config: CriticConfig,
        base_options: GenerateOptions,
        lock: asyncio.Lock | None = None,
    ):
        self.client = client
        self.config = config
        self.base_options = base_options
        self._lock = lock if config.shares_review_model else None

    def _guard(self) -> AbstractAsyncContextManager:
        return self._lock if self._lock is not None else nullcontext()

    async def _ask(self, prompt: str, keep_alive: int) -> GenerateResult:
        options = GenerateOptions(
            temperature=self.base_options.temperature,
            num_ctx=self.base_options.num_ctx,
            keep_alive=keep_alive,
            format="json",
        )
        async with self._guard():
            return await self.client.generate(self.config.model, CRITIC_SYSTEM_PROMPT, prompt, options)

    async def verify(self, finding: Finding, hunk_content: str, keep_alive: int) -> bool:
        """Whether to keep ``finding``. Transport errors propagate."""
        if not self.config.shares_review_model:
            keep_alive = KEEP_ALIVE_AFTER_RUN
        prompt = build_critic_prompt(finding, hunk_content)
        for attempt in range(2):
            result = await self._ask(prompt, keep_alive)
            verdict = parse_verdict(result.response)
            if verdict is not None:
                if not verdict:
                    logger.debug(f"Critic rejected {finding.short_id}: {finding.message}")
                return verdict
            logger.debug(f"Critic response unparseable (attempt {attempt + 1}): {result.response[:200]!r}")
        return False

    async def filter(self, findings: list[Finding], hunk_content: str, keep_alive: int) -> list[Finding]:
        kept = []
        for f in findings:
            if await self.verify(f, hunk_content, keep_alive):
                kept.append(f)
        return kept
