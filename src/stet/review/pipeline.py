"""Bounded two-stage review pipeline.

Preparer tasks build prompts concurrently and publish them on a bounded
ready queue. A single inference worker issues model calls one at a time.
The main task dispatches prepared hunks to the worker strictly in input
order and processes each result (parse, filter, critic) while the model is
already working on the next request.
"""

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path

from ..constants import (
    DEFAULT_PREPARE_BUFFER_SIZE,
    DEFAULT_PREPARE_WORKERS,
    DEFAULT_RESPONSE_RESERVE,
    KEEP_ALIVE_AFTER_RUN,
    KEEP_ALIVE_DURING_RUN,
)
from ..diff import Hunk, hunk_line_range
from ..errors import Cancelled, ParseError, ReviewError
from ..findings import (
    DEFAULT_MIN_CONFIDENCE_KEEP,
    DEFAULT_MIN_CONFIDENCE_MAINT,
    FilterCounts,
    Finding,
    filter_abstention,
    filter_by_hunk_lines,
    filter_fp_kill_list,
    set_cursor_uris,
)
from ..hunkid import semantic_hunk_id, strict_hunk_id
from ..llm import GenerateOptions, GenerateResult, LLMClient
from ..progress import EventSink
from ..prompt import user_prompt
from ..session import Usage, truncate_prompt_context
from ..tokens import estimate, warn_if_over
from ..trace import NULL_TRACER, Tracer
from .critic import Critic, CriticConfig
from .parse import assign_finding_ids, parse_findings_response
from .prepare import Prepared, PromptBuilder

logger = logging.getLogger(__name__)

DRY_RUN_MESSAGE = "Dry-run placeholder (CI)"

# Marks the end of the ready queue once every preparer has exited
_READY_CLOSED = object()


@dataclass
class PipelineConfig:
    model: str
    options: GenerateOptions = field(default_factory=GenerateOptions)
    min_keep: float = DEFAULT_MIN_CONFIDENCE_KEEP
    min_maint: float = DEFAULT_MIN_CONFIDENCE_MAINT
    apply_fp_kill_list: bool = True
    nitpicky: bool = False
    critic: CriticConfig = field(default_factory=CriticConfig)
    dry_run: bool = False
    prepare_workers: int = DEFAULT_PREPARE_WORKERS
    prepare_buffer_size: int = DEFAULT_PREPARE_BUFFER_SIZE
    context_limit: int = 0
    warn_threshold: float = 0.0
    response_reserve: int = DEFAULT_RESPONSE_RESERVE
    # Used to attach file:// URIs to findings
    repo_root: Path | None = None


@dataclass
class PipelineResult:
    findings: list[Finding] = field(default_factory=list)
    prompt_context: dict[str, str] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)


@dataclass
class Generated:
    index: int
    result: GenerateResult | None = None
    error: BaseException | None = None


def keep_alive_for(index: int, total: int) -> int:
    """Keep the model loaded between hunks and unload it after the last one."""
    return KEEP_ALIVE_AFTER_RUN if index == total - 1 else KEEP_ALIVE_DURING_RUN


def dry_run_finding(hunk: Hunk) -> Finding:
    line_range = hunk_line_range(hunk)
    f = Finding(
        file=hunk.file_path,
        line=line_range[0] if line_range else 1,
        severity="info",
        category="maintainability",
        confidence=1.0,
        message=DRY_RUN_MESSAGE,
    )
    f.id = f.compute_id()
    return f


class ReviewPipeline:
    """Reviews an ordered list of hunks and returns findings in the same order."""

    def __init__(
        self,
        client: LLMClient | None,
        builder: PromptBuilder,
        config: PipelineConfig,
        sink: EventSink | None = None,
        tracer: Tracer | None = None,
        cancel: asyncio.Event | None = None,
    ):
        self.client = client
        self.builder = builder
        self.config = config
        self.sink = sink or EventSink()
        self.tracer = tracer or NULL_TRACER
        self.cancel = cancel or asyncio.Event()
        self._lock = asyncio.Lock()
        self._critic: Critic | None = None
        if client is not None and config.critic.enabled and not config.dry_run:
            self._critic = Critic(client, config.critic, config.options, self._lock)

    def _options(self, keep_alive: int) -> GenerateOptions:
        base = self.config.options
        return GenerateOptions(
            temperature=base.temperature, num_ctx=base.num_ctx, keep_alive=keep_alive, format=base.format
        )

    def _warn_budget(self, hunks: Sequence[Hunk]) -> None:
        cfg = self.config
        if cfg.context_limit <= 0 or cfg.warn_threshold <= 0:
            return
        system = self.builder.config.system_base
        worst = max(estimate(system + "\n" + user_prompt(h)) for h in hunks)
        msg = warn_if_over(worst, cfg.context_limit, cfg.warn_threshold, cfg.response_reserve)
        if msg:
            logger.warning(msg)
            self.sink.progress(f"Warning: {msg}")

    async def run(self, hunks: Sequence[Hunk]) -> PipelineResult:
        """Review ``hunks``.

        Raises:
            ReviewError: If preparing, generating or processing a hunk fails.
            Cancelled: If the cancel event is set before the run completes.
        """
        hunks = list(hunks)
        if not hunks:
            return PipelineResult()
        if self.cancel.is_set():
            raise Cancelled("review cancelled")
        self._warn_budget(hunks)
        if self.config.dry_run:
            return self._dry_run(hunks)
        if self.client is None:
            raise ValueError("an LLM client is required unless dry_run is set")
        return await self._run_pipeline(hunks)

    def _dry_run(self, hunks: list[Hunk]) -> PipelineResult:
        result = PipelineResult()
        for i, hunk in enumerate(hunks):
            f = dry_run_finding(hunk)
            result.findings.append(f)
            result.prompt_context[f.id] = truncate_prompt_context(hunk.raw_content)
            self.sink.finding(f.to_dict())
            self.sink.hunk_status(hunk.file_path, "Reviewed", i + 1, len(hunks))
        return result

    async def _preparer(self, hunks: list[Hunk], indices: asyncio.Queue, ready: asyncio.Queue) -> None:
        while not self.cancel.is_set():
            try:
                index = indices.get_nowait()
            except asyncio.QueueEmpty:
                return
            prepared = await self.builder.prepare(index, hunks[index])
            await ready.put(prepared)

    async def _close_ready(self, preparers: list[asyncio.Task], ready: asyncio.Queue) -> None:
        try:
            await asyncio.gather(*preparers)
        finally:
            await ready.put(_READY_CLOSED)

    async def _inference_worker(self, total: int, inbox: asyncio.Queue, results: asyncio.Queue) -> None:
        while True:
            item: Prepared = await inbox.get()
            try:
                async with self._lock:
                    result = await self.client.generate(
                        self.config.model, item.system, item.user, self._options(keep_alive_for(item.index, total))
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await results.put(Generated(index=item.index, error=e))
                return
            await results.put(Generated(index=item.index, result=result))

    async def _until_cancelled(self, awaitable: Awaitable, cancel_wait: asyncio.Task):
        """Await ``awaitable`` unless the cancel event fires first."""
        task = asyncio.ensure_future(awaitable)
        done, _ = await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise Cancelled("review cancelled")

    async def _run_pipeline(self, hunks: list[Hunk]) -> PipelineResult:
        cfg = self.config
        total = len(hunks)
        indices: asyncio.Queue = asyncio.Queue()
        for i in range(total):
            indices.put_nowait(i)
        ready: asyncio.Queue = asyncio.Queue(maxsize=2 * max(1, cfg.prepare_buffer_size))
        inbox: asyncio.Queue = asyncio.Queue(maxsize=1)
        results: asyncio.Queue = asyncio.Queue()

        workers = max(1, min(cfg.prepare_workers, total))
        preparers = [asyncio.create_task(self._preparer(hunks, indices, ready)) for _ in range(workers)]
        closer = asyncio.create_task(self._close_ready(preparers, ready))
        worker = asyncio.create_task(self._inference_worker(total, inbox, results))
        cancel_wait = asyncio.create_task(self.cancel.wait())
        background = [*preparers, closer, worker, cancel_wait]

        slots: list[Prepared | None] = [None] * total
        in_flight: dict[int, Prepared] = {}
        output = PipelineResult()
        processed = 0
        next_send = 0
        ready_open = True
        ready_get: asyncio.Task | None = None
        result_get: asyncio.Task | None = None

        try:
            while processed < total:
                if self.cancel.is_set():
                    raise Cancelled("review cancelled")
                # Dispatch in order: one request generating plus one queued
                while next_send < total and slots[next_send] is not None and len(in_flight) < 2:
                    item = slots[next_send]
                    slots[next_send] = None
                    if item.error is not None:
                        raise ReviewError(item.hunk.file_path) from item.error
                    in_flight[item.index] = item
                    next_send += 1
                    await self._until_cancelled(inbox.put(item), cancel_wait)
                    self.sink.hunk_status(item.hunk.file_path, "Reviewing", processed, total)

                # Only pull prepared hunks while the next one in order is missing;
                # otherwise the bounded ready queue holds the preparers back
                needs_next = next_send < total and slots[next_send] is None
                if ready_open and ready_get is None and needs_next:
                    ready_get = asyncio.create_task(ready.get())
                    background.append(ready_get)
                if in_flight and result_get is None:
                    result_get = asyncio.create_task(results.get())
                    background.append(result_get)
                waiting = {t for t in (ready_get, result_get) if t is not None}
                if not waiting:
                    raise RuntimeError(f"review pipeline stalled at hunk {next_send}")

                done, _ = await asyncio.wait(waiting | {cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                if cancel_wait in done:
                    raise Cancelled("review cancelled")

                if ready_get is not None and ready_get in done:
                    item = ready_get.result()
                    ready_get = None
                    if item is _READY_CLOSED:
                        ready_open = False
                    else:
                        slots[item.index] = item

                if result_get is not None and result_get in done:
                    generated: Generated = result_get.result()
                    result_get = None
                    prepared = in_flight.pop(generated.index)
                    path = prepared.hunk.file_path
                    if generated.error is not None:
                        raise ReviewError(path) from generated.error
                    try:
                        findings, usage = await self._until_cancelled(
                            self._process(prepared, generated.result, total), cancel_wait
                        )
                    except Cancelled:
                        raise
                    except Exception as e:
                        raise ReviewError(path) from e
                    processed += 1
                    output.usage.add(usage)
                    for f in findings:
                        output.findings.append(f)
                        output.prompt_context[f.id] = truncate_prompt_context(prepared.hunk.raw_content)
                        self.sink.finding(f.to_dict())
                    self.sink.hunk_status(path, "Reviewed", processed, total)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
        return output

    async def _regenerate(self, prepared: Prepared, total: int) -> GenerateResult:
        async with self._lock:
            return await self.client.generate(
                self.config.model,
                prepared.system,
                prepared.user,
                self._options(keep_alive_for(prepared.index, total)),
            )

    async def _process(self, prepared: Prepared, result: GenerateResult, total: int) -> tuple[list[Finding], Usage]:
        cfg = self.config
        hunk = prepared.hunk
        try:
            parsed = parse_findings_response(result.response)
        except ParseError as e:
            logger.info(f"Unparseable response for {hunk.file_path}, retrying once: {e}")
            result = await self._regenerate(prepared, total)
            parsed = parse_findings_response(result.response)
        usage = Usage(
            prompt_tokens=result.prompt_eval_count,
            completion_tokens=result.eval_count,
            eval_duration_ns=result.eval_duration,
        )

        findings = assign_finding_ids(parsed, hunk)
        counts = FilterCounts(parsed=len(findings))
        findings = filter_abstention(findings, cfg.min_keep, cfg.min_maint)
        counts.after_abstention = len(findings)
        if cfg.apply_fp_kill_list and not cfg.nitpicky:
            findings = filter_fp_kill_list(findings)
        counts.after_fp = len(findings)
        line_range = hunk_line_range(hunk)
        if line_range is not None:
            findings = filter_by_hunk_lines(findings, hunk.file_path, *line_range)
        counts.after_evidence = len(findings)
        if self._critic is not None and findings:
            findings = await self._critic.filter(findings, hunk.raw_content, keep_alive_for(prepared.index, total))
        counts.after_critic = len(findings)
        if cfg.repo_root is not None:
            findings = set_cursor_uris(cfg.repo_root, findings)

        self._trace_hunk(hunk, counts)
        return findings, usage

    def _trace_hunk(self, hunk: Hunk, counts: FilterCounts) -> None:
        if not self.tracer.enabled:
            return
        self.tracer.section(f"Hunk {hunk.file_path}")
        self.tracer.printf(f"strict_id={strict_hunk_id(hunk.file_path, hunk.raw_content)}")
        self.tracer.printf(f"semantic_id={semantic_hunk_id(hunk.file_path, hunk.raw_content)}")
        self.tracer.printf(
            f"findings parsed={counts.parsed} after_abstention={counts.after_abstention} "
            f"after_fp={counts.after_fp} after_evidence={counts.after_evidence} after_critic={counts.after_critic}"
        )
