"""Run controller: start, run, finish, dismiss and status for a review session."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from . import __version__, git
from .config import Config
from .constants import SUPPRESSION_MAX_EXAMPLES
from .diff import Hunk, ScopeFilter, count_hunk_scope, hunk_line_range, parse_unified_diff
from .errors import DirtyWorktree, SessionExists, StetError, ValidationError
from .findings import Finding, resolve_finding_id, resolve_strictness
from .history import DISMISSAL_REASONS, Dismissal, Record, RunConfig, UserAction, read_records, suppression_examples
from .history import append as append_history
from .llm import GenerateOptions, LLMClient
from .partition import PartitionResult, partition
from .progress import EventSink
from .prompt import append_nitpicky, append_prompt_shadows, inject_user_intent, load_system_prompt
from .rag import ResolverRegistry
from .review import CriticConfig, PipelineConfig, PrepareConfig, PromptBuilder, ReviewPipeline
from .rules import CursorRule, RulesLoader
from .session import PinnedOptions, Session, SessionLock, SessionStore, Usage
from .trace import NULL_TRACER, Tracer

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Outcome of ``start`` or ``run``."""

    head: str = ""
    findings: list[Finding] = field(default_factory=list)
    to_review: int = 0
    approved: int = 0
    auto_dismissed: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    # True when there was nothing new to review
    up_to_date: bool = False


@dataclass
class StatusReport:
    session_id: str
    baseline_ref: str
    last_reviewed_at: str
    worktree_path: str
    findings: int
    active: int
    dismissed: int


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _overlaps(span: tuple[int, int], line_range: tuple[int, int]) -> bool:
    return span[0] <= line_range[1] and span[1] >= line_range[0]


def filter_dismissed_hunks(hunks: list[Hunk], dismissed: list[Finding]) -> list[Hunk]:
    """Drop hunks whose line range overlaps the location of a dismissed finding."""
    if not dismissed:
        return hunks
    kept = []
    for hunk in hunks:
        line_range = hunk_line_range(hunk)
        hit = False
        if line_range is not None:
            for f in dismissed:
                span = f.span()
                if f.file == hunk.file_path and span is not None and _overlaps(span, line_range):
                    hit = True
                    break
        if hit:
            logger.debug(f"Skipping {hunk.file_path} hunk: overlaps a dismissed finding")
            continue
        kept.append(hunk)
    return kept


def addressed_findings(existing: list[Finding], new_ids: set[str], reviewed: list[Hunk], dismissed: set[str]) -> list[Finding]:
    """Prior findings inside a re-reviewed hunk that the model no longer reports."""
    ranges: dict[str, list[tuple[int, int]]] = {}
    for hunk in reviewed:
        line_range = hunk_line_range(hunk)
        if line_range is not None:
            ranges.setdefault(hunk.file_path, []).append(line_range)
    out = []
    for f in existing:
        if f.id in new_ids or f.id in dismissed:
            continue
        line = f.location
        if line and any(start <= line <= end for start, end in ranges.get(f.file, [])):
            out.append(f)
    return out


class Controller:
    """Drives a review session for one repository and state directory.

    The resolver registry and rules loader are created per run and dropped
    when the run ends.
    """

    def __init__(
        self,
        repo_root: Path,
        config: Config,
        client: LLMClient | None = None,
        sink: EventSink | None = None,
        tracer: Tracer | None = None,
        cancel: asyncio.Event | None = None,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.config = config
        self.client = client
        self.sink = sink or EventSink()
        self.tracer = tracer or NULL_TRACER
        self.cancel = cancel or asyncio.Event()
        self.state_dir = config.resolved_state_dir(self.repo_root)
        self.worktree_root = config.resolved_worktree_root(self.repo_root)
        self.store = SessionStore(self.state_dir)

    def _lock(self) -> SessionLock:
        return SessionLock(self.state_dir)

    async def _check_llm(self) -> None:
        if self.client is None:
            raise StetError("no LLM client configured")
        await self.client.check(self.config.model)
        critic_model = self.config.effective_critic_model
        if critic_model and critic_model != self.config.model:
            await self.client.check(critic_model)
        await self._fit_model_context()

    async def _fit_model_context(self) -> None:
        """Cap ``num_ctx`` and ``context_limit`` at the model's context length.

        The caps apply to this run only; pinned session options keep the
        configured values.
        """
        try:
            model_ctx = await self.client.show(self.config.model)
        except StetError as e:
            logger.warning(f"Could not read context length of {self.config.model}: {e}")
            return
        if model_ctx <= 0:
            return
        cfg = self.config
        for name in ("num_ctx", "context_limit"):
            value = getattr(cfg, name)
            if value > model_ctx:
                msg = f"{name} {value} exceeds the context length of {cfg.model} ({model_ctx}); using {model_ctx}"
                logger.warning(msg)
                self.sink.progress(f"Warning: {msg}")
                setattr(cfg, name, model_ctx)

    def _pinned(self) -> PinnedOptions:
        cfg = self.config
        return PinnedOptions(
            strictness=cfg.strictness,
            nitpicky=cfg.nitpicky,
            context_limit=cfg.context_limit,
            num_ctx=cfg.num_ctx,
            rag_symbol_max_definitions=cfg.rag_symbol_max_definitions,
            rag_symbol_max_tokens=cfg.rag_symbol_max_tokens,
        )

    def _apply_pinned(self, options: PinnedOptions) -> None:
        """Later runs of a session reuse the options pinned at start."""
        if not options.strictness:
            return
        cfg = self.config
        cfg.strictness = options.strictness
        cfg.nitpicky = options.nitpicky
        cfg.context_limit = options.context_limit
        cfg.num_ctx = options.num_ctx
        cfg.rag_symbol_max_definitions = options.rag_symbol_max_definitions
        cfg.rag_symbol_max_tokens = options.rag_symbol_max_tokens

    async def _system_base(self, session: Session) -> str:
        system = await load_system_prompt(self.state_dir)
        branch, message = await git.user_intent(self.repo_root)
        system = inject_user_intent(system, branch, message)
        system = append_prompt_shadows(system, session.prompt_shadows)
        if self.config.nitpicky:
            system = append_nitpicky(system)
        return system

    def _rules_by_file(self, hunks: list[Hunk]) -> dict[str, list[CursorRule]]:
        try:
            loader = RulesLoader(self.repo_root)
        except OSError as e:
            logger.debug(f"Cannot load cursor rules: {e}")
            return {}
        return {path: loader.rules_for_file(path) for path in dict.fromkeys(h.file_path for h in hunks)}

    async def _suppression_examples(self) -> list[str]:
        if not self.config.suppression_enabled:
            return []
        records = await asyncio.to_thread(read_records, self.state_dir)
        return suppression_examples(records, self.config.suppression_history_count, SUPPRESSION_MAX_EXAMPLES)

    async def _review(self, session: Session, hunks: list[Hunk], dry_run: bool):
        cfg = self.config
        min_keep, min_maint, apply_fp = resolve_strictness(cfg.strictness)
        system_base = await self._system_base(session)
        rules = await asyncio.to_thread(self._rules_by_file, hunks)
        builder = PromptBuilder(
            PrepareConfig(
                system_base=system_base,
                repo_root=self.repo_root,
                rules_by_file=rules,
                context_limit=cfg.context_limit,
                suppression_examples=await self._suppression_examples(),
                rag_max_definitions=cfg.rag_symbol_max_definitions,
                rag_max_tokens=cfg.rag_symbol_max_tokens,
                call_graph_enabled=cfg.rag_call_graph_enabled,
                resolvers=ResolverRegistry.default(),
            )
        )
        critic_model = cfg.effective_critic_model
        pipeline = ReviewPipeline(
            client=self.client,
            builder=builder,
            config=PipelineConfig(
                model=cfg.model,
                options=GenerateOptions(temperature=cfg.temperature, num_ctx=cfg.num_ctx),
                min_keep=min_keep,
                min_maint=min_maint,
                apply_fp_kill_list=apply_fp,
                nitpicky=cfg.nitpicky,
                critic=CriticConfig(model=critic_model, shares_review_model=critic_model == cfg.model),
                dry_run=dry_run,
                prepare_workers=cfg.prepare_workers,
                prepare_buffer_size=cfg.prepare_buffer_size,
                context_limit=cfg.context_limit,
                warn_threshold=cfg.warn_threshold,
                repo_root=self.repo_root,
            ),
            sink=self.sink,
            tracer=self.tracer,
            cancel=self.cancel,
        )
        self.sink.progress(f"Reviewing {len(hunks)} hunk(s) with {cfg.model}")
        return await pipeline.run(hunks)

    def _run_config(self) -> RunConfig:
        cfg = self.config
        return RunConfig(
            model=cfg.model,
            strictness=cfg.strictness,
            rag_symbol_max_definitions=cfg.rag_symbol_max_definitions,
            rag_symbol_max_tokens=cfg.rag_symbol_max_tokens,
            nitpicky=cfg.nitpicky,
        )

    async def _reconcile(
        self, session: Session, head: str, reviewed: list[Hunk], result, replace: bool, summary: RunSummary
    ) -> None:
        """Fold a pipeline result into the session, recording history before saving."""
        new = result.findings
        new_ids = {f.id for f in new}
        addressed = addressed_findings(session.findings, new_ids, reviewed, set(session.dismissed_ids))
        for f in addressed:
            session.dismiss(f.id)
        summary.auto_dismissed = [f.id for f in addressed]

        if replace:
            session.findings = list(new)
            session.dismissed_ids = []
            session.finding_prompt_context = dict(result.prompt_context)
        else:
            known = {f.id for f in session.findings}
            session.findings.extend(f for f in new if f.id not in known)
            session.finding_prompt_context.update(result.prompt_context)
        session.last_run = result.usage
        session.last_reviewed_at = head

        record = Record(
            diff_ref=head,
            review_output=list(new),
            user_action=UserAction(
                dismissed_ids=[f.id for f in addressed],
                dismissals=[Dismissal(finding_id=f.id, reason="already_correct") for f in addressed],
                replace_findings=replace,
            ),
            run_config=self._run_config(),
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            eval_duration_ns=result.usage.eval_duration_ns,
        )
        try:
            await append_history(self.state_dir, record)
        except OSError as e:
            raise StetError(f"append history: {e}") from e
        await self.store.save(session)

    async def _remove_worktree(self, path: str | Path) -> None:
        if not path or not Path(path).exists():
            return
        try:
            await git.remove_worktree(self.repo_root, path)
        except StetError as e:
            logger.warning(f"Failed to remove worktree {path}: {e}")

    async def start(self, ref: str = "HEAD~1", allow_dirty: bool = False, dry_run: bool = False) -> RunSummary:
        """Establish the baseline, create its worktree and review ``ref..HEAD``.

        Raises:
            SessionLocked: If another run holds the lock.
            SessionExists: If a session is already active.
            DirtyWorktree: If the working tree is dirty and ``allow_dirty`` is False.
            BaselineNotAncestor: If ``ref`` is not an ancestor of HEAD.
            WorktreeExists: If the baseline worktree path is occupied.
        """
        with self._lock():
            existing = await self.store.load()
            if existing.exists:
                raise SessionExists(f"a review session is already active (baseline {existing.baseline_ref[:12]})")
            baseline = await git.rev_parse(self.repo_root, ref)
            head = await git.rev_parse(self.repo_root, "HEAD")
            session = Session.new(baseline)
            session.options = self._pinned()
            summary = RunSummary(head=head)

            if baseline == head:
                session.last_reviewed_at = head
                await self.store.save(session)
                summary.up_to_date = True
                self.sink.done()
                return summary

            if not await git.is_clean(self.repo_root):
                if not allow_dirty:
                    raise DirtyWorktree("working tree has uncommitted changes")
                logger.warning("Working tree has uncommitted changes; reviewing committed changes only")
                self.sink.progress("Warning: working tree has uncommitted changes")

            if not dry_run:
                await self._check_llm()

            worktree = await git.create_worktree(self.repo_root, baseline, self.worktree_root)
            session.worktree_path = str(worktree)
            try:
                parts = await partition(
                    self.repo_root, baseline, head, "", ScopeFilter(self.config.exclude_patterns), self.tracer
                )
                await self._finish_run(session, head, parts, parts.to_review, dry_run, False, summary)
            except BaseException:
                await self._remove_worktree(worktree)
                raise
            return summary

    async def run(self, dry_run: bool = False, force_full_review: bool = False, replace: bool = False) -> RunSummary:
        """Review commits added since the last run.

        Raises:
            SessionLocked: If another run holds the lock.
            NoSession: If ``start`` has not been run.
        """
        with self._lock():
            session = await self.store.load_existing()
            self._apply_pinned(session.options)
            head = await git.rev_parse(self.repo_root, "HEAD")
            summary = RunSummary(head=head)
            last = "" if force_full_review else session.last_reviewed_at
            if head == (last or session.baseline_ref):
                session.last_reviewed_at = head
                await self.store.save(session)
                summary.up_to_date = True
                self.sink.done()
                return summary

            if not dry_run:
                await self._check_llm()

            parts = await partition(
                self.repo_root,
                session.baseline_ref,
                head,
                last,
                ScopeFilter(self.config.exclude_patterns),
                self.tracer,
            )
            to_review = parts.to_review
            if not force_full_review:
                dismissed = set(session.dismissed_ids)
                to_review = filter_dismissed_hunks(to_review, [f for f in session.findings if f.id in dismissed])
            await self._finish_run(session, head, parts, to_review, dry_run, replace, summary)
            return summary

    async def _finish_run(
        self,
        session: Session,
        head: str,
        parts: PartitionResult,
        to_review: list[Hunk],
        dry_run: bool,
        replace: bool,
        summary: RunSummary,
    ) -> None:
        summary.to_review = len(to_review)
        summary.approved = len(parts.approved)
        if not to_review:
            session.last_reviewed_at = head
            await self.store.save(session)
            self.sink.progress("Nothing to review")
            self.sink.done()
            return
        result = await self._review(session, to_review, dry_run)
        await self._reconcile(session, head, to_review, result, replace, summary)
        summary.findings = list(result.findings)
        summary.usage = result.usage
        self.sink.done()

    async def finish(self) -> dict:
        """Write the git note for the session, remove its worktree and delete the session.

        Returns:
            The note body.

        Raises:
            NoSession: If there is no active session.
        """
        with self._lock():
            session = await self.store.load_existing()
            head = session.last_reviewed_at or await git.rev_parse(self.repo_root, "HEAD")
            hunks = ScopeFilter(self.config.exclude_patterns).filter(
                parse_unified_diff(await git.diff(self.repo_root, session.baseline_ref, head))
            )
            finished_at = _now()
            note = {
                "session_id": session.session_id,
                "baseline_sha": session.baseline_ref,
                "head_sha": head,
                "findings_count": len(session.findings),
                "dismissals_count": len(session.dismissed_ids),
                "tool_version": __version__,
                "finished_at": finished_at,
                **count_hunk_scope(hunks).to_dict(),
            }
            usage = session.last_run
            if usage.prompt_tokens or usage.completion_tokens or usage.eval_duration_ns:
                note["model"] = self.config.model
                note["prompt_tokens"] = usage.prompt_tokens
                note["completion_tokens"] = usage.completion_tokens
                note["eval_duration_ns"] = usage.eval_duration_ns
            await git.add_note(self.repo_root, head, json.dumps(note))

            record = Record(
                diff_ref=head,
                review_output=list(session.findings),
                user_action=UserAction(dismissed_ids=list(session.dismissed_ids), finished_at=finished_at),
                run_config=self._run_config(),
            )
            try:
                await append_history(self.state_dir, record)
            except OSError as e:
                raise StetError(f"append history: {e}") from e

            worktree = session.worktree_path or await git.worktree_path(
                self.repo_root, session.baseline_ref, self.worktree_root
            )
            await self._remove_worktree(worktree)
            self.store.delete()
            return note

    async def dismiss(self, id_or_prefix: str, reason: str = "") -> str:
        """Dismiss a finding by full ID or prefix and record why.

        Returns:
            The full ID of the dismissed finding.

        Raises:
            IDResolutionError: If the prefix is unknown or ambiguous.
            ValidationError: If ``reason`` is not a known dismissal reason.
        """
        if reason and reason not in DISMISSAL_REASONS:
            raise ValidationError(f"invalid reason {reason!r}: use one of {', '.join(DISMISSAL_REASONS)}")
        with self._lock():
            session = await self.store.load_existing()
            finding_id = resolve_finding_id(id_or_prefix, [f.id for f in session.findings])
            if not session.dismiss(finding_id):
                logger.info(f"Finding {finding_id[:7]} was already dismissed")
                return finding_id
            context = session.finding_prompt_context.get(finding_id, "")
            if context:
                session.add_shadow(finding_id, context)
            finding = session.finding_by_id(finding_id)
            record = Record(
                diff_ref=session.last_reviewed_at,
                review_output=[finding] if finding else [],
                user_action=UserAction(
                    dismissed_ids=[finding_id],
                    dismissals=[Dismissal(finding_id=finding_id, reason=reason, prompt_context=context)],
                ),
            )
            try:
                await append_history(self.state_dir, record)
            except OSError as e:
                raise StetError(f"append history: {e}") from e
            await self.store.save(session)
            return finding_id

    async def status(self) -> StatusReport:
        session = await self.store.load_existing()
        return StatusReport(
            session_id=session.session_id,
            baseline_ref=session.baseline_ref,
            last_reviewed_at=session.last_reviewed_at,
            worktree_path=session.worktree_path,
            findings=len(session.findings),
            active=len(session.active_findings()),
            dismissed=len(session.dismissed_ids),
        )

    async def list_findings(self) -> list[Finding]:
        session = await self.store.load_existing()
        return session.active_findings()
