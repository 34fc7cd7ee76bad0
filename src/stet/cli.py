"""CLI entry point for stet."""

import asyncio
import json
import logging
import signal
import sys
import traceback
from collections.abc import Awaitable, Callable
from pathlib import Path

import click

from . import __version__, git
from .config import load_config
from .controller import Controller, RunSummary
from .errors import Cancelled, StetError
from .findings import Finding
from .history import read_records
from .llm import create_client
from .progress import ConsoleSink, EventSink, NDJSONSink, ReviewStats
from .stats import quality, usage, volume
from .trace import Tracer


class AppContext:
    def __init__(self, debug: bool, as_json: bool, trace: bool, overrides: dict):
        self.debug = debug
        self.as_json = as_json
        self.trace = trace
        self.overrides = overrides


def _format_finding(f: Finding) -> str:
    location = f"{f.file}:{f.location}" if f.location else f.file
    line = f"{f.short_id}  {location}  [{f.severity}/{f.category}] {f.message}"
    if f.suggestion:
        line += f"\n         suggestion: {f.suggestion}"
    return line


def _invoke(app: AppContext, body: Callable[[], Awaitable[None]]) -> None:
    """Run ``body`` on a fresh event loop and map failures to exit codes."""
    try:
        asyncio.run(body())
    except (KeyboardInterrupt, Cancelled):
        click.echo("\n\nInterrupted by user", err=True)
        sys.exit(130)
    except click.ClickException:
        raise
    except StetError as e:
        click.echo(f"\nError: {e}", err=True)
        if e.hint:
            click.echo(f"Hint: {e.hint}", err=True)
        if app.debug:
            traceback.print_exc()
        sys.exit(1)
    except Exception as e:
        click.echo(f"\nError: {e}", err=True)
        if app.debug:
            traceback.print_exc()
        sys.exit(1)


async def _setup(app: AppContext, need_client: bool = True) -> Controller:
    root = await git.repo_root(Path.cwd())
    config = load_config(root, app.overrides)
    client = create_client(config.ollama_base_url, config.timeout) if need_client else None
    if app.as_json:
        sink: EventSink = NDJSONSink(sys.stdout)
    else:
        sink = ConsoleSink(ReviewStats(), sys.stderr)
    tracer = Tracer(sys.stderr) if app.trace else None
    cancel = asyncio.Event()
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        pass
    controller = Controller(root, config, client=client, sink=sink, tracer=tracer, cancel=cancel)
    return controller


def _report_run(app: AppContext, summary: RunSummary) -> None:
    if app.as_json:
        return
    if summary.up_to_date:
        click.echo("Nothing new to review.")
        return
    click.echo(f"Reviewed {summary.to_review} hunk(s), {summary.approved} already approved.")
    if summary.auto_dismissed:
        click.echo(f"{len(summary.auto_dismissed)} earlier finding(s) look addressed and were dismissed.")
    if not summary.findings:
        click.echo("No findings.")
        return
    click.echo(f"\n{len(summary.findings)} finding(s):")
    for f in summary.findings:
        click.echo(_format_finding(f))


@click.group()
@click.option("--model", default=None, help="Ollama model to review with")
@click.option(
    "--strictness",
    type=click.Choice(["strict", "default", "lenient", "strict+", "default+", "lenient+"]),
    default=None,
    help="Confidence preset; a '+' suffix disables the false-positive phrase filter",
)
@click.option("--nitpicky/--no-nitpicky", default=None, help="Report style and convention issues too")
@click.option("--context-limit", type=click.IntRange(min=0), default=None, help="Model context window in tokens")
@click.option("--critic/--no-critic", "critic_enabled", default=None, help="Verify findings with a second model pass")
@click.option("--critic-model", default=None, help="Model used by the critic (default: the review model)")
@click.option("--json", "as_json", is_flag=True, help="Write NDJSON events to stdout")
@click.option("--trace", is_flag=True, help="Trace partition and per-hunk decisions to stderr")
@click.option("--debug", is_flag=True, help="Enable debug logging and full stack traces")
@click.version_option(version=__version__, prog_name="stet")
@click.pass_context
def main(
    ctx: click.Context,
    model: str | None,
    strictness: str | None,
    nitpicky: bool | None,
    context_limit: int | None,
    critic_enabled: bool | None,
    critic_model: str | None,
    as_json: bool,
    trace: bool,
    debug: bool,
) -> None:
    """stet - review git diffs hunk by hunk with a local model.

    \b
    - start:  pick a baseline and review everything since it
    - run:    review only what changed since the last run
    - finish: record the session as a git note and clean up
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    overrides = {
        "model": model,
        "strictness": strictness,
        "nitpicky": nitpicky,
        "context_limit": context_limit,
        "critic_enabled": critic_enabled,
        "critic_model": critic_model,
    }
    ctx.obj = AppContext(debug=debug, as_json=as_json, trace=trace, overrides=overrides)


@main.command()
@click.argument("ref", default="HEAD~1")
@click.option("--allow-dirty", is_flag=True, help="Proceed with uncommitted changes (only committed changes are reviewed)")
@click.option("--dry-run", is_flag=True, help="Skip the model and emit placeholder findings")
@click.pass_obj
def start(app: AppContext, ref: str, allow_dirty: bool, dry_run: bool) -> None:
    """Start a review session with REF as the baseline (default: HEAD~1)."""

    async def body() -> None:
        controller = await _setup(app, need_client=not dry_run)
        summary = await controller.start(ref, allow_dirty=allow_dirty, dry_run=dry_run)
        _report_run(app, summary)

    _invoke(app, body)


@main.command()
@click.option("--dry-run", is_flag=True, help="Skip the model and emit placeholder findings")
@click.option("--force-full", is_flag=True, help="Review every hunk since the baseline, including dismissed areas")
@click.option("--replace", is_flag=True, help="Replace the session's findings instead of merging")
@click.pass_obj
def run(app: AppContext, dry_run: bool, force_full: bool, replace: bool) -> None:
    """Review commits added since the last run."""

    async def body() -> None:
        controller = await _setup(app, need_client=not dry_run)
        summary = await controller.run(dry_run=dry_run, force_full_review=force_full, replace=replace)
        _report_run(app, summary)

    _invoke(app, body)


@main.command()
@click.pass_obj
def finish(app: AppContext) -> None:
    """Write the session summary as a git note and end the session."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        note = await controller.finish()
        if app.as_json:
            click.echo(json.dumps(note))
        else:
            click.echo(
                f"Finished review of {note['head_sha'][:12]}: "
                f"{note['findings_count']} finding(s), {note['dismissals_count']} dismissed."
            )

    _invoke(app, body)


@main.command()
@click.argument("finding_id")
@click.argument("reason", required=False, default="")
@click.pass_obj
def dismiss(app: AppContext, finding_id: str, reason: str) -> None:
    """Dismiss FINDING_ID (full ID or a prefix of at least 4 characters).

    REASON is one of: false_positive, already_correct, wrong_suggestion, out_of_scope.
    """

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        full_id = await controller.dismiss(finding_id, reason)
        click.echo(f"Dismissed {full_id[:7]}")

    _invoke(app, body)


@main.command()
@click.pass_obj
def status(app: AppContext) -> None:
    """Show the active session."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        report = await controller.status()
        if app.as_json:
            click.echo(json.dumps(report.__dict__))
            return
        click.echo(f"Session:       {report.session_id}")
        click.echo(f"Baseline:      {report.baseline_ref[:12]}")
        click.echo(f"Last reviewed: {report.last_reviewed_at[:12] or '-'}")
        click.echo(f"Worktree:      {report.worktree_path or '-'}")
        click.echo(f"Findings:      {report.active} active, {report.dismissed} dismissed ({report.findings} total)")

    _invoke(app, body)


@main.command("list")
@click.pass_obj
def list_cmd(app: AppContext) -> None:
    """List active findings."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        findings = await controller.list_findings()
        if app.as_json:
            click.echo(json.dumps([f.to_dict() for f in findings]))
            return
        if not findings:
            click.echo("No active findings.")
        for f in findings:
            click.echo(_format_finding(f))

    _invoke(app, body)


@main.group()
def stats() -> None:
    """Summaries over the review history and finish notes."""


@stats.command("quality")
@click.pass_obj
def stats_quality(app: AppContext) -> None:
    """Findings, dismissals and dismissal rate."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        report = quality(await asyncio.to_thread(read_records, controller.state_dir))
        if app.as_json:
            click.echo(json.dumps(report.to_dict()))
            return
        click.echo(f"Records:        {report.records}")
        click.echo(f"Findings:       {report.findings}")
        click.echo(f"Dismissals:     {report.dismissals} ({report.dismissal_rate:.1%})")
        for reason, n in report.dismissals_by_reason.items():
            click.echo(f"  {reason}: {n}")
        if report.findings_by_category:
            click.echo("By category:")
            for category, n in report.findings_by_category.items():
                click.echo(f"  {category}: {n}")

    _invoke(app, body)


@stats.command("usage")
@click.pass_obj
def stats_usage(app: AppContext) -> None:
    """Token and eval-time totals."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        report = usage(await asyncio.to_thread(read_records, controller.state_dir))
        if app.as_json:
            click.echo(json.dumps(report.to_dict()))
            return
        click.echo(f"Runs with usage:   {report.runs_with_usage} of {report.records} records")
        click.echo(f"Prompt tokens:     {report.prompt_tokens}")
        click.echo(f"Completion tokens: {report.completion_tokens}")
        click.echo(f"Eval time:         {ReviewStats.format_time(report.eval_duration_ns / 1e9)}")

    _invoke(app, body)


@stats.command("volume")
@click.option("--since", default="", help="Exclusive start of the range (default: the first commit)")
@click.option("--until", default="HEAD", show_default=True, help="Inclusive end of the range")
@click.pass_obj
def stats_volume(app: AppContext, since: str, until: str) -> None:
    """Reviewed hunks, lines and characters summed from finish notes."""

    async def body() -> None:
        controller = await _setup(app, need_client=False)
        for ref in (since, until):
            if ref:
                await git.rev_parse(controller.repo_root, ref)
        report = await volume(controller.repo_root, since, until)
        if app.as_json:
            click.echo(json.dumps(report.to_dict()))
            return
        totals = report.totals
        click.echo(
            f"Commits with notes: {report.commits_with_note} of {report.commits_in_range}"
            f" ({report.percent_commits_with_note:.1f}%)"
        )
        click.echo(f"Hunks reviewed:     {totals['hunks_reviewed']}")
        click.echo(f"Lines:              +{totals['lines_added']} -{totals['lines_removed']}")
        click.echo(f"Chars:              +{totals['chars_added']} -{totals['chars_deleted']}")
        click.echo(f"Chars reviewed:     {totals['chars_reviewed']}")
        click.echo(f"Findings:           {report.findings} ({report.dismissals} dismissed)")

    _invoke(app, body)


if __name__ == "__main__":
    main()
