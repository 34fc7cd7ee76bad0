"""Split the current diff into hunks to review and hunks already reviewed."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import git
from .diff import Hunk, ScopeFilter, parse_unified_diff
from .hunkid import semantic_hunk_id, strict_hunk_id
from .trace import NULL_TRACER, Tracer

logger = logging.getLogger(__name__)


@dataclass
class PartitionResult:
    to_review: list[Hunk] = field(default_factory=list)
    approved: list[Hunk] = field(default_factory=list)


def partition_hunks(current: list[Hunk], reviewed: list[Hunk] | None, tracer: Tracer = NULL_TRACER) -> PartitionResult:
    """Hunks of ``current`` whose strict or semantic ID appears in ``reviewed`` are approved.

    With ``reviewed`` None (nothing reviewed yet) every hunk is to be reviewed.
    Both outputs keep the order of ``current``.
    """
    if not current:
        return PartitionResult()
    if reviewed is None:
        return PartitionResult(to_review=list(current))
    strict_ids = {strict_hunk_id(h.file_path, h.raw_content) for h in reviewed}
    semantic_ids = {semantic_hunk_id(h.file_path, h.raw_content) for h in reviewed}

    result = PartitionResult()
    tracer.section("Partition")
    for hunk in current:
        sid = strict_hunk_id(hunk.file_path, hunk.raw_content)
        if sid in strict_ids:
            result.approved.append(hunk)
            tracer.printf(f"approved (strict) {hunk.file_path} {sid[:12]}")
            continue
        sem = semantic_hunk_id(hunk.file_path, hunk.raw_content)
        if sem in semantic_ids:
            result.approved.append(hunk)
            tracer.printf(f"approved (semantic) {hunk.file_path} {sem[:12]}")
            continue
        result.to_review.append(hunk)
        tracer.printf(f"to review {hunk.file_path} {sid[:12]}")
    return result


async def partition(
    repo_root: str | Path,
    baseline: str,
    head: str,
    last_reviewed_at: str = "",
    scope: ScopeFilter | None = None,
    tracer: Tracer = NULL_TRACER,
) -> PartitionResult:
    """Partition ``baseline..head`` against ``baseline..last_reviewed_at``.

    Raises:
        DiffError: If either git diff fails.
    """
    scope = scope or ScopeFilter()
    current = scope.filter(parse_unified_diff(await git.diff(repo_root, baseline, head)))
    if not current:
        return PartitionResult()
    if not last_reviewed_at:
        return partition_hunks(current, None, tracer)
    reviewed = scope.filter(parse_unified_diff(await git.diff(repo_root, baseline, last_reviewed_at)))
    result = partition_hunks(current, reviewed, tracer)
    logger.debug(f"Partition: {len(result.to_review)} to review, {len(result.approved)} approved")
    return result
