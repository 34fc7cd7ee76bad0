"""Tests for the history log and suppression examples."""

import json

import pytest

from stet.constants import HISTORY_FILE_NAME
from stet.findings import Finding
from stet.history import (
    Dismissal,
    Record,
    RunConfig,
    UserAction,
    append,
    append_record,
    read_records,
    suppression_examples,
)


def _finding(file: str, line: int, message: str) -> Finding:
    f = Finding(file=file, line=line, severity="warning", category="bug", confidence=0.9, message=message)
    f.id = f.compute_id()
    return f


def _dismissal_record(f: Finding, reason: str = "false_positive") -> Record:
    return Record(
        diff_ref="head",
        review_output=[f],
        user_action=UserAction(dismissed_ids=[f.id], dismissals=[Dismissal(f.id, reason)]),
    )


class TestAppend:
    def test_one_json_object_per_line(self, tmp_path):
        append_record(tmp_path, Record(diff_ref="a", run_config=RunConfig(model="m")))
        append_record(tmp_path, Record(diff_ref="b", prompt_tokens=3))
        lines = (tmp_path / HISTORY_FILE_NAME).read_text().splitlines()
        assert len(lines) == 2
        first, second = (json.loads(line) for line in lines)
        assert first["run_config"]["model"] == "m"
        assert "prompt_tokens" not in first
        assert second["prompt_tokens"] == 3

    @pytest.mark.asyncio
    async def test_async_append(self, tmp_path):
        await append(tmp_path / "state", Record(diff_ref="x"))
        assert [r.diff_ref for r in read_records(tmp_path / "state")] == ["x"]

    def test_rotation(self, tmp_path):
        for i in range(5):
            append_record(tmp_path, Record(diff_ref=str(i)), max_records=2)
        # The third append pushed the active file over the limit
        assert (tmp_path / "history.1.jsonl").read_text().count("\n") == 3
        assert not (tmp_path / "history.2.jsonl").exists()
        assert (tmp_path / HISTORY_FILE_NAME).read_text().count("\n") == 2
        assert [r.diff_ref for r in read_records(tmp_path)] == ["0", "1", "2", "3", "4"]

    def test_record_round_trip(self, tmp_path):
        f = _finding("a.go", 4, "unchecked error")
        record = Record(
            diff_ref="h",
            review_output=[f],
            user_action=UserAction(dismissals=[Dismissal(f.id, "out_of_scope", "ctx")], replace_findings=True),
            run_config=RunConfig(model="m", strictness="default", nitpicky=True),
            prompt_tokens=1,
            completion_tokens=2,
            eval_duration_ns=3,
        )
        append_record(tmp_path, record)
        assert read_records(tmp_path) == [record]


class TestReadRecords:
    def test_missing_dir(self, tmp_path):
        assert read_records(tmp_path / "nope") == []

    def test_skips_partial_lines(self, tmp_path):
        append_record(tmp_path, Record(diff_ref="ok"))
        with open(tmp_path / HISTORY_FILE_NAME, "a") as f:
            f.write('{"diff_ref": "trunc')
        assert [r.diff_ref for r in read_records(tmp_path)] == ["ok"]

    def test_skips_invalid_findings(self, tmp_path):
        (tmp_path / HISTORY_FILE_NAME).write_text(
            json.dumps({"diff_ref": "bad", "review_output": [{"line": "x"}]}) + "\n"
            + json.dumps({"diff_ref": "good"}) + "\n"
        )
        assert [r.diff_ref for r in read_records(tmp_path)] == ["good"]


class TestSuppressionExamples:
    def test_formats_dismissed_findings(self):
        with_line = _finding("a.go", 3, "possible nil deref")
        no_line = _finding("b.go", 0, "missing doc")
        records = [_dismissal_record(with_line), _dismissal_record(no_line)]
        assert suppression_examples(records, 0, 0) == ["a.go:3: possible nil deref", "b.go: missing doc"]

    def test_deduplicates_newest_wins(self):
        a = _finding("a.go", 1, "first")
        b = _finding("b.go", 2, "second")
        records = [_dismissal_record(a), _dismissal_record(b), _dismissal_record(a)]
        assert suppression_examples(records, 0, 0) == ["b.go:2: second", "a.go:1: first"]

    def test_limits(self):
        findings = [_finding("a.go", i, f"msg {i}") for i in range(1, 6)]
        records = [_dismissal_record(f) for f in findings]
        assert suppression_examples(records, 2, 0) == ["a.go:4: msg 4", "a.go:5: msg 5"]
        assert suppression_examples(records, 0, 1) == ["a.go:5: msg 5"]

    def test_undismissed_findings_ignored(self):
        f = _finding("a.go", 1, "kept")
        assert suppression_examples([Record(review_output=[f])], 0, 0) == []

    def test_finish_snapshot_is_not_a_dismissal(self):
        fixed = _finding("a.go", 3, "nil deref")
        new = _finding("b.go", 1, "new issue")
        records = [
            Record(diff_ref="h1", review_output=[fixed]),
            # a later run found the issue addressed and auto-dismissed it
            Record(
                diff_ref="h2",
                review_output=[new],
                user_action=UserAction(
                    dismissed_ids=[fixed.id], dismissals=[Dismissal(fixed.id, "already_correct")]
                ),
            ),
            Record(
                diff_ref="h2",
                review_output=[fixed, new],
                user_action=UserAction(dismissed_ids=[fixed.id], finished_at="2026-01-01T00:00:00+00:00"),
            ),
        ]
        assert suppression_examples(records, 0, 0) == []

    def test_ids_without_dismissals_ignored(self):
        f = _finding("a.go", 1, "legacy")
        record = Record(review_output=[f], user_action=UserAction(dismissed_ids=[f.id]))
        assert suppression_examples([record], 0, 0) == []
