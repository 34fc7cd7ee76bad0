"""Tests for partitioning against real git repositories."""

import pytest

from stet.diff import Hunk, ScopeFilter
from stet.hunkid import strict_hunk_id
from stet.partition import partition, partition_hunks

from conftest import commit_file, git


def _ids(hunks):
    return sorted(strict_hunk_id(h.file_path, h.raw_content) for h in hunks)


class TestPartitionHunks:
    def test_nothing_reviewed_means_everything_to_review(self):
        current = [Hunk("a.go", "@@ -1 +1 @@\n+x")]
        result = partition_hunks(current, None)
        assert result.to_review == current
        assert result.approved == []

    def test_empty_current(self):
        result = partition_hunks([], [Hunk("a.go", "@@ -1 +1 @@\n+x")])
        assert result.to_review == [] and result.approved == []

    def test_outputs_cover_current(self):
        current = [
            Hunk("a.go", "@@ -1 +1 @@\n+x := 1"),
            Hunk("b.go", "@@ -1 +1 @@\n+y := 2"),
            Hunk("c.go", "@@ -1 +1 @@\n+z := 3"),
        ]
        reviewed = [Hunk("b.go", "@@ -1 +1 @@\n+y   :=   2  // same")]
        result = partition_hunks(current, reviewed)
        assert [h.file_path for h in result.approved] == ["b.go"]
        assert [h.file_path for h in result.to_review] == ["a.go", "c.go"]
        assert _ids(result.approved + result.to_review) == _ids(current)


class TestPartitionGit:
    @pytest.mark.asyncio
    async def test_two_commits_one_new_file(self, git_repo):
        """Only the file added after the last reviewed commit needs review."""
        c0 = git(git_repo, "rev-parse", "HEAD")
        c1 = commit_file(git_repo, "f1.txt", "one\n")
        c2 = commit_file(git_repo, "f2.txt", "two\n")

        result = await partition(git_repo, c0, c2, c1)

        assert [h.file_path for h in result.to_review] == ["f2.txt"]
        assert [h.file_path for h in result.approved] == ["f1.txt"]

    @pytest.mark.asyncio
    async def test_comment_only_change_is_approved(self, git_repo):
        c0 = git(git_repo, "rev-parse", "HEAD")
        c1 = commit_file(git_repo, "p.go", "func F() {}\n")
        c2 = commit_file(git_repo, "p.go", "func F() {} // comment\n")

        result = await partition(git_repo, c0, c2, c1)

        assert result.to_review == []
        assert [h.file_path for h in result.approved] == ["p.go"]

    @pytest.mark.asyncio
    async def test_without_last_reviewed_everything_is_reviewed(self, git_repo):
        c0 = git(git_repo, "rev-parse", "HEAD")
        commit_file(git_repo, "a.txt", "a\n")
        head = commit_file(git_repo, "b.txt", "b\n")

        result = await partition(git_repo, c0, head)

        assert [h.file_path for h in result.to_review] == ["a.txt", "b.txt"]
        assert result.approved == []

    @pytest.mark.asyncio
    async def test_scope_filter_applied(self, git_repo):
        c0 = git(git_repo, "rev-parse", "HEAD")
        commit_file(git_repo, "go.sum", "x v1 h1:abc\n")
        head = commit_file(git_repo, "main.go", "package main\n")

        result = await partition(git_repo, c0, head, scope=ScopeFilter())

        assert [h.file_path for h in result.to_review] == ["main.go"]

    @pytest.mark.asyncio
    async def test_no_changes(self, git_repo):
        head = git(git_repo, "rev-parse", "HEAD")
        result = await partition(git_repo, head, head)
        assert result.to_review == [] and result.approved == []
