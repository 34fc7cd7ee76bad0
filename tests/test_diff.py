"""Tests for unified diff parsing, line ranges and scope filtering."""

import pytest

from stet.diff import Hunk, ScopeFilter, count_hunk_scope, hunk_line_range, parse_unified_diff

TWO_FILE_DIFF = """diff --git a/main.go b/main.go
index 1111111..2222222 100644
--- a/main.go
+++ b/main.go
@@ -1,3 +1,4 @@
 package main
+import "fmt"

 func main() {
@@ -10,2 +11,3 @@ func helper() {
 \treturn
+\t// done
 }
diff --git a/util.py b/util.py
new file mode 100644
--- /dev/null
+++ b/util.py
@@ -0,0 +1,2 @@
+def f():
+    return 1
\\ No newline at end of file
"""


class TestParseUnifiedDiff:
    def test_hunks_in_order(self):
        hunks = parse_unified_diff(TWO_FILE_DIFF)
        assert [h.file_path for h in hunks] == ["main.go", "main.go", "util.py"]
        assert hunks[0].raw_content.startswith("@@ -1,3 +1,4 @@")
        assert hunks[1].raw_content.startswith("@@ -10,2 +11,3 @@")

    def test_metadata_lines_dropped(self):
        hunks = parse_unified_diff(TWO_FILE_DIFF)
        assert "No newline" not in hunks[2].raw_content
        assert hunks[2].raw_content.endswith("+    return 1")

    def test_context_defaults_to_raw(self):
        hunk = parse_unified_diff(TWO_FILE_DIFF)[0]
        assert hunk.context == hunk.raw_content

    @pytest.mark.parametrize("text", ["", "   \n\t\n"])
    def test_empty_input(self, text):
        assert parse_unified_diff(text) == []

    def test_binary_sections_skipped(self):
        text = (
            "diff --git a/logo.png b/logo.png\n"
            "index 1..2 100644\n"
            "Binary files a/logo.png and b/logo.png differ\n"
            "diff --git a/a.txt b/a.txt\n"
            "--- a/a.txt\n"
            "+++ b/a.txt\n"
            "@@ -1 +1 @@\n"
            "-old\n"
            "+new\n"
        )
        hunks = parse_unified_diff(text)
        assert [h.file_path for h in hunks] == ["a.txt"]

    def test_deleted_file_uses_old_path(self):
        text = (
            "diff --git a/gone.go b/gone.go\n"
            "deleted file mode 100644\n"
            "--- a/gone.go\n"
            "+++ /dev/null\n"
            "@@ -1,2 +0,0 @@\n"
            "-package x\n"
            "-var y = 1\n"
        )
        hunks = parse_unified_diff(text)
        assert len(hunks) == 1
        assert hunks[0].file_path == "gone.go"


class TestHunkLineRange:
    def test_range_from_new_side(self):
        assert hunk_line_range(Hunk("a.go", "@@ -10,2 +11,3 @@\n x")) == (11, 13)

    def test_count_defaults_to_one(self):
        assert hunk_line_range(Hunk("a.go", "@@ -1 +7 @@\n+x")) == (7, 7)

    def test_pure_deletion_has_no_range(self):
        assert hunk_line_range(Hunk("a.go", "@@ -1,2 +0,0 @@\n-x\n-y")) is None

    def test_invalid_header(self):
        assert hunk_line_range(Hunk("a.go", "not a header")) is None


class TestCountHunkScope:
    def test_counts(self):
        hunks = [Hunk("a.go", "@@ -1,2 +1,2 @@\n-ab\n+abc\n ctx")]
        scope = count_hunk_scope(hunks)
        assert scope.hunks == 1
        assert scope.lines_added == 1
        assert scope.lines_removed == 1
        assert scope.chars_added == 3
        assert scope.chars_deleted == 2
        assert scope.to_dict()["hunks_reviewed"] == 1


class TestScopeFilter:
    def test_defaults_exclude_generated_and_vendored(self):
        f = ScopeFilter()
        assert f.is_excluded("api/service.pb.go")
        assert f.is_excluded("assets/app.min.js")
        assert f.is_excluded("go.sum")
        assert f.is_excluded("vendor/github.com/x/y.go")
        assert f.is_excluded("web/coverage/index.html")
        assert not f.is_excluded("main.go")

    def test_empty_patterns_disable_exclusions(self):
        f = ScopeFilter([])
        assert not f.is_excluded("go.sum")

    def test_explicit_patterns(self):
        f = ScopeFilter(["*.lock"])
        assert f.is_excluded("poetry.lock")
        assert not f.is_excluded("go.sum")

    def test_malformed_pattern_skipped(self):
        f = ScopeFilter(["[abc", "*.tmp"])
        assert f.is_excluded("x.tmp")
        assert not f.is_excluded("a")

    def test_star_does_not_cross_slash(self):
        f = ScopeFilter(["cmd/*"])
        assert f.is_excluded("cmd/x.go")
        assert not f.is_excluded("cmd/sub/x.go")

    def test_vendor_prefix_is_anchored(self):
        f = ScopeFilter(["vendor/*"])
        assert f.is_excluded("vendor/foo")
        assert f.is_excluded("vendor")
        assert not f.is_excluded("vendorfoo")
        assert not f.is_excluded("src/vendor/a.go")

    def test_bare_directory_pattern_is_not_recursive(self):
        f = ScopeFilter(["vendor"])
        assert f.is_excluded("vendor/a.go")
        assert not f.is_excluded("src/vendor/a.go")
        assert not ScopeFilter(["internal"]).is_excluded("internal/a.go")

    def test_coverage_at_any_depth(self):
        f = ScopeFilter(["coverage"])
        assert f.is_excluded("coverage")
        assert f.is_excluded("web/coverage/lcov.info")
        assert not f.is_excluded("src/coverage.go")

    def test_full_path_then_basename(self):
        f = ScopeFilter(["gen/*.go", "schema_?.sql"])
        assert f.is_excluded("gen/a.go")
        assert not f.is_excluded("x/gen/a.go")
        assert f.is_excluded("db/migrations/schema_1.sql")
        assert not f.is_excluded("db/schema_10.sql")

    def test_character_classes(self):
        f = ScopeFilter(["[ab].go", "[^x]y.txt"])
        assert f.is_excluded("a.go")
        assert not f.is_excluded("c.go")
        assert f.is_excluded("zy.txt")
        assert not f.is_excluded("xy.txt")

    def test_lone_bracket_skipped(self):
        f = ScopeFilter(["["])
        assert f.patterns == ["["]
        assert not f.is_excluded("[")

    def test_filter_keeps_order(self):
        hunks = [Hunk("a.go", "@@ -1 +1 @@"), Hunk("go.sum", "@@ -1 +1 @@"), Hunk("b.go", "@@ -1 +1 @@")]
        assert [h.file_path for h in ScopeFilter().filter(hunks)] == ["a.go", "b.go"]
