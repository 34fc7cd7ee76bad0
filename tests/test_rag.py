"""Tests for git-grep based symbol and call-graph resolvers."""

import threading

import pytest

from stet.rag import Definition, GoCallGraphResolver, GoResolver, JSResolver, PythonResolver, ResolverRegistry
from stet.rag import cap_definitions_by_tokens
from stet.rag import callgraph as callgraph_module
from stet.rag.base import ere_quote, parse_grep_line

from conftest import commit_file

UTIL_GO = """package main

// Helper adds one.
// It is pure.
func Helper(x int) int {
\treturn x + 1
}

type Config struct {
\tName string
}
"""

MAIN_GO = """package main

func run() int {
\tc := Config{}
\t_ = c
\treturn Helper(2)
}

func main() {
\trun()
}
"""

MAIN_HUNK = "@@ -3,5 +3,5 @@\n func run() int {\n \tc := Config{}\n \t_ = c\n-\treturn 1\n+\treturn Helper(2)\n }"

LIB_PY = '''def greet(name):
    """Return a greeting."""
    return f"hi {name}"


class Greeter:
    def __init__(self):
        pass
'''

UTIL_JS = """// Format a price.
function formatPrice(cents) {
  return (cents / 100).toFixed(2);
}

export class Cart {
}
"""


@pytest.fixture
def go_repo(git_repo):
    commit_file(git_repo, "util.go", UTIL_GO)
    commit_file(git_repo, "main.go", MAIN_GO)
    return git_repo


class TestGrepHelpers:
    @pytest.mark.parametrize(
        "line,expected",
        [
            ("a.go:3:func X() {", ("a.go", 3, "func X() {")),
            ("a.go:3:x := a:b", ("a.go", 3, "x := a:b")),
            ("../a.go:3:func X", None),
            ("a.go:x:func X", None),
            ("a.go:0:func X", None),
            ("no separators", None),
        ],
    )
    def test_parse_grep_line(self, line, expected):
        assert parse_grep_line(line) == expected

    def test_ere_quote(self):
        assert ere_quote("a.b*(c)") == r"a\.b\*\(c\)"

    def test_token_cap_keeps_first(self):
        defs = [Definition("A", "a.go", 1, "func A() {" + "x" * 400), Definition("B", "b.go", 1, "func B() {")]
        assert [d.symbol for d in cap_definitions_by_tokens(defs, 10)] == ["A"]
        assert len(cap_definitions_by_tokens(defs, 0)) == 2


class TestGoResolver:
    def test_extract_symbols(self):
        assert GoResolver().extract_symbols(MAIN_HUNK) == ["Config", "Helper", "run"]

    @pytest.mark.asyncio
    async def test_resolve(self, go_repo):
        defs = await GoResolver().resolve_symbols(go_repo, "main.go", MAIN_HUNK)
        by_symbol = {d.symbol: d for d in defs}
        assert list(by_symbol) == ["Config", "Helper", "run"]
        assert (by_symbol["Config"].file, by_symbol["Config"].line) == ("util.go", 9)
        helper = by_symbol["Helper"]
        assert helper.signature == "func Helper(x int) int {"
        assert helper.docstring == "Helper adds one.\nIt is pure."
        assert by_symbol["run"].file == "main.go"

    @pytest.mark.asyncio
    async def test_max_definitions(self, go_repo):
        defs = await GoResolver().resolve_symbols(go_repo, "main.go", MAIN_HUNK, max_definitions=1)
        assert [d.symbol for d in defs] == ["Config"]

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, go_repo):
        assert await GoResolver().lookup(go_repo, "Missing") is None


class TestGoCallGraph:
    @pytest.mark.asyncio
    async def test_callers_of_helper(self, go_repo):
        hunk = "@@ -5,3 +5,3 @@\n func Helper(x int) int {\n-\treturn x\n+\treturn x + 1\n }"
        result = await GoCallGraphResolver().resolve_call_graph(go_repo, "util.go", hunk)
        assert [(c.file, c.line, c.signature) for c in result.callers] == [("main.go", 6, "return Helper(2)")]
        assert result.callees == []

    @pytest.mark.asyncio
    async def test_callees_of_run(self, go_repo):
        result = await GoCallGraphResolver().resolve_call_graph(go_repo, "main.go", MAIN_HUNK)
        assert [(c.file, c.line) for c in result.callers] == [("main.go", 10)]
        assert [(c.symbol, c.file, c.docstring) for c in result.callees] == [("Helper", "util.go", "")]

    @pytest.mark.asyncio
    async def test_outside_function(self, go_repo):
        hunk = "@@ -1 +1 @@\n-package util\n+package main"
        assert await GoCallGraphResolver().resolve_call_graph(go_repo, "util.go", hunk) is None

    @pytest.mark.asyncio
    async def test_source_parsed_off_the_event_loop(self, go_repo, monkeypatch):
        threads = []
        original = callgraph_module.find_enclosing_function

        def recording(*args):
            threads.append(threading.current_thread())
            return original(*args)

        monkeypatch.setattr(callgraph_module, "find_enclosing_function", recording)
        result = await GoCallGraphResolver().resolve_call_graph(go_repo, "main.go", MAIN_HUNK)

        assert result is not None
        assert threads and threads[0] is not threading.main_thread()


class TestPythonResolver:
    @pytest.mark.asyncio
    async def test_resolve_function_and_class(self, git_repo):
        commit_file(git_repo, "lib.py", LIB_PY)
        hunk = '@@ -1,2 +1,3 @@\n from lib import greet\n-x = 1\n+x = greet("bob")\n+g = Greeter()'

        defs = await PythonResolver().resolve_symbols(git_repo, "app.py", hunk)

        by_symbol = {d.symbol: d for d in defs}
        assert by_symbol["greet"].signature == "def greet(name):"
        assert by_symbol["greet"].docstring == "Return a greeting."
        assert (by_symbol["Greeter"].line, by_symbol["Greeter"].signature) == (6, "class Greeter:")

    def test_keywords_skipped(self):
        assert PythonResolver().extract_symbols("@@ -1 +1 @@\n+print(len(items))") == []


class TestJSResolver:
    @pytest.mark.asyncio
    async def test_resolve(self, git_repo):
        commit_file(git_repo, "util.js", UTIL_JS)
        hunk = "@@ -1 +1,2 @@\n-const a = 1;\n+const cart = new Cart();\n+const p = formatPrice(100);"

        defs = await JSResolver().resolve_symbols(git_repo, "app.js", hunk)

        by_symbol = {d.symbol: d for d in defs}
        assert by_symbol["Cart"].signature == "export class Cart {"
        assert by_symbol["formatPrice"].docstring == "Format a price."
        assert by_symbol["formatPrice"].line == 2


class TestRegistry:
    def test_default_extensions(self):
        registry = ResolverRegistry.default()
        assert isinstance(registry.symbol_resolver("a/b.go"), GoResolver)
        assert isinstance(registry.symbol_resolver("x.py"), PythonResolver)
        assert isinstance(registry.symbol_resolver("web/app.tsx"), JSResolver)
        assert registry.symbol_resolver("README.md") is None
        assert isinstance(registry.call_graph_resolver("a.go"), GoCallGraphResolver)
        assert registry.call_graph_resolver("a.py") is None

    def test_registries_are_independent(self):
        assert ResolverRegistry.default().symbol_resolvers[".go"] is not ResolverRegistry.default().symbol_resolvers[".go"]
