"""Symbol lookup used to enrich review prompts with nearby definitions."""

from pathlib import PurePosixPath

from .base import CallGraphResult, Definition, SymbolResolver, cap_definitions_by_tokens
from .callgraph import GoCallGraphResolver
from .go import GoResolver
from .js import JSResolver
from .python import PythonResolver

# Extension table used to build a run's resolver maps
RESOLVER_TABLE: tuple[tuple[type[SymbolResolver], tuple[str, ...]], ...] = (
    (GoResolver, (".go",)),
    (PythonResolver, (".py",)),
    (JSResolver, (".js", ".mjs", ".cjs", ".ts", ".tsx")),
)
CALL_GRAPH_TABLE: tuple[tuple[type, tuple[str, ...]], ...] = ((GoCallGraphResolver, (".go",)),)


class ResolverRegistry:
    """Per-run map from file extension to symbol and call-graph resolvers."""

    def __init__(self, symbol_resolvers: dict[str, SymbolResolver] | None = None, call_graph_resolvers: dict | None = None):
        self.symbol_resolvers = symbol_resolvers if symbol_resolvers is not None else {}
        self.call_graph_resolvers = call_graph_resolvers if call_graph_resolvers is not None else {}

    @classmethod
    def default(cls) -> "ResolverRegistry":
        symbols: dict[str, SymbolResolver] = {}
        for resolver_cls, extensions in RESOLVER_TABLE:
            resolver = resolver_cls()
            for ext in extensions:
                symbols[ext] = resolver
        call_graphs = {}
        for resolver_cls, extensions in CALL_GRAPH_TABLE:
            resolver = resolver_cls()
            for ext in extensions:
                call_graphs[ext] = resolver
        return cls(symbols, call_graphs)

    def symbol_resolver(self, file_path: str) -> SymbolResolver | None:
        return self.symbol_resolvers.get(PurePosixPath(file_path).suffix)

    def call_graph_resolver(self, file_path: str):
        return self.call_graph_resolvers.get(PurePosixPath(file_path).suffix)


__all__ = [
    "CallGraphResult",
    "Definition",
    "GoCallGraphResolver",
    "GoResolver",
    "JSResolver",
    "PythonResolver",
    "ResolverRegistry",
    "SymbolResolver",
    "cap_definitions_by_tokens",
]
