"""Go symbol resolver."""

import re

from .base import SymbolResolver, ere_quote, preceding_comment, signature_until

GO_KEYWORDS = frozenset(
    {
        "break", "case", "chan", "const", "continue", "default", "defer", "else",
        "fallthrough", "for", "func", "go", "goto", "if", "import", "interface",
        "map", "package", "range", "return", "select", "struct", "switch", "type", "var",
    }
)


class GoResolver(SymbolResolver):
    keywords = GO_KEYWORDS
    identifier_patterns = (
        re.compile(r"\b([A-Z][A-Za-z0-9_]*)\b"),
        re.compile(r"\b([a-z][A-Za-z0-9_]*)\s*\("),
    )

    def definition_pattern(self, symbol: str) -> str:
        return rf"(func|type|var|const)[[:space:]]+{ere_quote(symbol)}([^a-zA-Z0-9_]|$)"

    def signature_and_doc(self, lines: list[str], line_no: int, declaration: str) -> tuple[str, str]:
        return signature_until(lines, line_no, "{"), preceding_comment(lines, line_no, "//")
