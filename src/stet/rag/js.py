"""JavaScript and TypeScript symbol resolver."""

import re

from .base import SymbolResolver, ere_quote, preceding_comment, signature_until

JS_KEYWORDS = frozenset(
    {
        "async", "await", "break", "case", "catch", "class", "const", "continue",
        "debugger", "default", "delete", "do", "else", "export", "extends", "finally",
        "for", "function", "if", "import", "in", "instanceof", "let", "new", "return",
        "super", "switch", "this", "throw", "try", "typeof", "var", "void", "while",
        "with", "yield", "interface", "type", "enum", "implements", "require",
    }
)


class JSResolver(SymbolResolver):
    keywords = JS_KEYWORDS
    identifier_patterns = (
        re.compile(r"\bfunction\s+(\w+)\s*\("),
        re.compile(r"\b([A-Z][A-Za-z0-9_]*)\b"),
        re.compile(r"\b([a-zA-Z_$][A-Za-z0-9_$]*)\s*\("),
    )

    def definition_pattern(self, symbol: str) -> str:
        q = ere_quote(symbol)
        boundary = "([^A-Za-z0-9_$]|$)"
        return (
            rf"(function[[:space:]]+{q}[[:space:]]*\(|const[[:space:]]+{q}[[:space:]]*="
            rf"|class[[:space:]]+{q}{boundary}|interface[[:space:]]+{q}{boundary})"
        )

    def signature_and_doc(self, lines: list[str], line_no: int, declaration: str) -> tuple[str, str]:
        return signature_until(lines, line_no, "{"), preceding_comment(lines, line_no, "//")
