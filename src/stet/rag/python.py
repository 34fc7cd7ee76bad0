"""Python symbol resolver."""

import re

from .base import SymbolResolver, ere_quote, preceding_comment, signature_until

PYTHON_KEYWORDS = frozenset(
    {
        "and", "as", "assert", "async", "await", "break", "class", "continue", "def",
        "del", "elif", "else", "except", "finally", "for", "from", "global", "if",
        "import", "in", "is", "lambda", "nonlocal", "not", "or", "pass", "raise",
        "return", "try", "while", "with", "yield", "print", "len", "range", "str",
        "int", "float", "dict", "list", "set", "tuple", "super", "isinstance",
    }
)

_TRIPLE_QUOTES = ('"""', "'''")


class PythonResolver(SymbolResolver):
    keywords = PYTHON_KEYWORDS
    identifier_patterns = (
        re.compile(r"\bdef\s+(\w+)\s*\("),
        re.compile(r"\bclass\s+(\w+)\s*[:(]"),
        re.compile(r"\b(\w+)\s*\("),
    )

    def definition_pattern(self, symbol: str) -> str:
        quoted = ere_quote(symbol)
        return rf"(def[[:space:]]+{quoted}[[:space:]]*\(|class[[:space:]]+{quoted}[[:space:]]*[:(])"

    def signature_and_doc(self, lines: list[str], line_no: int, declaration: str) -> tuple[str, str]:
        signature = signature_until(lines, line_no, ":")
        doc = preceding_comment(lines, line_no, "#")
        body_start = line_no - 1 + signature.count("\n") + 1
        if body_start < len(lines):
            doc = _docstring_at(lines, body_start) or doc
        return signature, doc


def _docstring_at(lines: list[str], index: int) -> str:
    """Docstring starting at ``lines[index]``, if the line opens one."""
    first = lines[index].strip()
    for quote in _TRIPLE_QUOTES:
        if not first.startswith(quote):
            continue
        rest = first[len(quote) :]
        if quote in rest:
            return rest.split(quote, 1)[0].strip()
        parts = [rest]
        for line in lines[index + 1 :]:
            if quote in line:
                parts.append(line.split(quote, 1)[0])
                return "\n".join(p.strip() for p in parts).strip()
            parts.append(line)
        return "\n".join(p.strip() for p in parts).strip()
    return ""
