"""Whitespace minification of hunks for languages where indentation is not significant."""

import re

_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")
_SPACE_RUN = re.compile(r"[ \t]+")

MINIFY_EXTENSIONS = frozenset({".go", ".rs"})


def minify_hunk(content: str) -> str:
    """Trim indentation and collapse space runs in a unified diff hunk.

    The header and each line's diff prefix are kept. Content that does not
    start with a hunk header is returned unchanged.
    """
    lines = content.split("\n")
    if not _HUNK_HEADER.match(lines[0]):
        return content
    out = [lines[0]]
    for line in lines[1:]:
        if not line:
            out.append("")
            continue
        rest = _SPACE_RUN.sub(" ", line[1:].lstrip(" \t"))
        out.append(line[0] + rest)
    return "\n".join(out)


def should_minify(path: str) -> bool:
    return any(path.endswith(ext) for ext in MINIFY_EXTENSIONS)
