"""Content-addressed hunk and finding identities."""

import hashlib
import re
from pathlib import PurePosixPath

_WS_RUN = re.compile(r"\s+")
_C_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_C_LINE_COMMENT = re.compile(r"//[^\n]*")
_HASH_LINE_COMMENT = re.compile(r"#[^\n]*")

_C_FAMILY = frozenset({".go", ".js", ".ts", ".mjs", ".cjs", ".tsx", ".jsx", ".c", ".h", ".cc", ".cpp", ".java", ".rs"})
_HASH_FAMILY = frozenset({".py", ".pyw", ".sh", ".bash", ".zsh"})


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _normalize_crlf(content: str) -> str:
    return content.replace("\r\n", "\n")


def _collapse_whitespace(content: str) -> str:
    return _WS_RUN.sub(" ", content).strip()


def strip_comments(path: str, content: str) -> str:
    """Remove comments for the language implied by the path's extension.

    Unknown extensions are returned unchanged.
    """
    ext = PurePosixPath(path).suffix.lower()
    if ext in _C_FAMILY:
        content = _C_BLOCK_COMMENT.sub(" ", content)
        return _C_LINE_COMMENT.sub(" ", content)
    if ext in _HASH_FAMILY:
        return _HASH_LINE_COMMENT.sub(" ", content)
    return content


def strict_hunk_id(path: str, content: str) -> str:
    """SHA-256 over ``path:content`` with CRLF normalized to LF."""
    return _sha256_hex(f"{path}:{_normalize_crlf(content)}")


def semantic_hunk_id(path: str, content: str) -> str:
    """SHA-256 over ``path:content`` with comments removed and whitespace collapsed.

    Hunks that differ only in comments or whitespace share a semantic ID.
    """
    normalized = _collapse_whitespace(strip_comments(path, _normalize_crlf(content)))
    return _sha256_hex(f"{path}:{normalized}")


def message_stem(message: str) -> str:
    return _collapse_whitespace(message)


def stable_finding_id(file: str, line: int, range_start: int, range_end: int, message: str) -> str:
    """Deterministic finding ID from location and message stem.

    The location is ``file:start:end`` when the range is valid, otherwise
    ``file:max(line, 1)``.
    """
    if range_start > 0 and range_end > 0 and range_start <= range_end:
        loc = f"{file}:{range_start}:{range_end}"
    else:
        loc = f"{file}:{max(line, 1)}"
    return _sha256_hex(f"{loc}:{message_stem(message)}")
