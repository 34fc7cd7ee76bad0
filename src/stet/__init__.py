"""stet - local code review over git diffs with a local model."""

from .diff import Hunk, parse_unified_diff
from .errors import StetError
from .findings import Finding, LineRange

__version__ = "0.5.0"
__all__ = [
    "Finding",
    "Hunk",
    "LineRange",
    "StetError",
    "parse_unified_diff",
]
