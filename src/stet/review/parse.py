"""Parsing model responses into findings."""

import json
import logging

from ..diff import Hunk
from ..errors import ParseError, ValidationError
from ..findings import Finding

logger = logging.getLogger(__name__)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json fence some models add despite instructions."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    first_nl = stripped.find("\n")
    if first_nl == -1:
        return stripped
    body = stripped[first_nl + 1 :]
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


def _findings_from_list(items: list) -> list[Finding]:
    try:
        return [Finding.from_dict(item) for item in items]
    except ValidationError as e:
        raise ParseError(f"invalid finding in response: {e}") from e


def parse_findings_response(text: str) -> list[Finding]:
    """Decode a model response.

    Accepted shapes, tried in order: an array of finding objects, an object
    with a ``findings`` array, and a single finding object.

    Raises:
        ParseError: If the response is not one of those shapes.
    """
    body = strip_code_fence(text)
    if not body:
        raise ParseError("empty response")
    try:
        data = json.loads(body)
    except ValueError as e:
        raise ParseError(f"response is not valid JSON: {e}") from e

    if isinstance(data, list):
        return _findings_from_list(data)
    if not isinstance(data, dict):
        raise ParseError(f"unexpected JSON type {type(data).__name__}")
    if "findings" in data:
        if not isinstance(data["findings"], list):
            raise ParseError("'findings' must be an array")
        return _findings_from_list(data["findings"])

    try:
        single = Finding.from_dict(data)
    except ValidationError as e:
        raise ParseError(f"response object is not a finding: {e}") from e
    if not single.message or not single.severity or not single.category:
        raise ParseError("response object is not a finding")
    return [single]


def assign_finding_ids(findings: list[Finding], hunk: Hunk) -> list[Finding]:
    """Fill defaults, assign stable IDs and validate.

    Missing ``file`` becomes the hunk's path, a zero confidence becomes
    1.0, and unknown severities and categories are normalized.

    Raises:
        ValidationError: On the first finding that fails validation.
    """
    for f in findings:
        if not f.file:
            f.file = hunk.file_path
        if f.confidence == 0:
            f.confidence = 1.0
        f.normalize()
        f.id = f.compute_id()
        f.validate()
    return findings
