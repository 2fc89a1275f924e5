"""Parsing of the structured `terraform apply -json` stream.

Terraform writes one JSON object per line. Anything that does not parse as
such an object is skipped: a partially written or interleaved line must not
abort classification of the rest of the stream.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from .models import LogLine

logger = logging.getLogger(__name__)


class DiagnosticLevel(str, Enum):
    """Log levels Terraform emits in the `@level` field."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(frozen=True)
class DiagnosticRecord:
    """One structured line of apply output."""

    level: DiagnosticLevel
    summary: str
    detail: str | None = None
    resource_address: str | None = None

    @property
    def is_error(self) -> bool:
        return self.level == DiagnosticLevel.ERROR

    def display_text(self) -> str:
        """Raw text shown to the operator for errors that need manual action."""
        if self.detail:
            return f"{self.summary}: {self.detail}"
        return self.summary


def _parse_line(line: str) -> DiagnosticRecord | None:
    line = line.strip()
    if not line:
        return None

    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON apply output line", extra={"line": line[:200]})
        return None

    if not isinstance(raw, dict):
        return None

    try:
        entry = LogLine.model_validate(raw)
    except ValidationError:
        logger.debug("Skipping apply output line without @level", extra={"line": line[:200]})
        return None

    try:
        level = DiagnosticLevel(entry.level)
    except ValueError:
        logger.debug("Skipping apply output line with unknown level", extra={"level": entry.level})
        return None

    diagnostic = entry.diagnostic
    summary = None
    detail = None
    address = None
    if diagnostic is not None:
        summary = diagnostic.summary or diagnostic.detail
        detail = diagnostic.detail or None
        address = diagnostic.address or None
    if not summary:
        summary = entry.message
    if not summary:
        return None

    return DiagnosticRecord(
        level=level,
        summary=summary,
        detail=detail,
        resource_address=address,
    )


def parse_apply_output(lines: Iterable[str]) -> Iterator[DiagnosticRecord]:
    """Yield a DiagnosticRecord for every well-formed line, in stream order."""
    for line in lines:
        record = _parse_line(line)
        if record is not None:
            yield record


def error_records(lines: Iterable[str]) -> list[DiagnosticRecord]:
    """Return only the error-level records of an apply stream."""
    return [record for record in parse_apply_output(lines) if record.is_error]
