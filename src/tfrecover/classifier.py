"""Classification of Terraform apply errors.

Each error diagnostic is assigned to exactly one category by an ordered
rule list. Rules are evaluated top to bottom and the first match wins, so
the order of DEFAULT_RULES is part of the contract:

1. Import conflicts (resource exists outside of tracked state)
2. Permission conflicts (role assignment already present)
3. Transient errors (timeouts, throttling, network resets)

Import rules come first because provider messages for an existing resource
can also mention a timeout or throttling while the resource was polled.
Anything that matches no rule is UNCLASSIFIED and is never remediated.

Matching is case-sensitive substring matching against the diagnostic
summary, using Terraform's and the providers' own wording.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .diagnostics import DiagnosticRecord, error_records

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Outcome of classifying one error diagnostic."""

    IMPORT_CONFLICT = "import_conflict"
    PERMISSION_CONFLICT = "permission_conflict"
    TRANSIENT = "transient"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ClassificationRule:
    """A substring predicate bound to a category.

    The rule matches when ``pattern`` occurs in the summary and none of
    ``excludes`` does.
    """

    category: ErrorCategory
    pattern: str
    excludes: tuple[str, ...] = ()

    def matches(self, record: DiagnosticRecord) -> bool:
        if self.pattern not in record.summary:
            return False
        return not any(excluded in record.summary for excluded in self.excludes)


def _rules(category: ErrorCategory, *patterns: str) -> tuple[ClassificationRule, ...]:
    return tuple(ClassificationRule(category=category, pattern=p) for p in patterns)


PERMISSION_PATTERNS = (
    "The role assignment already exists",
    "RoleAssignmentExists",
    "does not have authorization",
    "insufficient privileges",
)

# Generic "already exists" must leave role assignments to PERMISSION_RULES
IMPORT_RULES = _rules(
    ErrorCategory.IMPORT_CONFLICT,
    "A resource with the ID",
    "needs to be imported into the State",
    "already assigned",
) + (
    ClassificationRule(
        category=ErrorCategory.IMPORT_CONFLICT,
        pattern="already exists",
        excludes=("role assignment", "Role assignment", *PERMISSION_PATTERNS),
    ),
)

# Known risk: "does not have authorization" and "insufficient privileges"
# can also describe a real authorization failure. They are ignored like the
# already-exists case.
PERMISSION_RULES = _rules(ErrorCategory.PERMISSION_CONFLICT, *PERMISSION_PATTERNS)

TRANSIENT_RULES = _rules(
    ErrorCategory.TRANSIENT,
    "timeout",
    "Timeout",
    "timed out",
    "network error",
    "connection reset",
    "throttled",
    "TooManyRequests",
    "context deadline exceeded",
)

DEFAULT_RULES: tuple[ClassificationRule, ...] = IMPORT_RULES + PERMISSION_RULES + TRANSIENT_RULES


@dataclass
class ErrorAnalysis:
    """Errors of one failed apply attempt, partitioned by category."""

    records: dict[ErrorCategory, list[DiagnosticRecord]] = field(
        default_factory=lambda: {category: [] for category in ErrorCategory}
    )
    analysis_timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def of(self, category: ErrorCategory) -> list[DiagnosticRecord]:
        return self.records[category]

    def count(self, category: ErrorCategory) -> int:
        return len(self.records[category])

    @property
    def import_conflicts(self) -> list[DiagnosticRecord]:
        return self.records[ErrorCategory.IMPORT_CONFLICT]

    @property
    def permission_conflicts(self) -> list[DiagnosticRecord]:
        return self.records[ErrorCategory.PERMISSION_CONFLICT]

    @property
    def transient_errors(self) -> list[DiagnosticRecord]:
        return self.records[ErrorCategory.TRANSIENT]

    @property
    def unclassified(self) -> list[DiagnosticRecord]:
        return self.records[ErrorCategory.UNCLASSIFIED]

    @property
    def total_errors(self) -> int:
        return sum(len(records) for records in self.records.values())

    @property
    def has_unclassified(self) -> bool:
        return bool(self.unclassified)

    @property
    def only_permission_conflicts(self) -> bool:
        """True when every error is a permission conflict (and there is at least one)."""
        return 0 < self.count(ErrorCategory.PERMISSION_CONFLICT) == self.total_errors

    def counts(self) -> dict[str, int]:
        return {category.value: len(records) for category, records in self.records.items()}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "counts": self.counts(),
            "total_errors": self.total_errors,
            "analysis_timestamp": self.analysis_timestamp.isoformat(),
        }


class ErrorClassifier:
    """Assigns error diagnostics to categories using an ordered rule list."""

    def __init__(self, rules: Iterable[ClassificationRule] | None = None) -> None:
        self._rules: tuple[ClassificationRule, ...] = (
            tuple(rules) if rules is not None else DEFAULT_RULES
        )

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def categorize(self, record: DiagnosticRecord) -> ErrorCategory:
        """Return the category of the first rule matching ``record``."""
        for rule in self._rules:
            if rule.matches(record):
                return rule.category
        return ErrorCategory.UNCLASSIFIED

    def classify(self, records: Iterable[DiagnosticRecord]) -> ErrorAnalysis:
        """Build an ErrorAnalysis from error records. Non-error records are ignored."""
        analysis = ErrorAnalysis()
        for record in records:
            if not record.is_error:
                continue
            analysis.records[self.categorize(record)].append(record)

        logger.info(
            "Error analysis complete",
            extra=analysis.to_dict(),
        )
        return analysis


def classify_errors(
    diagnostic_stream: Iterable[str],
    classifier: ErrorClassifier | None = None,
) -> ErrorAnalysis:
    """Parse a raw apply output stream and classify its errors."""
    return (classifier or ErrorClassifier()).classify(error_records(diagnostic_stream))
