"""Provenance records for recovery sessions.

Every settled apply-with-recovery session is stamped with one structured log
event that answers:
- "Which module was applied, and did it end up converged?"
- "What did the engine do on its own (imports, ignored conflicts, retries)?"
- "Which commit and pipeline run triggered it?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .orchestrator import RecoverySession

logger = logging.getLogger(__name__)


@dataclass
class RecoveryProvenance:
    """Provenance record for one recovery session."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    tool_version: str = "dev"
    build_id: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""

    # Session outcome
    module_dir: str = ""
    final_status: str = ""
    attempts: int = 0
    apply_invocations: int = 0
    imports_applied: int = 0
    retries_consumed: int = 0
    permission_conflicts_ignored: int = 0
    unclassified_errors_present: bool = False
    duration_seconds: float = 0.0

    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits provenance records through the structured logger."""

    def __init__(self, env: dict[str, str] | None = None) -> None:
        source = os.environ if env is None else env
        self._git_commit_sha = source.get("GIT_COMMIT_SHA", "")
        self._git_branch = source.get("GIT_BRANCH", "")
        self._build_id = source.get("BUILD_ID", "")
        self._tool_version = source.get("TFRECOVER_VERSION", "dev")

    def create_provenance(self, session: RecoverySession) -> RecoveryProvenance:
        """Build the provenance record of a settled session."""
        return RecoveryProvenance(
            tool_version=self._tool_version,
            build_id=self._build_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            module_dir=session.module_dir,
            final_status=session.final_status.value,
            attempts=session.attempt_number,
            apply_invocations=session.apply_invocations,
            imports_applied=session.imports_applied,
            retries_consumed=session.retries_consumed,
            permission_conflicts_ignored=session.permission_conflicts_ignored,
            unclassified_errors_present=session.unclassified_errors_present,
            duration_seconds=session.duration_seconds,
            failure_reason=session.failure_reason,
        )

    def log_session(self, session: RecoverySession) -> RecoveryProvenance:
        """Log the provenance of ``session`` and return the record.

        The event is logged at ERROR when the session failed, at WARNING
        when the engine had to intervene, and at INFO otherwise.
        """
        provenance = self.create_provenance(session)

        log_level = logging.INFO
        if provenance.failure_reason:
            log_level = logging.ERROR
        elif provenance.imports_applied or provenance.retries_consumed:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Recovery provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "module_dir": provenance.module_dir,
                "final_status": provenance.final_status,
                "imports_applied": provenance.imports_applied,
                "retries_consumed": provenance.retries_consumed,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )
        return provenance
