"""Apply orchestrator: the top-level recovery loop.

One session drives a module directory from a failed apply to a settled
outcome:

    apply -> clean?                        -> succeeded
          -> classify errors
             -> any unclassified?          -> failed, nothing remediated
             -> only permission conflicts? -> succeeded (conflicts ignored)
             -> remediate (import, ignore, retry)
                -> remediation failed      -> failed
                -> a retry applied cleanly -> succeeded
                -> otherwise               -> apply again (bounded)

Session state lives in the returned RecoverySession, never in module
globals. A caller deadline caps every command timeout and fails the session
once it elapses.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .classifier import ErrorAnalysis, ErrorCategory, ErrorClassifier
from .config import RecoveryConfig
from .diagnostics import DiagnosticLevel, DiagnosticRecord, error_records
from .errors import FileError, ParamError
from .provenance import ProvenanceLogger
from .remediation import (
    ImportRemediator,
    RemediationAction,
    RemediationActionType,
    RemediationResult,
    RetryRemediator,
    ignore_permission_conflicts,
)
from .terraform import CommandResult, Deadline, TerraformRunner

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RecoverySession:
    """Progress and outcome of one apply-with-recovery call."""

    module_dir: str
    max_attempts: int
    attempt_number: int = 1
    apply_invocations: int = 0
    imports_applied: int = 0
    retries_consumed: int = 0
    permission_conflicts_ignored: int = 0
    final_status: SessionStatus = SessionStatus.PENDING
    unclassified_errors_present: bool = False
    failure_reason: str | None = None
    actions: list[RemediationAction] = field(default_factory=list)
    unresolved_errors: list[DiagnosticRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.final_status == SessionStatus.SUCCEEDED

    @property
    def settled(self) -> bool:
        return self.final_status != SessionStatus.PENDING

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def record(self, result: RemediationResult) -> None:
        self.actions.extend(result.actions)
        self.imports_applied += result.imports_succeeded
        self.retries_consumed += result.retries_consumed
        self.apply_invocations += result.retries_consumed
        self.permission_conflicts_ignored += result.permission_conflicts_ignored

    def settle(self, status: SessionStatus, reason: str | None = None) -> None:
        self.final_status = status
        self.failure_reason = reason if status == SessionStatus.FAILED else None
        self.finished_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "module_dir": self.module_dir,
            "final_status": self.final_status.value,
            "attempt_number": self.attempt_number,
            "max_attempts": self.max_attempts,
            "apply_invocations": self.apply_invocations,
            "imports_applied": self.imports_applied,
            "retries_consumed": self.retries_consumed,
            "permission_conflicts_ignored": self.permission_conflicts_ignored,
            "unclassified_errors_present": self.unclassified_errors_present,
            "failure_reason": self.failure_reason,
            "unresolved_errors": [e.display_text() for e in self.unresolved_errors],
            "actions": [a.to_dict() for a in self.actions],
            "duration_seconds": round(self.duration_seconds, 3),
        }


class ApplyOrchestrator:
    """Runs terraform apply and recovers from known error classes."""

    def __init__(
        self,
        runner: TerraformRunner | None = None,
        config: RecoveryConfig | None = None,
        classifier: ErrorClassifier | None = None,
        provenance: ProvenanceLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or (runner.config if runner else RecoveryConfig())
        self._runner = runner or TerraformRunner(self._config)
        self._classifier = classifier or ErrorClassifier()
        self._provenance = provenance or ProvenanceLogger()
        self._clock = clock
        self._importer = ImportRemediator(self._runner, self._config)
        self._retrier = RetryRemediator(self._runner, self._config, sleep=sleep)

    @property
    def config(self) -> RecoveryConfig:
        return self._config

    def remediate(
        self,
        analysis: ErrorAnalysis,
        module_dir: Path,
        import_params: str | Sequence[str] | None = None,
        apply_params: str | Sequence[str] | None = None,
        parallelism: int | None = None,
        deadline: Deadline | None = None,
    ) -> RemediationResult:
        """Run every applicable remediator once, in category order.

        Nothing is remediated when the analysis holds an unclassified error;
        the result is then an abort.
        """
        result = RemediationResult(transient_errors=analysis.count(ErrorCategory.TRANSIENT))

        if analysis.has_unclassified:
            for record in analysis.unclassified:
                result.actions.append(
                    RemediationAction(
                        action=RemediationActionType.ABORT,
                        category=ErrorCategory.UNCLASSIFIED,
                        succeeded=False,
                        address=record.resource_address,
                        detail=record.display_text(),
                    )
                )
            return result

        deadline = deadline or Deadline(self._config.recovery_deadline_seconds, self._clock)
        if parallelism is None:
            parallelism = self._config.default_parallelism

        if analysis.import_conflicts:
            result.actions.extend(
                self._importer.remediate(analysis.import_conflicts, module_dir, import_params, deadline)
            )

        result.actions.extend(ignore_permission_conflicts(analysis.permission_conflicts))

        if analysis.transient_errors:
            result.actions.extend(
                self._retrier.remediate(module_dir, apply_params, parallelism, deadline)
            )

        logger.info("Remediation pass complete", extra=result.to_dict())
        return result

    def apply_with_recovery(
        self,
        module_dir: Path,
        apply_params: str | Sequence[str] | None = None,
        import_params: str | Sequence[str] | None = None,
        parallelism: int | None = None,
        auto_recovery: bool | None = None,
    ) -> RecoverySession:
        """Apply ``module_dir`` and recover from known error classes.

        Args:
            module_dir: Terraform module directory.
            apply_params: Extra `terraform apply` parameters.
            import_params: Extra `terraform import` parameters.
            parallelism: Terraform -parallelism (default from config).
            auto_recovery: If False, apply exactly once (default from config).

        Returns:
            The settled RecoverySession.

        Raises:
            FileError: If the module directory does not exist.
            ParamError: If parallelism is not positive.
            DependencyError: If the Terraform binary is unavailable.
        """
        if not module_dir.is_dir():
            raise FileError(f"Terraform directory does not exist: {module_dir}")
        if parallelism is None:
            parallelism = self._config.default_parallelism
        if parallelism < 1:
            raise ParamError(f"parallelism must be positive: {parallelism}")
        if auto_recovery is None:
            auto_recovery = self._config.auto_recovery

        session = RecoverySession(
            module_dir=str(module_dir),
            max_attempts=self._config.max_apply_attempts,
        )
        deadline = Deadline(self._config.recovery_deadline_seconds, self._clock)

        logger.info(
            "Starting Terraform apply with error recovery",
            extra={
                "module_dir": str(module_dir),
                "parallelism": parallelism,
                "auto_recovery": auto_recovery,
            },
        )

        try:
            self._run_session(
                session, module_dir, apply_params, import_params, parallelism, auto_recovery, deadline
            )
        finally:
            if not session.settled:
                session.settle(SessionStatus.FAILED, "Recovery aborted by an error")
            self._provenance.log_session(session)

        return session

    def _apply(
        self,
        session: RecoverySession,
        module_dir: Path,
        apply_params: str | Sequence[str] | None,
        parallelism: int,
        deadline: Deadline,
    ) -> tuple[CommandResult, float]:
        timeout = deadline.cap(self._config.apply_timeout_seconds)
        logger.info(
            "Executing Terraform apply",
            extra={"attempt": session.attempt_number, "max_attempts": session.max_attempts},
        )
        session.apply_invocations += 1
        return self._runner.apply(module_dir, apply_params, parallelism, timeout=timeout), timeout

    def _run_session(
        self,
        session: RecoverySession,
        module_dir: Path,
        apply_params: str | Sequence[str] | None,
        import_params: str | Sequence[str] | None,
        parallelism: int,
        auto_recovery: bool,
        deadline: Deadline,
    ) -> None:
        while True:
            if deadline.expired:
                logger.error("Recovery deadline elapsed", extra={"attempt": session.attempt_number})
                session.settle(SessionStatus.FAILED, "Recovery deadline elapsed")
                return

            result, timeout = self._apply(session, module_dir, apply_params, parallelism, deadline)
            if result.succeeded:
                logger.info("Terraform apply completed successfully")
                session.settle(SessionStatus.SUCCEEDED)
                return

            records = _failure_records(result, timeout)

            if not auto_recovery:
                logger.error("Terraform apply failed and automatic recovery is disabled")
                session.unresolved_errors = records
                session.settle(SessionStatus.FAILED, "Terraform apply failed")
                return

            if not records:
                logger.error(
                    "Terraform apply failed without error diagnostics",
                    extra={"returncode": result.returncode, "output": result.error_excerpt()},
                )
                session.settle(SessionStatus.FAILED, "Terraform apply failed without error diagnostics")
                return

            analysis = self._classifier.classify(records)

            if analysis.has_unclassified:
                session.unclassified_errors_present = True
                session.unresolved_errors = list(analysis.unclassified)
                for record in analysis.unclassified:
                    logger.error(
                        "Unhandled Terraform error",
                        extra={
                            "summary": record.summary,
                            "detail": record.detail,
                            "address": record.resource_address,
                        },
                    )
                session.settle(
                    SessionStatus.FAILED,
                    f"{len(analysis.unclassified)} unhandled error(s) require manual intervention",
                )
                return

            if analysis.only_permission_conflicts:
                session.record(
                    RemediationResult(actions=ignore_permission_conflicts(analysis.permission_conflicts))
                )
                logger.info(
                    "Only permission conflicts remain, treating apply as successful",
                    extra={"permission_conflicts": analysis.count(ErrorCategory.PERMISSION_CONFLICT)},
                )
                session.settle(SessionStatus.SUCCEEDED)
                return

            remediation = self.remediate(
                analysis, module_dir, import_params, apply_params, parallelism, deadline
            )
            session.record(remediation)

            if not remediation.success:
                if remediation.import_failures:
                    reason = f"{remediation.import_failures} resource import(s) failed"
                elif deadline.expired or remediation.aborted:
                    reason = "Recovery deadline elapsed"
                else:
                    reason = f"Transient errors persisted after {remediation.retries_consumed} retries"
                logger.error("Error recovery failed", extra={"reason": reason})
                session.settle(SessionStatus.FAILED, reason)
                return

            if remediation.clean_apply:
                logger.info("Error recovery successful", extra={"attempt": session.attempt_number})
                session.settle(SessionStatus.SUCCEEDED)
                return

            if session.attempt_number >= session.max_attempts:
                logger.error(
                    "Maximum apply attempts reached",
                    extra={"max_attempts": session.max_attempts},
                )
                session.settle(SessionStatus.FAILED, "Maximum apply attempts reached")
                return

            session.attempt_number += 1


def _failure_records(result: CommandResult, timeout: float) -> list[DiagnosticRecord]:
    """Error records of a failed apply. A timeout becomes a transient-looking record."""
    records = error_records(result.output_lines)
    if result.timed_out and not records:
        records = [
            DiagnosticRecord(
                level=DiagnosticLevel.ERROR,
                summary=f"terraform apply timed out after {timeout:g}s",
            )
        ]
    return records


def apply_with_recovery(
    module_dir: Path,
    apply_params: str | Sequence[str] | None = None,
    import_params: str | Sequence[str] | None = None,
    parallelism: int | None = None,
    auto_recovery: bool | None = None,
    config: RecoveryConfig | None = None,
) -> RecoverySession:
    """Module-level shortcut building a default ApplyOrchestrator."""
    return ApplyOrchestrator(config=config).apply_with_recovery(
        module_dir, apply_params, import_params, parallelism, auto_recovery
    )


def remediate(
    analysis: ErrorAnalysis,
    module_dir: Path,
    import_params: str | Sequence[str] | None = None,
    apply_params: str | Sequence[str] | None = None,
    parallelism: int | None = None,
    config: RecoveryConfig | None = None,
) -> RemediationResult:
    """Module-level shortcut for ApplyOrchestrator().remediate()."""
    return ApplyOrchestrator(config=config).remediate(
        analysis, module_dir, import_params, apply_params, parallelism
    )
