"""Remediators for classified apply errors.

- ImportRemediator: binds already-existing resources into tracked state
- ignore_permission_conflicts: records role-assignment conflicts as ignored
- RetryRemediator: re-applies after transient errors with linear backoff

Remediators never raise for a failed remediation. Every step taken is
returned as a RemediationAction so the caller can decide the outcome.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .classifier import ErrorCategory
from .config import RecoveryConfig
from .diagnostics import DiagnosticRecord
from .terraform import Deadline, TerraformRunner

logger = logging.getLogger(__name__)

# First double-quoted token in a provider message, e.g.
# A resource with the ID "/subscriptions/.../rg" already exists
QUOTED_ID_PATTERN = re.compile(r'"([^"]+)"')


class RemediationActionType(str, Enum):
    """What was done about one error."""

    IMPORT = "import"
    IGNORE = "ignore"
    RETRY = "retry"
    ABORT = "abort"
    SKIP = "skip"


@dataclass(frozen=True)
class RemediationAction:
    """One remediation step and its outcome."""

    action: RemediationActionType
    category: ErrorCategory
    succeeded: bool
    address: str | None = None
    detail: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "category": self.category.value,
            "succeeded": self.succeeded,
            "address": self.address,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RemediationResult:
    """Outcome of one remediation pass over an ErrorAnalysis."""

    transient_errors: int = 0
    actions: list[RemediationAction] = field(default_factory=list)

    def _count(self, action: RemediationActionType, *, succeeded: bool | None = None) -> int:
        return sum(
            1
            for a in self.actions
            if a.action == action and (succeeded is None or a.succeeded == succeeded)
        )

    @property
    def imports_succeeded(self) -> int:
        return self._count(RemediationActionType.IMPORT, succeeded=True)

    @property
    def import_failures(self) -> int:
        # Records skipped for lack of an address or ID count as failures
        return sum(
            1
            for a in self.actions
            if a.category == ErrorCategory.IMPORT_CONFLICT and not a.succeeded
        )

    @property
    def permission_conflicts_ignored(self) -> int:
        return self._count(RemediationActionType.IGNORE)

    @property
    def retries_consumed(self) -> int:
        return self._count(RemediationActionType.RETRY)

    @property
    def clean_apply(self) -> bool:
        """True when a retry apply completed without errors."""
        return self._count(RemediationActionType.RETRY, succeeded=True) > 0

    @property
    def aborted(self) -> bool:
        return self._count(RemediationActionType.ABORT) > 0

    @property
    def success(self) -> bool:
        if self.aborted or self.import_failures:
            return False
        return self.transient_errors == 0 or self.clean_apply

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "success": self.success,
            "imports_succeeded": self.imports_succeeded,
            "import_failures": self.import_failures,
            "permission_conflicts_ignored": self.permission_conflicts_ignored,
            "retries_consumed": self.retries_consumed,
            "clean_apply": self.clean_apply,
            "actions": [a.to_dict() for a in self.actions],
        }


def extract_external_id(summary: str) -> str | None:
    """Return the first double-quoted substring of ``summary``, if any."""
    match = QUOTED_ID_PATTERN.search(summary)
    return match.group(1) if match else None


class ImportRemediator:
    """Imports resources that exist in the cloud but not in tracked state."""

    def __init__(self, runner: TerraformRunner, config: RecoveryConfig | None = None) -> None:
        self._runner = runner
        self._config = config or runner.config

    def remediate(
        self,
        records: Iterable[DiagnosticRecord],
        module_dir: Path,
        import_params: str | Sequence[str] | None = None,
        deadline: Deadline | None = None,
    ) -> list[RemediationAction]:
        """Import every conflicting resource.

        A record without an address or a quoted ID is skipped. A failed
        import is repaired once by removing the address from state and
        importing again.
        """
        deadline = deadline or Deadline(None)
        actions: list[RemediationAction] = []

        for record in records:
            address = record.resource_address
            external_id = extract_external_id(record.summary)
            if not address or not external_id:
                logger.warning(
                    "Could not extract resource address or ID from import error",
                    extra={"summary": record.summary, "address": address},
                )
                actions.append(
                    RemediationAction(
                        action=RemediationActionType.SKIP,
                        category=ErrorCategory.IMPORT_CONFLICT,
                        succeeded=False,
                        address=address,
                        detail=record.summary,
                    )
                )
                continue

            actions.append(self._import(module_dir, address, external_id, import_params, deadline))

        if actions:
            failures = sum(1 for a in actions if not a.succeeded)
            if failures:
                logger.error(
                    "Import remediation finished with failures",
                    extra={"import_failures": failures, "imports_attempted": len(actions)},
                )
            else:
                logger.info(
                    "All resources imported",
                    extra={"imports_succeeded": len(actions)},
                )
        return actions

    def _import(
        self,
        module_dir: Path,
        address: str,
        external_id: str,
        import_params: str | Sequence[str] | None,
        deadline: Deadline,
    ) -> RemediationAction:
        logger.info("Importing resource", extra={"address": address, "external_id": external_id})

        result = self._runner.import_resource(
            module_dir,
            address,
            external_id,
            import_params,
            timeout=deadline.cap(self._config.import_timeout_seconds),
        )

        if not result.succeeded and not deadline.expired:
            logger.warning(
                "Import failed, removing address from state and retrying",
                extra={"address": address, "error": result.error_excerpt()},
            )
            rm_result = self._runner.state_rm(module_dir, address)
            if not rm_result.succeeded:
                logger.debug(
                    "State removal before import retry failed",
                    extra={"address": address, "error": rm_result.error_excerpt()},
                )
            result = self._runner.import_resource(
                module_dir,
                address,
                external_id,
                import_params,
                timeout=deadline.cap(self._config.import_timeout_seconds),
            )

        if result.succeeded:
            logger.info("Resource imported", extra={"address": address})
        else:
            logger.error(
                "Failed to import resource",
                extra={"address": address, "external_id": external_id, "error": result.error_excerpt()},
            )

        return RemediationAction(
            action=RemediationActionType.IMPORT,
            category=ErrorCategory.IMPORT_CONFLICT,
            succeeded=result.succeeded,
            address=address,
            detail=external_id,
        )


def ignore_permission_conflicts(records: Iterable[DiagnosticRecord]) -> list[RemediationAction]:
    """Record role-assignment conflicts as ignored. They never block recovery."""
    actions = []
    for record in records:
        logger.info(
            "Ignoring permission conflict",
            extra={"summary": record.summary, "address": record.resource_address},
        )
        actions.append(
            RemediationAction(
                action=RemediationActionType.IGNORE,
                category=ErrorCategory.PERMISSION_CONFLICT,
                succeeded=True,
                address=record.resource_address,
                detail=record.summary,
            )
        )
    return actions


class RetryRemediator:
    """Re-runs the whole apply after transient errors.

    Waits ``attempt * retry_backoff_seconds`` before each attempt and stops at
    the first clean apply. Errors of a failed retry are not re-classified.
    """

    def __init__(
        self,
        runner: TerraformRunner,
        config: RecoveryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runner = runner
        self._config = config or runner.config
        self._sleep = sleep

    def remediate(
        self,
        module_dir: Path,
        apply_params: str | Sequence[str] | None,
        parallelism: int,
        deadline: Deadline | None = None,
    ) -> list[RemediationAction]:
        deadline = deadline or Deadline(None)
        max_retries = self._config.max_retries
        actions: list[RemediationAction] = []

        for attempt in range(1, max_retries + 1):
            delay = self._config.retry_delay(attempt)
            remaining = deadline.remaining()
            if remaining is not None and remaining <= delay:
                logger.error(
                    "Recovery deadline leaves no time for another retry",
                    extra={"attempt": attempt, "delay_seconds": delay, "remaining_seconds": remaining},
                )
                actions.append(
                    RemediationAction(
                        action=RemediationActionType.ABORT,
                        category=ErrorCategory.TRANSIENT,
                        succeeded=False,
                        detail="recovery deadline elapsed",
                    )
                )
                return actions

            logger.info(
                "Retrying apply after transient error",
                extra={"attempt": attempt, "max_retries": max_retries, "delay_seconds": delay},
            )
            self._sleep(delay)

            result = self._runner.apply(
                module_dir,
                apply_params,
                parallelism,
                timeout=deadline.cap(self._config.apply_timeout_seconds),
            )
            actions.append(
                RemediationAction(
                    action=RemediationActionType.RETRY,
                    category=ErrorCategory.TRANSIENT,
                    succeeded=result.succeeded,
                    detail=f"attempt {attempt} of {max_retries}",
                )
            )
            if result.succeeded:
                logger.info("Retry successful", extra={"attempt": attempt})
                return actions
            logger.warning("Retry failed", extra={"attempt": attempt, "timed_out": result.timed_out})

        logger.error("All retry attempts exhausted", extra={"max_retries": max_retries})
        return actions
