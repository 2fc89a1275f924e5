"""Error taxonomy for the recovery engine.

Every error carries the exit code the command line reports for it. The
codes follow the standard set used by the deployment scripts this tool
replaces, so pipelines keep their existing exit-code handling.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .plan_analysis import PlanAnalysis

SUCCESS_EXIT_CODE = 0
GENERAL_ERROR_EXIT_CODE = 1


class RecoveryError(Exception):
    """Base class for all errors raised by the recovery engine."""

    exit_code: int = GENERAL_ERROR_EXIT_CODE


class ParamError(RecoveryError):
    """Raised when a call into the engine is malformed."""

    exit_code = 2


class DependencyError(RecoveryError):
    """Raised when a required external tool is unavailable."""

    exit_code = 10


class TerraformError(RecoveryError):
    """Raised when a Terraform invocation failed and could not be remediated."""

    exit_code = 20


class FileError(RecoveryError):
    """Raised when a module directory, plan file or backup file is missing."""

    exit_code = 30


class DestructiveChangesError(TerraformError):
    """Raised by the plan gate when a plan deletes or recreates resources.

    The full analysis is attached so callers can display every address.
    """

    def __init__(self, analysis: PlanAnalysis) -> None:
        self.analysis = analysis
        super().__init__(
            f"Plan contains {analysis.destructive_count} destructive change(s): "
            f"{len(analysis.resources_to_recreate)} recreate, "
            f"{len(analysis.resources_to_destroy)} destroy"
        )
