"""Destructive-change gate for Terraform plans.

A saved plan is rendered with `terraform show -json` and every entry of
`resource_changes[]` is inspected:

- actions containing both delete and create (either order): RECREATE
- actions containing delete without create: DESTROY
- anything else: non-destructive, ignored

Only resources whose address matches at least one caller-supplied regex are
considered. The gate never modifies state or the plan; it reports and the
caller decides whether to proceed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import DestructiveChangesError, FileError, ParamError, TerraformError
from .models import ResourceChange
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)

MATCH_ALL_PATTERN = ".*"
UNKNOWN_ADDRESS = "unknown"

# Cap on addresses included in a single log event
MAX_LOGGED_ADDRESSES = 50


class ChangeAction(str, Enum):
    """Terraform plan action verbs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"
    NO_OP = "no-op"


class ChangeImpact(str, Enum):
    """Destructiveness of a planned change."""

    RECREATE = "recreate"
    DESTROY = "destroy"
    NON_DESTRUCTIVE = "non_destructive"


@dataclass(frozen=True)
class ChangeRecord:
    """One resource's proposed change."""

    address: str
    actions: tuple[ChangeAction | str, ...]

    def __post_init__(self) -> None:
        if not self.actions:
            raise ValueError(f"ChangeRecord for {self.address} must have at least one action")

    @property
    def impact(self) -> ChangeImpact:
        has_delete = ChangeAction.DELETE.value in self.actions
        if has_delete and ChangeAction.CREATE.value in self.actions:
            return ChangeImpact.RECREATE
        if has_delete:
            return ChangeImpact.DESTROY
        return ChangeImpact.NON_DESTRUCTIVE


@dataclass
class PlanAnalysis:
    """Destructive changes found in one plan document."""

    resources_to_recreate: list[str] = field(default_factory=list)
    resources_to_destroy: list[str] = field(default_factory=list)
    resources_inspected: int = 0
    analysis_timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def destructive_count(self) -> int:
        return len(self.resources_to_recreate) + len(self.resources_to_destroy)

    @property
    def is_safe(self) -> bool:
        return self.destructive_count == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "destructive_changes": self.destructive_count,
            "resources_to_recreate": list(self.resources_to_recreate),
            "resources_to_destroy": list(self.resources_to_destroy),
            "resources_inspected": self.resources_inspected,
            "analysis_timestamp": self.analysis_timestamp.isoformat(),
        }


def compile_patterns(patterns: Iterable[str] | None) -> list[re.Pattern[str]]:
    """Compile address patterns. An empty selection matches every address.

    Raises:
        ParamError: If a pattern is not a valid regular expression.
    """
    selected = [p for p in (patterns or []) if p]
    if not selected:
        selected = [MATCH_ALL_PATTERN]

    compiled = []
    for pattern in selected:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ParamError(f"Invalid resource pattern {pattern!r}: {e}") from e
    return compiled


def _loose_address_and_actions(raw: Any) -> tuple[str, list[str]]:
    """Best-effort address and action verbs of an entry that failed validation."""
    if not isinstance(raw, dict):
        return UNKNOWN_ADDRESS, []
    address = raw.get("address")
    change = raw.get("change")
    actions = change.get("actions") if isinstance(change, dict) else None
    if isinstance(actions, str):
        actions = [actions]
    elif not isinstance(actions, list):
        actions = []
    return (
        address if isinstance(address, str) and address else UNKNOWN_ADDRESS,
        [str(action) for action in actions],
    )


def _to_action(verb: str) -> ChangeAction | str:
    try:
        return ChangeAction(verb)
    except ValueError:
        return verb


def extract_changes(document: dict[str, Any]) -> list[ChangeRecord]:
    """Turn a rendered plan into ChangeRecords.

    Every entry whose actions contain delete is kept, whatever else is
    wrong with it: an entry that fails validation falls back to its raw
    fields with the address defaulting to "unknown", and action verbs
    outside ChangeAction are kept as plain strings. Only entries without
    any actions are skipped.

    Raises:
        TerraformError: If `resource_changes` is present but not a list.
    """
    raw_changes = document.get("resource_changes") or []
    if not isinstance(raw_changes, list):
        raise TerraformError("Plan document field resource_changes must be a list")

    records: list[ChangeRecord] = []
    for raw in raw_changes:
        try:
            change = ResourceChange.model_validate(raw)
            address, verbs = change.address, list(change.change.actions)
        except ValidationError as e:
            address, verbs = _loose_address_and_actions(raw)
            logger.warning(
                "Malformed resource change, using raw fields",
                extra={"address": address, "actions": verbs, "error": str(e)},
            )

        if not verbs:
            logger.warning("Skipping resource change without actions", extra={"address": address})
            continue

        actions = tuple(_to_action(verb) for verb in verbs)
        if any(not isinstance(action, ChangeAction) for action in actions):
            logger.warning(
                "Resource change has unknown action",
                extra={"address": address, "actions": verbs},
            )

        records.append(ChangeRecord(address=address, actions=actions))
    return records


class RiskAnalyzer:
    """Flags recreate and destroy actions on selected resource addresses."""

    def __init__(self, runner: TerraformRunner | None = None) -> None:
        self._runner = runner or TerraformRunner()

    def analyze_changes(
        self,
        changes: Iterable[ChangeRecord],
        patterns: Sequence[str] | None = None,
    ) -> PlanAnalysis:
        compiled = compile_patterns(patterns)
        analysis = PlanAnalysis()

        for change in changes:
            analysis.resources_inspected += 1
            if not any(p.search(change.address) for p in compiled):
                continue

            impact = change.impact
            if impact == ChangeImpact.RECREATE:
                analysis.resources_to_recreate.append(change.address)
                logger.warning("Resource will be recreated", extra={"address": change.address})
            elif impact == ChangeImpact.DESTROY:
                analysis.resources_to_destroy.append(change.address)
                logger.warning("Resource will be destroyed", extra={"address": change.address})

        return analysis

    def analyze_plan_document(
        self,
        document: dict[str, Any],
        patterns: Sequence[str] | None = None,
    ) -> PlanAnalysis:
        return self.analyze_changes(extract_changes(document), patterns)

    def analyze_plan(
        self,
        module_dir: Path,
        plan_file: Path,
        patterns: Sequence[str] | None = None,
    ) -> PlanAnalysis:
        """Render ``plan_file`` and analyze it for destructive changes.

        Args:
            module_dir: Terraform module directory the plan belongs to.
            plan_file: Saved plan produced by `terraform plan -out`.
            patterns: Address regexes to check. Empty means every resource.

        Returns:
            PlanAnalysis. Use enforce_plan_gate() to turn it into a pass/fail.

        Raises:
            FileError: If the module directory or plan file does not exist.
            ParamError: If a pattern is invalid.
            TerraformError: If the plan cannot be rendered.
            DependencyError: If the Terraform binary is unavailable.
        """
        if not module_dir.is_dir():
            raise FileError(f"Terraform directory does not exist: {module_dir}")
        if not plan_file.is_file():
            raise FileError(f"Plan file does not exist: {plan_file}")

        # Validate patterns before spending time on terraform show
        compile_patterns(patterns)

        logger.info(
            "Analyzing Terraform plan for destructive changes",
            extra={"module_dir": str(module_dir), "plan_file": str(plan_file)},
        )
        document = self._runner.show_plan_json(module_dir, plan_file.resolve())
        analysis = self.analyze_plan_document(document, patterns)

        logger.info(
            "Plan analysis complete",
            extra={
                "module_dir": str(module_dir),
                "destructive_changes": analysis.destructive_count,
                "resources_inspected": analysis.resources_inspected,
            },
        )
        return analysis


def enforce_plan_gate(analysis: PlanAnalysis) -> None:
    """Pass when the plan has no destructive changes.

    Raises:
        DestructiveChangesError: If anything would be recreated or destroyed.
    """
    if analysis.is_safe:
        logger.info("No destructive changes detected in Terraform plan")
        return

    logger.error(
        "Destructive changes detected in Terraform plan",
        extra={
            "destructive_changes": analysis.destructive_count,
            "resources_to_recreate": analysis.resources_to_recreate[:MAX_LOGGED_ADDRESSES],
            "resources_to_destroy": analysis.resources_to_destroy[:MAX_LOGGED_ADDRESSES],
        },
    )
    raise DestructiveChangesError(analysis)


def format_destructive_changes(analysis: PlanAnalysis) -> str:
    """Human-readable report of every address the plan would recreate or destroy."""
    lines = ["DESTRUCTIVE CHANGES DETECTED", ""]
    if analysis.resources_to_recreate:
        lines.append("Resources that will be RECREATED (data loss risk):")
        lines.extend(f"  ~ {address}" for address in analysis.resources_to_recreate)
        lines.append("")
    if analysis.resources_to_destroy:
        lines.append("Resources that will be DESTROYED:")
        lines.extend(f"  - {address}" for address in analysis.resources_to_destroy)
        lines.append("")
    lines.append("Please review these changes carefully before proceeding.")
    return "\n".join(lines)


def analyze_plan(
    module_dir: Path,
    plan_file: Path,
    patterns: Sequence[str] | None = None,
    runner: TerraformRunner | None = None,
) -> PlanAnalysis:
    """Module-level shortcut for RiskAnalyzer(runner).analyze_plan()."""
    return RiskAnalyzer(runner).analyze_plan(module_dir, plan_file, patterns)
