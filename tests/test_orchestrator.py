"""Tests for the apply-with-recovery loop."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from terraform_mock import (
    FakeTerraformRunner,
    apply_failure,
    apply_success,
    apply_timeout,
    command_failure,
    error_line,
)

from tfrecover.classifier import ErrorClassifier, classify_errors
from tfrecover.config import RecoveryConfig
from tfrecover.errors import FileError, ParamError
from tfrecover.orchestrator import ApplyOrchestrator, SessionStatus
from tfrecover.provenance import ProvenanceLogger
from tfrecover.remediation import RemediationActionType

IMPORT_ERROR = error_line('A resource with the ID "X" already exists', address="azurerm_resource_group.rg")
PERMISSION_ERROR = error_line("RoleAssignmentExists: The role assignment already exists.")
TRANSIENT_ERROR = error_line("context deadline exceeded")
UNKNOWN_ERROR = error_line("Unsupported argument: An argument named \"foo\" is not expected here.")


def _orchestrator(
    runner: FakeTerraformRunner,
    sleeps: list[float] | None = None,
    clock: Callable[[], float] | None = None,
) -> ApplyOrchestrator:
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ApplyOrchestrator(
        runner,
        runner.config,
        provenance=ProvenanceLogger(env={}),
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        **kwargs,
    )


class TestApplyWithRecovery:
    """Tests for ApplyOrchestrator.apply_with_recovery."""

    def test_clean_apply(self, module_dir: Path) -> None:
        """A clean first apply succeeds with no remediation."""
        runner = FakeTerraformRunner()

        session = _orchestrator(runner).apply_with_recovery(module_dir, "-var-file=a.tfvars", parallelism=5)

        assert session.final_status == SessionStatus.SUCCEEDED
        assert session.apply_invocations == 1
        assert session.attempt_number == 1
        assert runner.calls[0].extra["parallelism"] == 5
        assert session.finished_at is not None

    def test_import_conflict_then_clean_apply(self, module_dir: Path) -> None:
        """An existing resource is imported and the re-apply succeeds."""
        runner = FakeTerraformRunner(apply_results=[apply_failure(IMPORT_ERROR), apply_success()])

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.succeeded
        assert runner.commands() == ["apply", "import", "apply"]
        assert runner.calls[1].args == ("azurerm_resource_group.rg", "X")
        assert session.imports_applied == 1
        assert session.attempt_number == 2
        assert session.apply_invocations == 2

    def test_generic_already_exists_is_imported(self, module_dir: Path) -> None:
        """Plain already-exists wording is imported by its quoted name and re-applied."""
        existing = error_line('Role with name "deployer" already exists', address="aws_iam_role.deployer")
        runner = FakeTerraformRunner(apply_results=[apply_failure(existing), apply_success()])

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.succeeded
        assert runner.commands() == ["apply", "import", "apply"]
        assert runner.calls[1].args == ("aws_iam_role.deployer", "deployer")
        assert session.imports_applied == 1

    def test_unclassified_fails_without_remediation(self, module_dir: Path) -> None:
        """An unknown error fails the first attempt and nothing is remediated."""
        runner = FakeTerraformRunner(
            apply_results=[apply_failure(IMPORT_ERROR, TRANSIENT_ERROR, UNKNOWN_ERROR)]
        )
        sleeps: list[float] = []

        session = _orchestrator(runner, sleeps).apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        assert session.unclassified_errors_present
        assert runner.commands() == ["apply"]
        assert sleeps == []
        assert session.actions == []
        assert "Unsupported argument" in session.unresolved_errors[0].summary
        assert "manual intervention" in (session.failure_reason or "")

    def test_transient_retries_exhausted(self, module_dir: Path) -> None:
        """Persistent transient errors get 3 retries at 30, 60, 90s, then fail."""
        transient = apply_failure(TRANSIENT_ERROR)
        runner = FakeTerraformRunner(apply_results=[transient] * 4)
        sleeps: list[float] = []

        session = _orchestrator(runner, sleeps).apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        assert sleeps == [30, 60, 90]
        assert session.retries_consumed == 3
        assert runner.count("apply") == 4
        assert session.apply_invocations == 4
        assert "Transient" in (session.failure_reason or "")

    def test_transient_recovered_by_retry(self, module_dir: Path) -> None:
        """A clean retry settles the session as succeeded."""
        runner = FakeTerraformRunner(apply_results=[apply_failure(TRANSIENT_ERROR), apply_success()])
        sleeps: list[float] = []

        session = _orchestrator(runner, sleeps).apply_with_recovery(module_dir)

        assert session.succeeded
        assert sleeps == [30]
        assert session.retries_consumed == 1
        assert runner.count("apply") == 2

    def test_auto_recovery_disabled_applies_once(self, module_dir: Path) -> None:
        """Without auto recovery exactly one apply runs, whatever the outcome."""
        runner = FakeTerraformRunner(apply_results=[apply_failure(IMPORT_ERROR)])

        session = _orchestrator(runner).apply_with_recovery(module_dir, auto_recovery=False)

        assert session.final_status == SessionStatus.FAILED
        assert runner.commands() == ["apply"]
        assert session.unresolved_errors[0].summary.startswith("A resource with the ID")

    def test_auto_recovery_default_from_config(self, module_dir: Path) -> None:
        """Config supplies the default when the caller does not choose."""
        runner = FakeTerraformRunner(
            RecoveryConfig(auto_recovery=False),
            apply_results=[apply_failure(TRANSIENT_ERROR)],
        )

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert not session.succeeded
        assert runner.count("apply") == 1

    def test_only_permission_conflicts_succeed(self, module_dir: Path) -> None:
        """Permission conflicts alone are ignored and the session succeeds."""
        runner = FakeTerraformRunner(apply_results=[apply_failure(PERMISSION_ERROR, PERMISSION_ERROR)])

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.succeeded
        assert runner.commands() == ["apply"]
        assert session.permission_conflicts_ignored == 2
        assert all(a.action == RemediationActionType.IGNORE for a in session.actions)

    def test_import_and_permission_then_permission_only(self, module_dir: Path) -> None:
        """Mixed errors are remediated, a permission-only re-apply then succeeds."""
        runner = FakeTerraformRunner(
            apply_results=[
                apply_failure(IMPORT_ERROR, PERMISSION_ERROR),
                apply_failure(PERMISSION_ERROR),
            ]
        )

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.succeeded
        assert runner.commands() == ["apply", "import", "apply"]
        assert session.permission_conflicts_ignored == 2

    def test_import_failure_fails_session(self, module_dir: Path) -> None:
        """Residual import failures fail the session without re-applying."""
        runner = FakeTerraformRunner(
            apply_results=[apply_failure(IMPORT_ERROR)],
            import_results=[command_failure(), command_failure()],
        )

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        assert runner.commands() == ["apply", "import", "state rm", "import"]
        assert "import" in (session.failure_reason or "")

    def test_max_attempts_bounds_loop(self, module_dir: Path) -> None:
        """A module that keeps reporting import conflicts stops at max attempts."""
        runner = FakeTerraformRunner(
            RecoveryConfig(max_apply_attempts=3),
            apply_results=[apply_failure(IMPORT_ERROR)] * 10,
        )

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        assert session.failure_reason == "Maximum apply attempts reached"
        assert runner.count("apply") == 3
        assert session.attempt_number == 3

    def test_apply_timeout_is_transient(self, module_dir: Path) -> None:
        """A timed out apply is retried like a transient error."""
        runner = FakeTerraformRunner(apply_results=[apply_timeout(), apply_success()])
        sleeps: list[float] = []

        session = _orchestrator(runner, sleeps).apply_with_recovery(module_dir)

        assert session.succeeded
        assert sleeps == [30]

    def test_failure_without_diagnostics(self, module_dir: Path) -> None:
        """A failed apply with no error lines cannot be classified."""
        runner = FakeTerraformRunner(apply_results=[command_failure("panic: runtime error")])

        session = _orchestrator(runner).apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        assert runner.commands() == ["apply"]
        assert "without error diagnostics" in (session.failure_reason or "")

    def test_deadline_caps_apply_timeout(self, module_dir: Path) -> None:
        """Apply timeout is limited to the remaining deadline."""
        runner = FakeTerraformRunner(RecoveryConfig(recovery_deadline_seconds=600))

        _orchestrator(runner, clock=lambda: 0.0).apply_with_recovery(module_dir)

        assert runner.calls[0].timeout == 600

    def test_deadline_elapsed_fails_session(self, module_dir: Path) -> None:
        """Once the deadline passes no further apply starts."""
        now = [0.0]

        def sleep(seconds: float) -> None:
            now[0] += seconds

        runner = FakeTerraformRunner(
            RecoveryConfig(recovery_deadline_seconds=100),
            apply_results=[apply_failure(TRANSIENT_ERROR)] * 5,
        )
        orchestrator = ApplyOrchestrator(
            runner,
            runner.config,
            provenance=ProvenanceLogger(env={}),
            sleep=sleep,
            clock=lambda: now[0],
        )

        session = orchestrator.apply_with_recovery(module_dir)

        assert session.final_status == SessionStatus.FAILED
        # 30s + 60s of backoff fit into 100s, the third retry does not
        assert runner.count("apply") == 3
        assert session.failure_reason == "Recovery deadline elapsed"

    def test_missing_module_dir(self, tmp_path: Path) -> None:
        """Missing module directory raises FileError before applying."""
        runner = FakeTerraformRunner()

        with pytest.raises(FileError):
            _orchestrator(runner).apply_with_recovery(tmp_path / "nope")

        assert runner.calls == []

    def test_invalid_parallelism(self, module_dir: Path) -> None:
        """Parallelism must be positive."""
        with pytest.raises(ParamError):
            _orchestrator(FakeTerraformRunner()).apply_with_recovery(module_dir, parallelism=0)

    def test_provenance_logged_once(self, module_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Every settled session emits one provenance event."""
        runner = FakeTerraformRunner()
        provenance = ProvenanceLogger(env={})
        orchestrator = ApplyOrchestrator(runner, provenance=provenance, sleep=lambda _: None)
        logged: list[object] = []
        monkeypatch.setattr(provenance, "log_session", logged.append)

        session = orchestrator.apply_with_recovery(module_dir)

        assert logged == [session]


class TestRemediate:
    """Tests for ApplyOrchestrator.remediate."""

    def test_unclassified_aborts_without_remediators(self, module_dir: Path) -> None:
        """No remediator runs when an unclassified error is present."""
        runner = FakeTerraformRunner()
        records_stream = [IMPORT_ERROR, TRANSIENT_ERROR, UNKNOWN_ERROR]

        analysis = classify_errors(records_stream, ErrorClassifier())
        result = _orchestrator(runner).remediate(analysis, module_dir)

        assert runner.calls == []
        assert result.aborted
        assert not result.success

    def test_all_categories_in_order(self, module_dir: Path) -> None:
        """Imports run first, then conflicts are ignored, then retries."""

        runner = FakeTerraformRunner()
        analysis = classify_errors([TRANSIENT_ERROR, PERMISSION_ERROR, IMPORT_ERROR])

        result = _orchestrator(runner).remediate(analysis, module_dir, apply_params="-lock=false", parallelism=3)

        assert [a.action for a in result.actions] == [
            RemediationActionType.IMPORT,
            RemediationActionType.IGNORE,
            RemediationActionType.RETRY,
        ]
        assert runner.commands() == ["import", "apply"]
        assert runner.calls[1].extra["parallelism"] == 3
        assert result.success
        assert result.clean_apply

    def test_to_dict(self, module_dir: Path) -> None:
        """Session serializes for CLI output."""
        runner = FakeTerraformRunner(apply_results=[apply_failure(IMPORT_ERROR), apply_success()])

        data = _orchestrator(runner).apply_with_recovery(module_dir).to_dict()

        assert data["final_status"] == "succeeded"
        assert data["imports_applied"] == 1
        assert data["actions"][0]["action"] == "import"
