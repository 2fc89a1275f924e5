"""Tests for the destructive-change plan gate."""

from pathlib import Path

import pytest
from terraform_mock import FakeTerraformRunner, plan_document

from tfrecover.errors import DestructiveChangesError, FileError, ParamError, TerraformError
from tfrecover.plan_analysis import (
    ChangeAction,
    ChangeImpact,
    ChangeRecord,
    PlanAnalysis,
    RiskAnalyzer,
    analyze_plan,
    enforce_plan_gate,
    extract_changes,
    format_destructive_changes,
)


@pytest.fixture
def plan_file(module_dir: Path) -> Path:
    path = module_dir / "plan.tfplan"
    path.write_bytes(b"PK\x03\x04 binary plan")
    return path


class TestChangeRecord:
    """Tests for ChangeRecord impact."""

    @pytest.mark.parametrize(
        ("actions", "impact"),
        [
            ((ChangeAction.DELETE, ChangeAction.CREATE), ChangeImpact.RECREATE),
            ((ChangeAction.CREATE, ChangeAction.DELETE), ChangeImpact.RECREATE),
            ((ChangeAction.DELETE,), ChangeImpact.DESTROY),
            ((ChangeAction.CREATE,), ChangeImpact.NON_DESTRUCTIVE),
            ((ChangeAction.UPDATE,), ChangeImpact.NON_DESTRUCTIVE),
            ((ChangeAction.NO_OP,), ChangeImpact.NON_DESTRUCTIVE),
            ((ChangeAction.READ,), ChangeImpact.NON_DESTRUCTIVE),
        ],
    )
    def test_impact(self, actions: tuple[ChangeAction, ...], impact: ChangeImpact) -> None:
        """Delete with create is a recreate, delete alone a destroy."""
        assert ChangeRecord(address="a.b", actions=actions).impact == impact

    def test_empty_actions_rejected(self) -> None:
        """A change must have at least one action."""
        with pytest.raises(ValueError):
            ChangeRecord(address="a.b", actions=())


class TestExtractChanges:
    """Tests for extract_changes."""

    def test_reads_addresses_and_actions(self) -> None:
        """Every resource change becomes a ChangeRecord."""
        document = plan_document(
            ("azurerm_resource_group.rg", ["no-op"]),
            ("azurerm_key_vault.kv", ["delete", "create"]),
        )

        changes = extract_changes(document)

        assert [c.address for c in changes] == ["azurerm_resource_group.rg", "azurerm_key_vault.kv"]
        assert changes[1].actions == (ChangeAction.DELETE, ChangeAction.CREATE)

    def test_skips_only_entries_without_actions(self) -> None:
        """Unknown verbs are kept as plain strings; empty entries are dropped."""
        document = plan_document(
            ("a.unknown", ["explode"]),
            ("a.empty", []),
            ("a.ok", ["update"]),
        )

        changes = extract_changes(document)

        assert [c.address for c in changes] == ["a.unknown", "a.ok"]
        assert changes[0].actions == ("explode",)
        assert changes[0].impact == ChangeImpact.NON_DESTRUCTIVE

    def test_delete_with_unknown_verb_is_destructive(self) -> None:
        """A delete next to an unrecognised verb still counts."""
        document = plan_document(
            ("azurerm_key_vault.kv", ["delete", "forget"]),
            ("azurerm_subnet.app", ["create", "archive", "delete"]),
        )

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(document)

        assert analysis.resources_to_destroy == ["azurerm_key_vault.kv"]
        assert analysis.resources_to_recreate == ["azurerm_subnet.app"]
        with pytest.raises(DestructiveChangesError):
            enforce_plan_gate(analysis)

    def test_malformed_delete_entries_are_destructive(self) -> None:
        """Entries failing validation fall back to raw fields and an unknown address."""
        document = {
            "resource_changes": [
                {"address": 42, "change": {"actions": ["delete"]}},
                {"address": "a.bad", "change": {"actions": "delete"}},
                {"address": None, "change": {"actions": ["delete", "create"]}},
                {"address": "a.ints", "change": {"actions": [1, 2]}},
                "not an entry",
            ]
        }

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(document)

        assert analysis.resources_to_destroy == ["unknown", "a.bad"]
        assert analysis.resources_to_recreate == ["unknown"]
        assert analysis.destructive_count == 3
        assert analysis.resources_inspected == 4

    def test_missing_resource_changes(self) -> None:
        """A plan with nothing to change has no records."""
        assert extract_changes({"format_version": "1.2"}) == []

    def test_resource_changes_not_a_list(self) -> None:
        """A structurally broken document raises TerraformError."""
        with pytest.raises(TerraformError):
            extract_changes({"resource_changes": {"address": "a.b"}})


class TestAnalyzePlanDocument:
    """Tests for RiskAnalyzer.analyze_plan_document."""

    def test_no_deletes_means_safe(self) -> None:
        """Plans without delete actions have zero destructive changes."""
        document = plan_document(
            ("a.create", ["create"]),
            ("a.update", ["update"]),
            ("a.read", ["read"]),
            ("a.noop", ["no-op"]),
        )

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(document)

        assert analysis.destructive_count == 0
        assert analysis.is_safe
        assert analysis.resources_inspected == 4

    def test_recreate_not_counted_as_destroy(self) -> None:
        """Recreated resources appear only in the recreate list."""
        document = plan_document(
            ("a.first", ["create", "delete"]),
            ("a.second", ["delete", "create"]),
            ("a.gone", ["delete"]),
        )

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(document)

        assert analysis.resources_to_recreate == ["a.first", "a.second"]
        assert analysis.resources_to_destroy == ["a.gone"]
        assert analysis.destructive_count == 3

    def test_patterns_select_addresses(self) -> None:
        """Only addresses matching a pattern are considered."""
        document = plan_document(
            ("azurerm_key_vault.kv", ["delete"]),
            ("azurerm_storage_account.sa", ["delete"]),
            ("module.net.azurerm_subnet.app", ["delete", "create"]),
        )

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(
            document, [r"azurerm_key_vault\.", r"subnet"]
        )

        assert analysis.resources_to_destroy == ["azurerm_key_vault.kv"]
        assert analysis.resources_to_recreate == ["module.net.azurerm_subnet.app"]

    def test_pattern_is_searched_not_anchored(self) -> None:
        """Patterns match anywhere in the address."""
        document = plan_document(("module.db.azurerm_mssql_database.main", ["delete"]))

        analysis = RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(document, ["mssql"])

        assert analysis.destructive_count == 1

    def test_invalid_pattern(self) -> None:
        """Invalid regular expressions raise ParamError."""
        with pytest.raises(ParamError):
            RiskAnalyzer(FakeTerraformRunner()).analyze_plan_document(plan_document(), ["("])


class TestAnalyzePlan:
    """Tests for analyze_plan against a rendered plan."""

    def test_recreate_scenario(self, module_dir: Path, plan_file: Path) -> None:
        """A single delete+create with pattern .* fails the gate."""
        runner = FakeTerraformRunner(
            plan_document=plan_document(("azurerm_linux_virtual_machine.vm", ["delete", "create"]))
        )

        analysis = analyze_plan(module_dir, plan_file, [".*"], runner=runner)

        assert analysis.resources_to_recreate == ["azurerm_linux_virtual_machine.vm"]
        assert analysis.destructive_count == 1
        with pytest.raises(DestructiveChangesError) as exc_info:
            enforce_plan_gate(analysis)
        assert exc_info.value.analysis is analysis
        assert exc_info.value.exit_code == 20
        assert runner.count("show") == 1

    def test_safe_plan_passes_gate(self, module_dir: Path, plan_file: Path) -> None:
        """A plan without deletes passes."""
        runner = FakeTerraformRunner(plan_document=plan_document(("a.b", ["create"])))

        analysis = analyze_plan(module_dir, plan_file, runner=runner)

        enforce_plan_gate(analysis)

    def test_missing_module_dir(self, tmp_path: Path) -> None:
        """Missing module directory raises FileError."""
        with pytest.raises(FileError):
            analyze_plan(tmp_path / "nope", tmp_path / "plan", runner=FakeTerraformRunner())

    def test_missing_plan_file(self, module_dir: Path) -> None:
        """Missing plan file raises FileError without calling terraform."""
        runner = FakeTerraformRunner()

        with pytest.raises(FileError):
            analyze_plan(module_dir, module_dir / "missing.tfplan", runner=runner)

        assert runner.calls == []

    def test_invalid_pattern_checked_first(self, module_dir: Path, plan_file: Path) -> None:
        """Pattern errors surface before terraform show runs."""
        runner = FakeTerraformRunner(plan_document=plan_document())

        with pytest.raises(ParamError):
            analyze_plan(module_dir, plan_file, ["[unclosed"], runner=runner)

        assert runner.calls == []

    def test_render_failure(self, module_dir: Path, plan_file: Path) -> None:
        """A plan that cannot be rendered raises TerraformError."""
        with pytest.raises(TerraformError):
            analyze_plan(module_dir, plan_file, runner=FakeTerraformRunner())


class TestReporting:
    """Tests for report formatting."""

    def test_format_lists_addresses(self) -> None:
        """Report names every recreated and destroyed address."""
        analysis = PlanAnalysis(
            resources_to_recreate=["a.recreated"],
            resources_to_destroy=["a.destroyed"],
        )

        report = format_destructive_changes(analysis)

        assert "RECREATED" in report
        assert "~ a.recreated" in report
        assert "DESTROYED" in report
        assert "- a.destroyed" in report

    def test_to_dict(self) -> None:
        """Serialized analysis keeps the count invariant."""
        analysis = PlanAnalysis(resources_to_recreate=["a"], resources_to_destroy=["b", "c"])

        data = analysis.to_dict()

        assert data["destructive_changes"] == 3
        assert data["resources_to_destroy"] == ["b", "c"]
