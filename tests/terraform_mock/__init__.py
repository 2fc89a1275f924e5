"""Terraform CLI Mock for Testing.

This module provides a scripted stand-in for TerraformRunner so the
recovery engine can be exercised without a Terraform binary.

Key Features:
- Scripted apply/import/state rm outcomes, consumed in call order
- Builders for `terraform apply -json` streams and plan documents
- Call log for asserting exactly which commands ran, and with what timeout
- Optional state-file mutation to verify backup and restore

Usage:
    from terraform_mock import FakeTerraformRunner, apply_failure, error_line

    runner = FakeTerraformRunner(
        apply_results=[apply_failure(error_line("connection reset by peer")), apply_success()],
    )
    session = ApplyOrchestrator(runner, sleep=lambda _: None).apply_with_recovery(module_dir)

    assert runner.count("apply") == 2
"""

from .output import (
    apply_failure,
    apply_success,
    apply_timeout,
    command_failure,
    command_success,
    error_line,
    info_line,
    plan_document,
)
from .runner import FakeTerraformRunner, RecordedCall

__all__ = [
    "FakeTerraformRunner",
    "RecordedCall",
    "apply_failure",
    "apply_success",
    "apply_timeout",
    "command_failure",
    "command_success",
    "error_line",
    "info_line",
    "plan_document",
]
