"""Pydantic models for Terraform's machine-readable output.

These models provide:
1. Type-safe parsing of `terraform apply -json` log lines
2. Type-safe parsing of `resource_changes[]` entries from
   `terraform show -json <plan>` documents
3. Validation at the boundary, so malformed provisioner output is rejected
   per line or per entry instead of deep inside the classifier
"""

from __future__ import annotations

from pydantic import BaseModel, Field

# =============================================================================
# Apply log stream (terraform apply -json)
# =============================================================================


class Diagnostic(BaseModel):
    """The `diagnostic` object attached to warning and error log lines."""

    model_config = {"extra": "ignore"}

    severity: str | None = None
    summary: str | None = None
    detail: str | None = None
    address: str | None = None


class LogLine(BaseModel):
    """One line of the newline-delimited JSON apply stream."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    level: str = Field(alias="@level")
    message: str | None = Field(None, alias="@message")
    type: str | None = None
    diagnostic: Diagnostic | None = None


# =============================================================================
# Plan document (terraform show -json)
# =============================================================================


class Change(BaseModel):
    """The `change` object of a planned resource change."""

    model_config = {"extra": "ignore"}

    actions: list[str] = Field(default_factory=list)


class ResourceChange(BaseModel):
    """One entry of `resource_changes[]`."""

    model_config = {"extra": "ignore"}

    address: str = "unknown"
    mode: str | None = None
    type: str | None = None
    name: str | None = None
    change: Change = Field(default_factory=Change)
