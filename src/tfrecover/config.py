"""Configuration management with validation.

Timeouts, retry budgets and the Terraform binary are resolved once, validated
at construction time and passed explicitly into the runner, remediators and
orchestrator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ParamError


class ConfigurationError(ParamError):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_TERRAFORM_BINARY = "terraform"
DEFAULT_STATE_FILENAME = "terraform.tfstate"

DEFAULT_PLAN_TIMEOUT_SECONDS = 300
DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
DEFAULT_IMPORT_TIMEOUT_SECONDS = 180
DEFAULT_STATE_TIMEOUT_SECONDS = 120
MAX_COMMAND_TIMEOUT_SECONDS = 4 * 3600

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 30

DEFAULT_MAX_APPLY_ATTEMPTS = 5
# One pass to fail and one to re-apply after imports
MIN_APPLY_ATTEMPTS = 2
MAX_APPLY_ATTEMPTS_LIMIT = 20

DEFAULT_PARALLELISM = 10
MAX_PARALLELISM = 256

MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024  # 64KB max config file


@dataclass(frozen=True)
class RecoveryConfig:
    """Recovery engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    terraform_binary: str = DEFAULT_TERRAFORM_BINARY
    state_filename: str = DEFAULT_STATE_FILENAME

    # Timing
    plan_timeout_seconds: int = DEFAULT_PLAN_TIMEOUT_SECONDS
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS
    import_timeout_seconds: int = DEFAULT_IMPORT_TIMEOUT_SECONDS
    state_timeout_seconds: int = DEFAULT_STATE_TIMEOUT_SECONDS

    # Overall budget for one apply-with-recovery call, None means unbounded
    recovery_deadline_seconds: int | None = None

    # Retry behavior
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_seconds: int = DEFAULT_RETRY_BACKOFF_SECONDS
    max_apply_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS

    # Behavior
    default_parallelism: int = DEFAULT_PARALLELISM
    auto_recovery: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.terraform_binary:
            errors.append("TERRAFORM_BINARY must not be empty")

        if not self.state_filename or "/" in self.state_filename:
            errors.append(f"state_filename must be a bare file name: {self.state_filename!r}")

        for name, value in (
            ("TF_PLAN_TIMEOUT", self.plan_timeout_seconds),
            ("TF_APPLY_TIMEOUT", self.apply_timeout_seconds),
            ("TF_IMPORT_TIMEOUT", self.import_timeout_seconds),
            ("TF_STATE_TIMEOUT", self.state_timeout_seconds),
        ):
            if not (1 <= value <= MAX_COMMAND_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between 1 and {MAX_COMMAND_TIMEOUT_SECONDS} seconds"
                )

        if self.recovery_deadline_seconds is not None and self.recovery_deadline_seconds < 1:
            errors.append("TF_RECOVERY_DEADLINE must be at least 1 second when set")

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"TF_MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry_backoff_seconds < 0:
            errors.append("TF_RETRY_BACKOFF must not be negative")

        if not (MIN_APPLY_ATTEMPTS <= self.max_apply_attempts <= MAX_APPLY_ATTEMPTS_LIMIT):
            errors.append(
                f"TF_MAX_APPLY_ATTEMPTS must be between {MIN_APPLY_ATTEMPTS} and {MAX_APPLY_ATTEMPTS_LIMIT}"
            )

        if not (1 <= self.default_parallelism <= MAX_PARALLELISM):
            errors.append(f"TF_DEFAULT_PARALLELISM must be between 1 and {MAX_PARALLELISM}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def retry_delay(self, attempt: int) -> int:
        """Seconds to wait before retry number ``attempt`` (1-based, linear)."""
        return attempt * self.retry_backoff_seconds

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        """Load configuration from environment variables.

        Environment Variables:
            TERRAFORM_BINARY: Terraform executable (default: terraform)
            TF_PLAN_TIMEOUT: Timeout for plan rendering in seconds (default: 300)
            TF_APPLY_TIMEOUT: Timeout for a single apply in seconds (default: 1800)
            TF_IMPORT_TIMEOUT: Timeout for a single import in seconds (default: 180)
            TF_STATE_TIMEOUT: Timeout for state list/rm in seconds (default: 120)
            TF_MAX_RETRIES: Re-applies for transient errors (default: 3)
            TF_RETRY_BACKOFF: Linear backoff step in seconds (default: 30)
            TF_MAX_APPLY_ATTEMPTS: Apply passes per recovery session (default: 5)
            TF_DEFAULT_PARALLELISM: Terraform -parallelism value (default: 10)
            TF_RECOVERY_DEADLINE: Overall budget in seconds (default: unbounded)
            TF_AUTO_RECOVERY: If "false", apply once without recovery (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key)
            if not value:
                return None
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            terraform_binary=os.environ.get("TERRAFORM_BINARY", DEFAULT_TERRAFORM_BINARY),
            plan_timeout_seconds=get_int("TF_PLAN_TIMEOUT", DEFAULT_PLAN_TIMEOUT_SECONDS),
            apply_timeout_seconds=get_int("TF_APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            import_timeout_seconds=get_int("TF_IMPORT_TIMEOUT", DEFAULT_IMPORT_TIMEOUT_SECONDS),
            state_timeout_seconds=get_int("TF_STATE_TIMEOUT", DEFAULT_STATE_TIMEOUT_SECONDS),
            recovery_deadline_seconds=get_optional_int("TF_RECOVERY_DEADLINE"),
            max_retries=get_int("TF_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_seconds=get_int("TF_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF_SECONDS),
            max_apply_attempts=get_int("TF_MAX_APPLY_ATTEMPTS", DEFAULT_MAX_APPLY_ATTEMPTS),
            default_parallelism=get_int("TF_DEFAULT_PARALLELISM", DEFAULT_PARALLELISM),
            auto_recovery=get_bool("TF_AUTO_RECOVERY", True),
        )

    @classmethod
    def from_file(cls, path: Path) -> RecoveryConfig:
        """Load configuration from a YAML mapping.

        Keys are the field names of this class. Unknown keys are rejected so
        that a typo does not silently fall back to a default.

        Raises:
            ConfigurationError: If the file is missing, too large, not a
                mapping, or contains invalid values.
        """
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")

        if path.stat().st_size > MAX_CONFIG_FILE_SIZE_BYTES:
            raise ConfigurationError(
                f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file {path}: {e}") from e

        if raw_data is None:
            raw_data = {}
        if not isinstance(raw_data, dict):
            raise ConfigurationError(f"Config file must contain a YAML mapping: {path}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(str(key) for key in raw_data if key not in known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys in {path}: {unknown}")

        values: dict[str, Any] = dict(raw_data)
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid config values in {path}: {e}") from e
