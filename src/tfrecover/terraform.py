"""Thin wrapper around the Terraform CLI.

Every invocation is a blocking subprocess call with an explicit timeout.
`subprocess.run` kills the child when the timeout expires; partial output of
a killed command is discarded.

SECURITY: Commands are always run as argument lists, never through a shell.
Pass-through parameter strings are split with shlex.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import RecoveryConfig
from .errors import DependencyError, ParamError, TerraformError

logger = logging.getLogger(__name__)

# Flags that make apply non-interactive and machine-readable
APPLY_FLAGS = ("-no-color", "-compact-warnings", "-json", "-input=false", "-auto-approve")

# Cap on captured output kept in error messages
MAX_ERROR_OUTPUT_CHARS = 2000


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one Terraform invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output_lines(self) -> list[str]:
        """Combined output split into lines, stdout first."""
        return (self.stdout + ("\n" if self.stdout and self.stderr else "") + self.stderr).splitlines()

    def error_excerpt(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-MAX_ERROR_OUTPUT_CHARS:]


def split_params(params: str | Sequence[str] | None) -> list[str]:
    """Turn a pass-through parameter string into an argument list."""
    if params is None:
        return []
    if isinstance(params, str):
        try:
            return shlex.split(params)
        except ValueError as e:
            raise ParamError(f"Cannot parse Terraform parameters {params!r}: {e}") from e
    return [str(p) for p in params]


class TerraformRunner:
    """Runs Terraform commands against one module directory at a time."""

    def __init__(
        self,
        config: RecoveryConfig | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._config = config or RecoveryConfig()
        self._env = env

    @property
    def config(self) -> RecoveryConfig:
        return self._config

    def ensure_available(self) -> str:
        """Return the resolved Terraform executable path.

        Raises:
            DependencyError: If the binary cannot be found.
        """
        binary = shutil.which(self._config.terraform_binary)
        if binary is None:
            raise DependencyError(
                f"Terraform binary not found: {self._config.terraform_binary}. "
                "Install from https://developer.hashicorp.com/terraform/install"
            )
        return binary

    def run(
        self,
        module_dir: Path,
        args: Sequence[str],
        *,
        timeout: float,
    ) -> CommandResult:
        """Run `terraform -chdir=<module_dir> <args>`.

        Raises:
            DependencyError: If the Terraform binary does not exist.
        """
        cmd = [self._config.terraform_binary, f"-chdir={module_dir}", *args]
        full_env = os.environ.copy()
        full_env["TF_IN_AUTOMATION"] = "1"
        if self._env:
            full_env.update(self._env)

        logger.debug("Running terraform", extra={"command": cmd[1:], "timeout_seconds": timeout})

        try:
            completed = subprocess.run(
                cmd,
                env=full_env,
                timeout=timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Terraform command timed out",
                extra={"command": cmd[1:], "timeout_seconds": timeout},
            )
            return CommandResult(args=tuple(cmd), returncode=-1, timed_out=True)
        except FileNotFoundError as e:
            raise DependencyError(
                f"Terraform binary not found: {self._config.terraform_binary}"
            ) from e

        return CommandResult(
            args=tuple(cmd),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def apply(
        self,
        module_dir: Path,
        apply_params: str | Sequence[str] | None,
        parallelism: int,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a non-interactive apply producing the JSON diagnostic stream."""
        args = ["apply", f"-parallelism={parallelism}", *split_params(apply_params), *APPLY_FLAGS]
        return self.run(
            module_dir,
            args,
            timeout=timeout if timeout is not None else self._config.apply_timeout_seconds,
        )

    def import_resource(
        self,
        module_dir: Path,
        address: str,
        external_id: str,
        import_params: str | Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        """Bind an existing real-world resource to ``address`` in tracked state."""
        args = ["import", "-input=false", *split_params(import_params), address, external_id]
        return self.run(
            module_dir,
            args,
            timeout=timeout if timeout is not None else self._config.import_timeout_seconds,
        )

    def state_rm(self, module_dir: Path, address: str) -> CommandResult:
        """Remove ``address`` from tracked state."""
        return self.run(
            module_dir,
            ["state", "rm", address],
            timeout=self._config.state_timeout_seconds,
        )

    def state_list(self, module_dir: Path) -> list[str]:
        """List every address in tracked state.

        Raises:
            TerraformError: If Terraform cannot read the state.
        """
        result = self.run(module_dir, ["state", "list"], timeout=self._config.state_timeout_seconds)
        if not result.succeeded:
            raise TerraformError(f"terraform state list failed: {result.error_excerpt()}")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def show_plan_json(self, module_dir: Path, plan_file: Path) -> dict[str, Any]:
        """Render a saved plan file as a JSON document.

        Raises:
            TerraformError: If rendering fails, times out or yields invalid JSON.
        """
        result = self.run(
            module_dir,
            ["show", "-json", str(plan_file)],
            timeout=self._config.plan_timeout_seconds,
        )
        if result.timed_out:
            raise TerraformError(
                f"terraform show timed out after {self._config.plan_timeout_seconds}s"
            )
        if not result.succeeded:
            raise TerraformError(f"Failed to convert plan to JSON: {result.error_excerpt()}")

        try:
            document = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise TerraformError(f"terraform show returned invalid JSON: {e}") from e

        if not isinstance(document, dict):
            raise TerraformError("terraform show did not return a JSON object")
        return document

    def version(self) -> str:
        """Return the Terraform version string.

        Raises:
            DependencyError: If the binary is missing or does not report a version.
        """
        self.ensure_available()
        result = self.run(Path.cwd(), ["version", "-json"], timeout=30)
        if not result.succeeded:
            raise DependencyError(f"terraform version failed: {result.error_excerpt()}")
        try:
            return str(json.loads(result.stdout)["terraform_version"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise DependencyError(f"Could not determine Terraform version: {e}") from e


class Deadline:
    """Overall time budget shared by every command of one recovery session.

    A deadline of None never expires and leaves command timeouts untouched.
    """

    def __init__(
        self,
        seconds: float | None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def cap(self, timeout: float) -> float:
        """Shrink ``timeout`` so a command cannot outlive the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
