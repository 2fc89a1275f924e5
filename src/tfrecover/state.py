"""Tracked-state mutations with backup and restore.

Only this module touches `terraform.tfstate` directly. Backups are plain
byte-for-byte copies so a restore puts back exactly what was there.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from pathlib import Path

from .config import RecoveryConfig
from .errors import FileError, ParamError, TerraformError
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)


def _require_module_dir(module_dir: Path) -> None:
    if not module_dir.is_dir():
        raise FileError(f"Terraform directory does not exist: {module_dir}")


def _require_address(address: str) -> None:
    if not address or not address.strip():
        raise ParamError("Resource address must not be empty")


class StateMutator:
    """Backs up, restores and edits the tracked state of one module directory."""

    def __init__(
        self,
        runner: TerraformRunner,
        config: RecoveryConfig | None = None,
    ) -> None:
        self._runner = runner
        self._config = config or runner.config

    def state_path(self, module_dir: Path) -> Path:
        return module_dir / self._config.state_filename

    def backup(self, module_dir: Path, destination: Path) -> Path | None:
        """Copy the state file to ``destination``.

        Returns:
            The backup path, or None when there is no state file yet.

        Raises:
            FileError: If the module directory is missing or the copy fails.
        """
        _require_module_dir(module_dir)
        state_file = self.state_path(module_dir)
        if not state_file.is_file():
            logger.info("No state file to back up", extra={"module_dir": str(module_dir)})
            return None

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(state_file, destination)
        except OSError as e:
            raise FileError(f"Failed to back up {state_file} to {destination}: {e}") from e

        logger.info(
            "State backed up",
            extra={"module_dir": str(module_dir), "backup_path": str(destination)},
        )
        return destination

    def restore(self, module_dir: Path, source: Path) -> None:
        """Overwrite the state file with ``source``.

        Raises:
            FileError: If the module directory or the backup is missing.
        """
        _require_module_dir(module_dir)
        if not source.is_file():
            raise FileError(f"Backup file not found: {source}")

        state_file = self.state_path(module_dir)
        try:
            shutil.copy2(source, state_file)
        except OSError as e:
            raise FileError(f"Failed to restore {state_file} from {source}: {e}") from e

        logger.warning(
            "State restored from backup",
            extra={"module_dir": str(module_dir), "backup_path": str(source)},
        )

    def list_resources(self, module_dir: Path) -> list[str]:
        _require_module_dir(module_dir)
        return self._runner.state_list(module_dir)

    def remove_resource(self, module_dir: Path, address: str) -> None:
        """Remove ``address`` from tracked state. The real resource is untouched.

        Raises:
            TerraformError: If `terraform state rm` fails.
        """
        _require_module_dir(module_dir)
        _require_address(address)

        result = self._runner.state_rm(module_dir, address)
        if not result.succeeded:
            raise TerraformError(f"Failed to remove {address} from state: {result.error_excerpt()}")
        logger.info("Resource removed from state", extra={"address": address})

    def import_resource(
        self,
        module_dir: Path,
        address: str,
        external_id: str,
        import_params: str | Sequence[str] | None = None,
    ) -> None:
        """Import one existing resource.

        Raises:
            TerraformError: If `terraform import` fails.
        """
        _require_module_dir(module_dir)
        _require_address(address)
        if not external_id:
            raise ParamError("External resource ID must not be empty")

        result = self._runner.import_resource(module_dir, address, external_id, import_params)
        if not result.succeeded:
            raise TerraformError(f"Failed to import {address}: {result.error_excerpt()}")
        logger.info("Resource imported", extra={"address": address, "external_id": external_id})

    def replace_resource(
        self,
        module_dir: Path,
        address: str,
        new_external_id: str,
        backup_path: Path | None = None,
        import_params: str | Sequence[str] | None = None,
    ) -> None:
        """Rebind ``address`` to a different real-world resource.

        The old binding is removed (a failed removal is logged and ignored,
        the address may not be tracked yet) and the new one imported. When
        ``backup_path`` is given the state is backed up first and put back
        if the import fails, leaving state exactly as it was.

        Raises:
            FileError: If the module directory is missing.
            ParamError: If address or external ID is empty.
            TerraformError: If the import fails.
        """
        _require_module_dir(module_dir)
        _require_address(address)
        if not new_external_id:
            raise ParamError("External resource ID must not be empty")

        logger.info(
            "Replacing resource binding",
            extra={"address": address, "external_id": new_external_id},
        )

        backup = self.backup(module_dir, backup_path) if backup_path is not None else None

        rm_result = self._runner.state_rm(module_dir, address)
        if not rm_result.succeeded:
            logger.warning(
                "State removal failed, continuing with import",
                extra={"address": address, "error": rm_result.error_excerpt()},
            )

        import_result = self._runner.import_resource(
            module_dir, address, new_external_id, import_params
        )
        if import_result.succeeded:
            logger.info("Resource replaced", extra={"address": address})
            return

        if backup is not None:
            self.restore(module_dir, backup)
        elif backup_path is not None:
            # There was no state before; drop whatever the failed commands left
            self.state_path(module_dir).unlink(missing_ok=True)
        raise TerraformError(
            f"Failed to import {address} as {new_external_id}: {import_result.error_excerpt()}"
        )


def replace_resource(
    module_dir: Path,
    address: str,
    new_external_id: str,
    backup_path: Path | None = None,
    config: RecoveryConfig | None = None,
) -> None:
    """Module-level shortcut for StateMutator.replace_resource()."""
    runner = TerraformRunner(config)
    StateMutator(runner).replace_resource(module_dir, address, new_external_id, backup_path)
