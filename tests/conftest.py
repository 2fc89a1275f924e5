"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for terraform_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))


@pytest.fixture
def module_dir(tmp_path: Path) -> Path:
    """An empty Terraform module directory."""
    directory = tmp_path / "infra"
    directory.mkdir()
    (directory / "main.tf").write_text('resource "null_resource" "example" {}\n')
    return directory
