"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for resource_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from resource_mock import MockObjectStore, build_registry  # noqa: E402


@pytest.fixture
def registry():
    """Registry with every sample resource type registered."""
    return build_registry()


@pytest.fixture
def store() -> MockObjectStore:
    return MockObjectStore()
