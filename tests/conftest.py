"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for tfc_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from tfc_mock import MockTerraformCloudClient, create_mock_client  # noqa: E402
from tfc_operator.config import Config  # noqa: E402
from tfc_operator.events import EventRecorder  # noqa: E402
from tfc_operator.store import FileKeyValueStore, FileResourceStore  # noqa: E402
from tfc_operator.terraform import ConfigStore  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration rooted in a temporary directory."""
    return Config(
        token="test-token",
        workspaces_dir=tmp_path / "workspaces",
        outputs_dir=tmp_path / "outputs",
        configs_dir=tmp_path / "configs",
        module_dir=tmp_path / "module",
        vcs_config_version_attempts=3,
        vcs_config_version_delay_seconds=0,
        destroy_poll_interval_seconds=1,
    )


@pytest.fixture
def client() -> MockTerraformCloudClient:
    return create_mock_client()


@pytest.fixture
def store(config: Config) -> FileResourceStore:
    return FileResourceStore(config.workspaces_dir)


@pytest.fixture
def output_store(config: Config) -> FileKeyValueStore:
    return FileKeyValueStore(config.outputs_dir)


@pytest.fixture
def config_store(config: Config) -> ConfigStore:
    return ConfigStore(FileKeyValueStore(config.configs_dir))


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
