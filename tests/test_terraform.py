"""Tests for configuration rendering and the config store."""

from pathlib import Path

import pytest

from tfc_operator.models import WorkspaceResource
from tfc_operator.store import FileKeyValueStore
from tfc_operator.terraform import (
    CONFIGURATION_TEMPLATE,
    TEMPLATE_DIR,
    ConfigStore,
    render_configuration,
)

EXPECTED = """\
terraform {
  backend "remote" {
    organization = "acme"

    workspaces {
      name = "prod-network"
    }
  }
}
variable "region" {}
output "vpc" {
  value = module.operator.vpc_id
}
module "operator" {
  source = "app.terraform.io/acme/network/aws"
  version = "1.2.0"
  region = var.region
}
"""


def make_resource(**spec: object) -> WorkspaceResource:
    return WorkspaceResource.model_validate(
        {
            "metadata": {"name": "network", "namespace": "prod"},
            "spec": {"organization": "acme", **spec},
        }
    )


class TestRenderConfiguration:
    """Tests for render_configuration()."""

    def test_renders_module_workspace(self) -> None:
        """Test that environment variables are not declared as module inputs."""
        resource = make_resource(
            module={"source": "app.terraform.io/acme/network/aws", "version": "1.2.0"},
            variables=[
                {"key": "region", "value": "eu-west-1"},
                {"key": "AWS_REGION", "value": "eu-west-1", "environmentVariable": True},
            ],
            outputs=[{"key": "vpc", "moduleOutputName": "vpc_id"}],
        )

        assert render_configuration(resource) == EXPECTED

    def test_version_omitted_when_unset(self) -> None:
        text = render_configuration(make_resource(module={"source": "git::https://example.com/m"}))

        assert "version" not in text
        assert 'source = "git::https://example.com/m"' in text

    def test_minimal_module(self) -> None:
        """Test that a module without inputs or outputs renders only the required blocks."""
        text = render_configuration(make_resource(module={"source": "x"}))

        assert text == EXPECTED.split("variable")[0] + (
            'module "operator" {\n'
            '  source = "x"\n'
            "}\n"
        )

    def test_template_ships_with_package(self) -> None:
        assert (TEMPLATE_DIR / CONFIGURATION_TEMPLATE).is_file()

    def test_deterministic(self) -> None:
        resource = make_resource(module={"source": "x"}, variables=[{"key": "a"}, {"key": "b"}])

        assert render_configuration(resource) == render_configuration(resource.model_copy(deep=True))

    def test_requires_module(self) -> None:
        with pytest.raises(ValueError):
            render_configuration(make_resource())


class TestConfigStore:
    """Tests for ConfigStore."""

    def test_upsert_reports_changes(self, tmp_path: Path) -> None:
        store = ConfigStore(FileKeyValueStore(tmp_path))

        assert store.get("prod", "network") is None
        assert store.upsert("prod", "network", "a\n") is True
        assert store.upsert("prod", "network", "a\n") is False
        assert store.upsert("prod", "network", "b\n") is True
        assert store.get("prod", "network") == "b\n"
