"""Tests for remote workspace convergence."""

import pytest

from tfc_mock import MockTerraformCloudClient
from tfc_operator.models import AgentPool, SSHKey, WorkspaceResource
from tfc_operator.tfc_client import PlatformAPIError, ResourceNotFoundError
from tfc_operator.workspace_sync import WorkspaceSynchronizer


def make_resource(**spec: object) -> WorkspaceResource:
    return WorkspaceResource.model_validate(
        {
            "metadata": {"name": "network", "namespace": "prod"},
            "spec": {"organization": "acme", "module": {"source": "x"}, **spec},
        }
    )


class TestEnsure:
    """Tests for WorkspaceSynchronizer.ensure()."""

    @pytest.mark.asyncio
    async def test_creates_missing_workspace(self, client: MockTerraformCloudClient) -> None:
        """Test that a missing workspace is created with the default version and auto-apply."""
        workspace = await WorkspaceSynchronizer(client).ensure(make_resource())

        assert workspace is not None
        assert workspace.name == "prod-network"
        assert workspace.terraform_version == "latest"
        assert workspace.auto_apply is True
        assert client.state.operations() == ["create_workspace"]

    @pytest.mark.asyncio
    async def test_creates_vcs_workspace(self, client: MockTerraformCloudClient) -> None:
        resource = WorkspaceResource.model_validate(
            {
                "metadata": {"name": "network", "namespace": "prod"},
                "spec": {
                    "organization": "acme",
                    "vcs": {"tokenID": "ot-1", "repoIdentifier": "acme/infra", "branch": "main"},
                    "terraformVersion": "1.6.0",
                },
            }
        )

        await WorkspaceSynchronizer(client).ensure(resource)

        mutation = client.state.mutations[0]
        assert mutation.detail["terraform_version"] == "1.6.0"
        assert mutation.detail["vcs_repo"] == {
            "identifier": "acme/infra",
            "branch": "main",
            "oauth-token-id": "ot-1",
            "ingress-submodules": False,
        }

    @pytest.mark.asyncio
    async def test_adopts_existing_workspace(self, client: MockTerraformCloudClient) -> None:
        existing = client.state.add_workspace("acme", "prod-network", terraform_version="1.5.0")

        workspace = await WorkspaceSynchronizer(client).ensure(make_resource())

        assert workspace is not None
        assert workspace.id == existing.id
        assert client.state.mutations == []

    @pytest.mark.asyncio
    async def test_missing_organization(self, client: MockTerraformCloudClient) -> None:
        with pytest.raises(ResourceNotFoundError):
            await WorkspaceSynchronizer(client).ensure(make_resource(organization="nope"))

    @pytest.mark.asyncio
    async def test_no_create_when_disabled(self, client: MockTerraformCloudClient) -> None:
        """Test that a read-only ensure neither creates nor converges."""
        assert await WorkspaceSynchronizer(client).ensure(make_resource(), create=False) is None

        client.state.add_workspace("acme", "prod-network", terraform_version="1.5.0")
        workspace = await WorkspaceSynchronizer(client).ensure(
            make_resource(terraformVersion="1.6.0"), create=False
        )

        assert workspace is not None
        assert workspace.terraform_version == "1.5.0"
        assert client.state.mutations == []


class TestConvergeSettings:
    """Tests for SSH key, version and agent pool convergence."""

    @pytest.mark.asyncio
    async def test_version_updated_only_when_declared(self, client: MockTerraformCloudClient) -> None:
        client.state.add_workspace("acme", "prod-network", terraform_version="1.5.0")
        synchronizer = WorkspaceSynchronizer(client)

        await synchronizer.ensure(make_resource())
        assert client.state.mutations == []

        workspace = await synchronizer.ensure(make_resource(terraformVersion="1.6.0"))
        assert workspace is not None
        assert workspace.terraform_version == "1.6.0"
        assert client.state.operations() == ["update_workspace"]

    @pytest.mark.asyncio
    async def test_ssh_key_by_name(self, client: MockTerraformCloudClient) -> None:
        """Test that an SSH key declared by name is assigned once."""
        client.state.ssh_keys = [SSHKey(id="sshkey-1", name="deploy")]
        client.state.add_workspace("acme", "prod-network")
        synchronizer = WorkspaceSynchronizer(client)

        workspace = await synchronizer.ensure(make_resource(sshKeyID="deploy"))
        assert workspace is not None
        assert workspace.ssh_key_id == "sshkey-1"

        await synchronizer.ensure(make_resource(sshKeyID="sshkey-1"))
        assert client.state.operations() == ["assign_ssh_key"]

    @pytest.mark.asyncio
    async def test_ssh_key_unassigned(self, client: MockTerraformCloudClient) -> None:
        client.state.add_workspace("acme", "prod-network", ssh_key_id="sshkey-1")

        workspace = await WorkspaceSynchronizer(client).ensure(make_resource())

        assert workspace is not None
        assert workspace.ssh_key_id == ""
        assert client.state.operations() == ["unassign_ssh_key"]

    @pytest.mark.asyncio
    async def test_agent_pool_name_takes_precedence(self, client: MockTerraformCloudClient) -> None:
        client.state.agent_pools = [AgentPool(id="apool-1", name="private"), AgentPool(id="apool-2", name="edge")]
        client.state.add_workspace("acme", "prod-network")

        workspace = await WorkspaceSynchronizer(client).ensure(
            make_resource(agentPoolName="edge", agentPoolID="apool-1")
        )

        assert workspace is not None
        assert workspace.agent_pool_id == "apool-2"
        assert workspace.execution_mode == "agent"

    @pytest.mark.asyncio
    async def test_agent_pool_removed(self, client: MockTerraformCloudClient) -> None:
        client.state.add_workspace(
            "acme", "prod-network", agent_pool_id="apool-1", execution_mode="agent"
        )

        workspace = await WorkspaceSynchronizer(client).ensure(make_resource())

        assert workspace is not None
        assert workspace.agent_pool_id == ""
        assert workspace.execution_mode == "remote"

    @pytest.mark.asyncio
    async def test_settings_converge_independently(self, client: MockTerraformCloudClient) -> None:
        """Test that a failing setting does not stop the others and is raised afterwards."""
        client.state.add_workspace("acme", "prod-network", terraform_version="1.5.0")
        client.state.ssh_keys = []

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await WorkspaceSynchronizer(client).ensure(
                make_resource(sshKeyID="missing", terraformVersion="1.6.0")
            )

        assert "SSH key" in str(exc_info.value)
        assert client.state.workspace_named("prod-network").terraform_version == "1.6.0"

    @pytest.mark.asyncio
    async def test_first_error_raised(self, client: MockTerraformCloudClient) -> None:
        client.state.add_workspace("acme", "prod-network", terraform_version="1.5.0")
        client.state.fail_on("update_workspace", PlatformAPIError("boom", status_code=500))

        with pytest.raises(PlatformAPIError) as exc_info:
            await WorkspaceSynchronizer(client).ensure(make_resource(terraformVersion="1.6.0"))

        assert exc_info.value.status_code == 500


class TestReadOrCreate:
    """Tests for the read-or-create step on its own."""

    @pytest.mark.asyncio
    async def test_does_not_converge_settings(self, client: MockTerraformCloudClient) -> None:
        """Test that an unresolvable setting cannot fail the create step."""
        resource = make_resource(sshKeyID="missing-key")

        workspace = await WorkspaceSynchronizer(client).read_or_create(resource)

        assert workspace is not None
        assert client.state.operations() == ["create_workspace"]

        with pytest.raises(ResourceNotFoundError) as exc_info:
            await WorkspaceSynchronizer(client).converge(resource, workspace)

        assert "No SSH key found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_without_create(self, client: MockTerraformCloudClient) -> None:
        workspace = await WorkspaceSynchronizer(client).read_or_create(make_resource(), create=False)

        assert workspace is None
        assert client.state.mutations == []
