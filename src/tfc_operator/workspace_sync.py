"""Remote workspace convergence.

Reads the remote workspace for a resource, creating it when missing, then
converges its settings in a separate step:
- SSH key (declared by name or ID)
- Terraform version
- Agent pool and execution mode

Each setting converges independently: a failure in one does not stop the
others, and the first failure is raised once all were attempted.
"""

from __future__ import annotations

import logging

from .config import DEFAULT_TERRAFORM_VERSION
from .models import RemoteWorkspace, WorkspaceResource, WorkspaceSpec
from .tfc_client import ResourceNotFoundError, TerraformCloudClient

EXECUTION_MODE_AGENT = "agent"
EXECUTION_MODE_REMOTE = "remote"


class WorkspaceSynchronizer:
    """Ensures the remote workspace exists and matches its declared settings."""

    def __init__(
        self,
        client: TerraformCloudClient,
        logger: logging.Logger | None = None,
        default_terraform_version: str = DEFAULT_TERRAFORM_VERSION,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)
        self._default_terraform_version = default_terraform_version

    async def ensure(
        self, resource: WorkspaceResource, *, create: bool = True
    ) -> RemoteWorkspace | None:
        """Read (or create) and converge the remote workspace.

        Args:
            resource: Workspace resource.
            create: Create the workspace when missing. When False a missing
                workspace returns None and nothing is converged.

        Raises:
            ResourceNotFoundError: If the organization does not exist.
            PlatformAPIError: If a platform call fails.
        """
        workspace = await self.read_or_create(resource, create=create)
        if workspace is None or not create:
            return workspace
        return await self.converge(resource, workspace)

    async def read_or_create(
        self, resource: WorkspaceResource, *, create: bool = True
    ) -> RemoteWorkspace | None:
        """Read the remote workspace, creating it when missing and allowed.

        Settings are not converged here, so a caller can record the
        workspace before any setting update can fail.
        """
        spec = resource.spec
        name = resource.workspace_name
        await self._client.read_organization(spec.organization)

        try:
            return await self._client.read_workspace(spec.organization, name)
        except ResourceNotFoundError:
            if not create:
                return None
            return await self._create(spec, name)

    async def converge(
        self, resource: WorkspaceResource, workspace: RemoteWorkspace
    ) -> RemoteWorkspace:
        """Converge SSH key, Terraform version and agent pool.

        Every setting is attempted; the first failure is raised afterwards.
        """
        spec = resource.spec
        name = resource.workspace_name
        errors: list[Exception] = []
        for step in (self._converge_ssh_key, self._converge_version, self._converge_agent_pool):
            try:
                workspace = await step(spec, workspace)
            except Exception as e:
                self._logger.error(
                    "Failed to converge workspace setting",
                    extra={
                        "workspace": name,
                        "setting": step.__name__.removeprefix("_converge_"),
                        "error": str(e),
                    },
                )
                errors.append(e)

        if errors:
            raise errors[0]
        return workspace

    async def _create(self, spec: WorkspaceSpec, name: str) -> RemoteWorkspace:
        vcs_repo = None
        if spec.vcs is not None:
            vcs_repo = {
                "identifier": spec.vcs.repo_identifier,
                "branch": spec.vcs.branch,
                "oauth-token-id": spec.vcs.token_id,
                "ingress-submodules": spec.vcs.ingress_submodules,
            }

        workspace = await self._client.create_workspace(
            spec.organization,
            name,
            terraform_version=spec.terraform_version or self._default_terraform_version,
            auto_apply=True,
            vcs_repo=vcs_repo,
            agent_pool_id=await self._resolve_agent_pool(spec),
        )
        self._logger.info(
            "Created workspace",
            extra={"workspace": name, "workspace_id": workspace.id},
        )
        return workspace

    async def _resolve_ssh_key(self, spec: WorkspaceSpec) -> str:
        keys = await self._client.list_ssh_keys(spec.organization)
        for key in keys:
            if spec.ssh_key_id in (key.id, key.name):
                return key.id
        raise ResourceNotFoundError(f"No SSH key found for {spec.ssh_key_id}", status_code=404)

    async def _resolve_agent_pool(self, spec: WorkspaceSpec) -> str:
        """Agent pool ID to use, "" for none. A pool name takes precedence."""
        if spec.agent_pool_name:
            pools = await self._client.list_agent_pools(spec.organization)
            for pool in pools:
                if pool.name == spec.agent_pool_name:
                    return pool.id
            raise ResourceNotFoundError(
                f"No agent pool found with name {spec.agent_pool_name}", status_code=404
            )
        return spec.agent_pool_id

    async def _converge_ssh_key(
        self, spec: WorkspaceSpec, workspace: RemoteWorkspace
    ) -> RemoteWorkspace:
        if spec.ssh_key_id:
            key_id = await self._resolve_ssh_key(spec)
            if key_id == workspace.ssh_key_id:
                return workspace
            self._logger.info(
                "Assigning SSH key", extra={"workspace_id": workspace.id, "ssh_key_id": key_id}
            )
            return await self._client.assign_ssh_key(workspace.id, key_id)

        if workspace.ssh_key_id:
            self._logger.info("Unassigning SSH key", extra={"workspace_id": workspace.id})
            return await self._client.unassign_ssh_key(workspace.id)
        return workspace

    async def _converge_version(
        self, spec: WorkspaceSpec, workspace: RemoteWorkspace
    ) -> RemoteWorkspace:
        if not spec.terraform_version or spec.terraform_version == workspace.terraform_version:
            return workspace
        self._logger.info(
            "Updating Terraform version",
            extra={
                "workspace_id": workspace.id,
                "from": workspace.terraform_version,
                "to": spec.terraform_version,
            },
        )
        return await self._client.update_workspace(
            workspace.id, terraform_version=spec.terraform_version
        )

    async def _converge_agent_pool(
        self, spec: WorkspaceSpec, workspace: RemoteWorkspace
    ) -> RemoteWorkspace:
        pool_id = await self._resolve_agent_pool(spec)
        if pool_id == workspace.agent_pool_id:
            return workspace

        self._logger.info(
            "Updating agent pool",
            extra={"workspace_id": workspace.id, "agent_pool_id": pool_id},
        )
        if pool_id:
            return await self._client.update_workspace(
                workspace.id, agent_pool_id=pool_id, execution_mode=EXECUTION_MODE_AGENT
            )
        return await self._client.update_workspace(
            workspace.id, agent_pool_id=None, execution_mode=EXECUTION_MODE_REMOTE
        )
