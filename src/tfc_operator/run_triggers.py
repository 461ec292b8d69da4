"""Inbound run-trigger convergence.

A run trigger queues a run in this workspace whenever a source workspace
in the same organization applies successfully. Triggers are identified by
source workspace name.
"""

from __future__ import annotations

import logging

from .models import RunTrigger
from .tfc_client import TerraformCloudClient


class RunTriggerSynchronizer:
    """Converges inbound run triggers of a workspace."""

    def __init__(
        self,
        client: TerraformCloudClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)

    async def sync(
        self, organization: str, workspace_id: str, run_triggers: list[RunTrigger]
    ) -> bool:
        """Delete undeclared triggers and create missing ones.

        Returns:
            True if any trigger was created.

        Raises:
            ResourceNotFoundError: If a declared source workspace does not exist.
        """
        desired = {rt.sourceable_name for rt in run_triggers}
        remote = await self._client.list_run_triggers(workspace_id)
        existing = {rt.sourceable_name for rt in remote}

        for rt in remote:
            if rt.sourceable_name not in desired:
                await self._client.delete_run_trigger(rt.id)
                self._logger.info(
                    "Deleted run trigger",
                    extra={"workspace_id": workspace_id, "source": rt.sourceable_name},
                )

        created = False
        for name in sorted(desired - existing):
            source = await self._client.read_workspace(organization, name)
            await self._client.create_run_trigger(workspace_id, source.id)
            self._logger.info(
                "Created run trigger",
                extra={"workspace_id": workspace_id, "source": name},
            )
            created = True
        return created
