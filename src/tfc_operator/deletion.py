"""Workspace teardown for resources marked for deletion.

Sequence, each step only after the previous one succeeded:
1. Skip the remote steps if the workspace is already gone
2. Force-cancel pending runs
3. Destroy managed infrastructure with a destroy run (if the workspace
   ever ran) and wait for it to finish
4. Delete the remote workspace; a failure here is logged, not raised
5. Remove the finalizer so the resource itself can be removed

Step 4 never blocks step 5: a workspace that cannot be deleted must not
leave its resource stuck forever.
"""

from __future__ import annotations

import logging

from .events import EventRecorder
from .models import WORKSPACE_FINALIZER, RemoteWorkspace, WorkspaceResource
from .runs import RunManager
from .store import ResourceStore
from .tfc_client import PlatformAPIError, ResourceNotFoundError, TerraformCloudClient


class DeletionSequencer:
    """Tears down the remote workspace and releases the finalizer."""

    def __init__(
        self,
        client: TerraformCloudClient,
        store: ResourceStore,
        runs: RunManager,
        recorder: EventRecorder,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._runs = runs
        self._recorder = recorder
        self._logger = logger or logging.getLogger(__name__)

    async def _find_workspace(self, resource: WorkspaceResource) -> RemoteWorkspace | None:
        try:
            if resource.status.workspace_id:
                return await self._client.read_workspace_by_id(resource.status.workspace_id)
            return await self._client.read_workspace(
                resource.spec.organization, resource.workspace_name
            )
        except ResourceNotFoundError:
            return None

    async def finalize(self, resource: WorkspaceResource) -> None:
        """Run the deletion sequence for a resource marked for deletion.

        Raises:
            DestroyRunError: If the destroy run errors.
            DestroyTimeoutError: If the destroy run does not finish in time.
            PlatformAPIError: If cancelling runs or starting the destroy fails.
        """
        if not resource.has_finalizer():
            return

        workspace = await self._find_workspace(resource)
        if workspace is None:
            self._logger.info(
                "Remote workspace already gone", extra={"resource": resource.key}
            )
        else:
            await self._runs.cancel_pending(workspace.id)

            if workspace.current_run_id:
                self._logger.info(
                    "Destroying workspace resources",
                    extra={"resource": resource.key, "workspace_id": workspace.id},
                )
                await self._runs.destroy(workspace.id)

            try:
                await self._client.delete_workspace(workspace.id)
                self._logger.info(
                    "Deleted workspace",
                    extra={"resource": resource.key, "workspace_id": workspace.id},
                )
            except PlatformAPIError as e:
                self._logger.error(
                    "Could not delete workspace",
                    extra={
                        "resource": resource.key,
                        "workspace_id": workspace.id,
                        "error": str(e),
                    },
                )
                self._recorder.warning(
                    resource, f"Could not delete workspace {workspace.id}: {e}"
                )

        resource.metadata.finalizers = [
            f for f in resource.metadata.finalizers if f != WORKSPACE_FINALIZER
        ]
        self._store.update(resource)
        self._logger.info("Successfully finalized workspace", extra={"resource": resource.key})
