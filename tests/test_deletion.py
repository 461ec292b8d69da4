"""Tests for the workspace deletion sequence."""

import pytest

from tfc_mock import MockTerraformCloudClient, workspace_document, write_workspace
from tfc_operator.config import Config
from tfc_operator.deletion import DeletionSequencer
from tfc_operator.events import EventRecorder, EventType
from tfc_operator.models import WORKSPACE_FINALIZER, WorkspaceResource
from tfc_operator.runs import DestroyRunError, RunManager
from tfc_operator.store import FileResourceStore
from tfc_operator.terraform import ConfigStore
from tfc_operator.tfc_client import PlatformAPIError

DELETED_AT = "2026-10-16T08:00:00Z"


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def sequencer(
    client: MockTerraformCloudClient,
    store: FileResourceStore,
    config_store: ConfigStore,
    recorder: EventRecorder,
    config: Config,
) -> DeletionSequencer:
    runs = RunManager(client, store, config_store, recorder, config, sleep=no_sleep)
    return DeletionSequencer(client, store, runs, recorder)


def marked(store: FileResourceStore, workspace_id: str = "", **kwargs: object) -> WorkspaceResource:
    key = write_workspace(
        store.root,
        workspace_document(
            status={"workspaceID": workspace_id} if workspace_id else None,
            finalizers=[WORKSPACE_FINALIZER],
            deletion_timestamp=DELETED_AT,
            **kwargs,
        ),
    )
    resource = store.get(key)
    assert resource is not None
    return resource


class TestDeletionSequencer:
    """Tests for DeletionSequencer.finalize()."""

    @pytest.mark.asyncio
    async def test_cancel_destroy_delete_unfinalize(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        """Test the full teardown of a workspace with an applying run."""
        workspace = client.state.add_workspace("acme", "prod-network")
        applying = client.state.add_run(workspace.id, status="applying")
        client.state.destroy_run_statuses = ["applying", "applied"]
        resource = marked(store, workspace.id)

        await sequencer.finalize(resource)

        assert client.state.operations() == ["force_cancel_run", "create_run", "delete_workspace"]
        assert client.state.runs[applying.id].status == "force_canceled"
        assert client.state.mutations[1].detail["is_destroy"] is True
        assert workspace.id not in client.state.workspaces
        assert store.get(resource.key) is None

    @pytest.mark.asyncio
    async def test_finds_workspace_by_name(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        """Test that a workspace never recorded on the status is still torn down."""
        workspace = client.state.add_workspace("acme", "prod-network")
        resource = marked(store)

        await sequencer.finalize(resource)

        assert client.state.operations() == ["delete_workspace"]
        assert workspace.id not in client.state.workspaces

    @pytest.mark.asyncio
    async def test_workspace_already_gone(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        resource = marked(store, "ws-gone")

        await sequencer.finalize(resource)

        assert client.state.mutations == []
        assert store.get(resource.key) is None

    @pytest.mark.asyncio
    async def test_no_destroy_without_runs(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        workspace = client.state.add_workspace("acme", "prod-network")
        resource = marked(store, workspace.id)

        await sequencer.finalize(resource)

        assert "create_run" not in client.state.operations()

    @pytest.mark.asyncio
    async def test_delete_failure_still_unfinalizes(
        self,
        sequencer: DeletionSequencer,
        client: MockTerraformCloudClient,
        store: FileResourceStore,
        recorder: EventRecorder,
    ) -> None:
        """Test that a workspace that cannot be deleted does not block removal."""
        workspace = client.state.add_workspace("acme", "prod-network")
        client.state.fail_on("delete_workspace", PlatformAPIError("locked", status_code=409))
        resource = marked(store, workspace.id)

        await sequencer.finalize(resource)

        assert store.get(resource.key) is None
        assert recorder.events_for(resource.key)[-1].event_type == EventType.WARNING

    @pytest.mark.asyncio
    async def test_destroy_error_keeps_finalizer(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        workspace = client.state.add_workspace("acme", "prod-network")
        client.state.add_run(workspace.id, status="applied")
        client.state.destroy_run_statuses = ["errored"]
        resource = marked(store, workspace.id)

        with pytest.raises(DestroyRunError):
            await sequencer.finalize(resource)

        stored = store.get(resource.key)
        assert stored is not None
        assert stored.has_finalizer()
        assert workspace.id in client.state.workspaces

    @pytest.mark.asyncio
    async def test_without_finalizer_is_noop(
        self, sequencer: DeletionSequencer, client: MockTerraformCloudClient, store: FileResourceStore
    ) -> None:
        client.state.add_workspace("acme", "prod-network")
        key = write_workspace(store.root, workspace_document(deletion_timestamp=DELETED_AT))
        resource = store.get(key)
        assert resource is not None

        await sequencer.finalize(resource)

        assert client.state.mutations == []
