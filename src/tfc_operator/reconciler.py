"""Workspace reconciliation.

One pass converges a single workspace resource against the platform:
1. Load the resource and validate what cannot be checked by the schema
2. Read or create the remote workspace
3. Resources marked for deletion are torn down and the pass ends
4. Record the workspace ID, adopt out-of-band runs, add the finalizer,
   then converge the workspace settings
5. Converge notifications and run triggers
6. Poll the active run; a pending run ends the pass
7. Handle the finished run (errored → event, otherwise publish outputs)
8. Store the rendered configuration and converge variables
9. Start a new run if anything changed, a change is still owed a run,
   or no run ever started

Every pass is idempotent: repeating it without external drift makes no
further remote changes. A failed pass is never retried here; the result
carries the requeue delay for the control loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import Config
from .deletion import DeletionSequencer
from .events import EventRecorder
from .models import WORKSPACE_FINALIZER, RemoteWorkspace, WorkspaceResource
from .notifications import NotificationSynchronizer
from .outputs import OutputExtractor
from .run_triggers import RunTriggerSynchronizer
from .runs import RunManager, is_errored, run_digest
from .store import KeyValueStore, ResourceStore
from .terraform import ConfigStore, render_configuration
from .tfc_client import TerraformCloudClient
from .variables import VariableSynchronizer, needs_secret_file
from .workspace_sync import WorkspaceSynchronizer


class WorkspaceValidationError(Exception):
    """Raised when a workspace cannot be reconciled as declared."""

    pass


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    key: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    # Seconds until the next pass; 0 means immediately, None means no requeue
    requeue_after_seconds: float | None = None
    steps: list[str] = field(default_factory=list)
    run_started: str | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class WorkspaceReconciler:
    """Reconciles workspace resources one key at a time.

    All collaborators are injected; the reconciler holds no global state.
    """

    def __init__(
        self,
        client: TerraformCloudClient,
        store: ResourceStore,
        config_store: ConfigStore,
        output_store: KeyValueStore,
        recorder: EventRecorder,
        config: Config,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._config_store = config_store
        self._recorder = recorder
        self._config = config
        self._logger = logger or logging.getLogger(__name__)

        self._workspaces = WorkspaceSynchronizer(
            client, self._logger, config.default_terraform_version
        )
        self._variables = VariableSynchronizer(client, self._logger)
        self._notifications = NotificationSynchronizer(client, self._logger)
        self._run_triggers = RunTriggerSynchronizer(client, self._logger)
        self._outputs = OutputExtractor(client, output_store, self._logger)
        self._runs = RunManager(client, store, config_store, recorder, config, self._logger)
        self._deletion = DeletionSequencer(client, store, self._runs, recorder, self._logger)

    @property
    def runs(self) -> RunManager:
        return self._runs

    async def reconcile(self, key: str) -> ReconcileResult:
        """Run one reconciliation pass for a resource key.

        Never raises: failures are returned on the result with the error
        requeue delay.
        """
        result = ReconcileResult(key=key)
        try:
            await self._reconcile(key, result)
        except WorkspaceValidationError as e:
            result.error = e
            result.requeue_after_seconds = self._config.reconcile_interval_seconds
        except Exception as e:
            result.error = e
            result.requeue_after_seconds = self._config.error_requeue_seconds
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    def _validate(self, resource: WorkspaceResource) -> None:
        spec = resource.spec
        if spec.module is None and spec.vcs is None:
            self._recorder.warning(
                resource,
                f"Either VCS or Module need to be specified in spec for workspace "
                f"{resource.metadata.name}",
            )

        if resource.marked_for_deletion or not needs_secret_file(spec.variables):
            return
        mount = spec.secrets_mount_path
        if not mount or not Path(mount).is_dir():
            message = f"Secrets mount path is invalid: {mount or '(not set)'}"
            self._recorder.warning(resource, message)
            raise WorkspaceValidationError(message)

    async def _reconcile(self, key: str, result: ReconcileResult) -> None:
        resource = self._store.get(key)
        if resource is None:
            result.steps.append("not_found")
            return

        self._validate(resource)

        workspace = await self._workspaces.read_or_create(
            resource, create=not resource.marked_for_deletion
        )

        if resource.marked_for_deletion:
            await self._deletion.finalize(resource)
            result.steps.append("finalized")
            return

        assert workspace is not None
        await self._record_workspace(resource, workspace, result)
        workspace = await self._workspaces.converge(resource, workspace)

        spec = resource.spec
        status = resource.status

        await self._notifications.sync(workspace.id, spec.notifications)
        await self._run_triggers.sync(spec.organization, workspace.id, spec.run_triggers)

        if await self._runs.poll(resource):
            result.steps.append("run_pending")
            result.requeue_after_seconds = self._config.run_poll_interval_seconds
            return

        if status.run_id:
            await self._handle_finished_run(resource, result)

        configuration = ""
        config_changed = False
        if spec.module is not None:
            configuration = render_configuration(resource)
            config_changed = self._config_store.upsert(
                resource.metadata.namespace,
                resource.metadata.name,
                configuration,
            )
            if config_changed:
                result.steps.append("config_updated")
                if status.config_version_id:
                    # The in-flight upload holds the previous configuration
                    status.config_version_id = ""
                    self._store.update_status(resource)

        variables = await self._variables.sync(
            workspace.id, spec.variables, spec.secrets_mount_path
        )
        if variables.changed:
            result.steps.append("variables_updated")

        digest = run_digest(resource, configuration)
        # A change stored or pushed by a pass that failed before its run started
        run_owed = bool(status.run_digest) and status.run_digest != digest

        if (
            config_changed
            or variables.changed
            or run_owed
            or not status.run_id
            or status.config_version_id
        ):
            if self._runs.configuration_source_for(resource) is None:
                result.steps.append("no_source")
                result.requeue_after_seconds = self._config.reconcile_interval_seconds
                return

            run = await self._runs.start(resource, digest)
            if run is None:
                result.steps.append("run_not_ready")
            else:
                result.steps.append("run_started")
                result.run_started = run.id
                self._recorder.normal(resource, f"Started new Terraform job with id {run.id}")
            result.requeue_after_seconds = self._config.run_poll_interval_seconds
            return

        result.requeue_after_seconds = self._config.reconcile_interval_seconds

    async def _record_workspace(
        self,
        resource: WorkspaceResource,
        workspace: RemoteWorkspace,
        result: ReconcileResult,
    ) -> None:
        status = resource.status

        if status.workspace_id != workspace.id:
            if status.workspace_id:
                self._recorder.warning(
                    resource,
                    f"Workspace {status.workspace_id} was replaced by {workspace.id}",
                )
            status.workspace_id = workspace.id
            status.outputs = []
            self._store.update_status(resource)
            result.steps.append("workspace_recorded")
            self._logger.info(
                "Updated workspace ID",
                extra={"resource": resource.key, "workspace_id": workspace.id},
            )

        if (
            status.run_id
            and workspace.current_run_id
            and status.run_id != workspace.current_run_id
        ):
            run = await self._client.read_run(workspace.current_run_id)
            status.run_id = run.id
            status.run_status = run.status
            self._store.update_status(resource)
            result.steps.append("run_adopted")
            self._recorder.normal(
                resource, f"Adopted out of band run {run.id} ({run.status})"
            )

        if not resource.has_finalizer(WORKSPACE_FINALIZER):
            resource.metadata.finalizers.append(WORKSPACE_FINALIZER)
            self._store.update(resource)
            result.steps.append("finalizer_added")

    async def _handle_finished_run(
        self, resource: WorkspaceResource, result: ReconcileResult
    ) -> None:
        status = resource.status

        if is_errored(status.run_status):
            self._recorder.warning(
                resource,
                f"Run {status.run_id!r} for workspace {status.workspace_id!r} "
                f"failed to complete",
            )
            result.steps.append("run_errored")
            return

        outputs = await self._outputs.extract(status.workspace_id)
        if outputs != status.outputs:
            status.outputs = outputs
            self._store.update_status(resource)
            result.steps.append("outputs_updated")
            self._recorder.normal(resource, f"Updated outputs for run {status.run_id}")

        location = (status.output_secret_namespace, status.output_secret_name)
        self._outputs.publish(resource, status.outputs)
        if location != (status.output_secret_namespace, status.output_secret_name):
            self._store.update_status(resource)

    def _log_result(self, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "resource": result.key,
            "duration_seconds": result.duration_seconds,
            "steps": result.steps,
            "requeue_after_seconds": result.requeue_after_seconds,
        }
        if result.run_started is not None:
            extra["run_id"] = result.run_started

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            self._logger.error("Reconciliation failed", extra=extra)
        else:
            self._logger.info("Reconciliation result", extra=extra)
