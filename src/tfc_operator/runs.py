"""Run lifecycle management.

A workspace has at most one active run. The manager:
1. Polls the active run and records its status
2. Starts a new run once a configuration is ready
3. Cancels pending runs and drives destroy runs during deletion

CONFIGURATION DELIVERY:
How a run gets its configuration depends on the workspace source:
- Module: the rendered configuration is uploaded as a new configuration
  version. Upload completes asynchronously, so the run is created on a
  later pass once the version reports ``uploaded``.
- VCS: the platform ingests configuration versions from the repository
  by itself. The run is created once at least one version exists.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from .config import Config
from .events import EventRecorder
from .models import (
    DESTROYED_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    ConfigurationStatus,
    Run,
    RunStatus,
    WorkspaceResource,
)
from .store import ResourceStore
from .terraform import ConfigStore, render_configuration
from .tfc_client import TerraformCloudClient
from .variables import category_for, desired_value

OPERATOR_NAME = "tfc-workspace-operator"
APPLY_RUN_MESSAGE = f"{OPERATOR_NAME}, apply"
DESTROY_RUN_MESSAGE = "operator, destroy, latest"
CANCEL_RUN_COMMENT = "operator, finalizer, cancelling run"
CONFIGURATION_FILE = "main.tf"


class ConfigurationVersionUnavailableError(Exception):
    """Raised when a VCS workspace has no configuration version to run."""

    pass


class DestroyRunError(Exception):
    """Raised when a destroy run ends in error."""

    pass


class DestroyTimeoutError(Exception):
    """Raised when a destroy run does not finish before the deadline.

    Retryable: the next pass cancels the still-pending destroy run and
    starts over.
    """

    pass


def is_pending(status: str) -> bool:
    """True for any non-empty, non-terminal run status."""
    return bool(status) and status not in TERMINAL_RUN_STATUSES


def is_errored(status: str) -> bool:
    return status == RunStatus.ERRORED.value


def run_digest(resource: WorkspaceResource, configuration: str = "") -> str:
    """Digest of what a run executes: configuration text and variable definitions.

    Sensitive values are left out, so refreshing a secret never owes a run.
    """
    variables = [
        {
            "key": v.key,
            "category": category_for(v),
            "hcl": v.hcl,
            "sensitive": v.sensitive,
            "value": "" if v.sensitive else desired_value(v),
        }
        for v in resource.spec.variables
    ]
    document = json.dumps(
        {"configuration": configuration, "variables": variables}, sort_keys=True
    )
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


@dataclass
class PreparedConfiguration:
    """Outcome of preparing a configuration for a new run."""

    ready: bool
    # Configuration version to run; "" lets the platform pick the latest
    configuration_version_id: str = ""


NOT_READY = PreparedConfiguration(ready=False)


class ConfigurationSource(ABC):
    """Prepares the configuration a new run will execute."""

    @abstractmethod
    async def prepare(self, resource: WorkspaceResource) -> PreparedConfiguration: ...


class ModuleConfigurationSource(ConfigurationSource):
    """Uploads the rendered module configuration as a configuration version.

    The in-flight version ID is kept in ``status.configVersionID`` so the
    upload survives across passes. It is cleared once a run using it has
    been created, or when the version errored.
    """

    def __init__(
        self,
        client: TerraformCloudClient,
        store: ResourceStore,
        config_store: ConfigStore,
        recorder: EventRecorder,
        module_directory: Path,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._config_store = config_store
        self._recorder = recorder
        self._module_directory = module_directory
        self._logger = logger or logging.getLogger(__name__)

    def _write_configuration(self, resource: WorkspaceResource) -> Path:
        text = self._config_store.get(resource.metadata.namespace, resource.metadata.name)
        if text is None:
            text = render_configuration(resource)

        directory = self._module_directory / resource.workspace_name
        directory.mkdir(parents=True, exist_ok=True)
        (directory / CONFIGURATION_FILE).write_text(text, encoding="utf-8")
        return directory

    async def prepare(self, resource: WorkspaceResource) -> PreparedConfiguration:
        status = resource.status

        if not status.config_version_id:
            version = await self._client.create_configuration_version(status.workspace_id)
            directory = self._write_configuration(resource)
            await self._client.upload_configuration(version.upload_url, directory)

            status.config_version_id = version.id
            self._store.update_status(resource)
            self._logger.info(
                "Uploaded configuration",
                extra={"resource": resource.key, "configuration_version_id": version.id},
            )
            return NOT_READY

        version = await self._client.read_configuration_version(status.config_version_id)

        if version.status == ConfigurationStatus.ERRORED.value:
            status.config_version_id = ""
            self._store.update_status(resource)
            self._recorder.warning(
                resource,
                f"Configuration version {version.id} failed to process, uploading again",
            )
            return NOT_READY

        if version.status != ConfigurationStatus.UPLOADED.value:
            self._logger.info(
                "Configuration version not uploaded yet",
                extra={
                    "resource": resource.key,
                    "configuration_version_id": version.id,
                    "configuration_status": version.status,
                },
            )
            return NOT_READY

        return PreparedConfiguration(ready=True, configuration_version_id=version.id)


class VCSConfigurationSource(ConfigurationSource):
    """Waits, briefly, for the VCS integration to provide a configuration version."""

    def __init__(
        self,
        client: TerraformCloudClient,
        attempts: int,
        delay_seconds: float,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._attempts = attempts
        self._delay_seconds = delay_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

    async def prepare(self, resource: WorkspaceResource) -> PreparedConfiguration:
        workspace_id = resource.status.workspace_id
        for attempt in range(1, self._attempts + 1):
            versions = await self._client.list_configuration_versions(workspace_id)
            if versions:
                return PreparedConfiguration(ready=True)

            self._logger.info(
                "Configuration version not available yet",
                extra={"resource": resource.key, "attempt": attempt},
            )
            if attempt < self._attempts:
                await self._sleep(self._delay_seconds)

        raise ConfigurationVersionUnavailableError(
            f"No configuration version for workspace {workspace_id} "
            f"after {self._attempts} attempts"
        )


class RunManager:
    """Drives the single active run of a workspace."""

    def __init__(
        self,
        client: TerraformCloudClient,
        store: ResourceStore,
        config_store: ConfigStore,
        recorder: EventRecorder,
        config: Config,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._recorder = recorder
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._clock = clock
        self._module_source = ModuleConfigurationSource(
            client, store, config_store, recorder, config.module_dir, self._logger
        )
        self._vcs_source = VCSConfigurationSource(
            client,
            config.vcs_config_version_attempts,
            config.vcs_config_version_delay_seconds,
            self._logger,
            sleep,
        )

    def configuration_source_for(self, resource: WorkspaceResource) -> ConfigurationSource | None:
        """Pick the configuration source declared by the resource, None if neither is."""
        if resource.spec.vcs is not None:
            return self._vcs_source
        if resource.spec.module is not None:
            return self._module_source
        return None

    async def poll(self, resource: WorkspaceResource) -> bool:
        """Refresh the recorded status of the active run.

        Returns:
            True if the run is still pending.
        """
        status = resource.status
        if not is_pending(status.run_status):
            return False

        run = await self._client.read_run(status.run_id)
        if run.status != status.run_status:
            self._logger.info(
                "Run status changed",
                extra={
                    "resource": resource.key,
                    "run_id": run.id,
                    "from": status.run_status,
                    "to": run.status,
                },
            )
            status.run_status = run.status
            self._store.update_status(resource)
        return is_pending(run.status)

    async def start(self, resource: WorkspaceResource, digest: str = "") -> Run | None:
        """Start a new run once its configuration is ready.

        ``digest`` is recorded with the run ID, in the same status write,
        so a change is only considered delivered once its run exists.

        Returns:
            The created run, or None if the configuration is not ready yet
            or a run is already pending.

        Raises:
            ConfigurationVersionUnavailableError: If a VCS workspace has no
                configuration version.
        """
        status = resource.status
        if is_pending(status.run_status):
            self._logger.info(
                "Run already pending, not starting another",
                extra={"resource": resource.key, "run_id": status.run_id},
            )
            return None

        source = self.configuration_source_for(resource)
        if source is None:
            return None

        prepared = await source.prepare(resource)
        if not prepared.ready:
            return None

        run = await self._client.create_run(
            status.workspace_id,
            message=APPLY_RUN_MESSAGE,
            configuration_version_id=prepared.configuration_version_id,
        )
        status.run_id = run.id
        status.run_status = run.status or RunStatus.PENDING.value
        status.run_digest = digest
        status.config_version_id = ""
        self._store.update_status(resource)
        self._logger.info(
            "Started run",
            extra={"resource": resource.key, "run_id": run.id},
        )
        return run

    async def cancel_pending(self, workspace_id: str) -> list[str]:
        """Force-cancel every pending run of a workspace, returning their IDs."""
        cancelled = []
        for run in await self._client.list_runs(workspace_id):
            if not is_pending(run.status):
                continue
            await self._client.force_cancel_run(run.id, CANCEL_RUN_COMMENT)
            cancelled.append(run.id)

        if cancelled:
            self._logger.info(
                "Cancelled pending runs",
                extra={"workspace_id": workspace_id, "run_ids": cancelled},
            )
        return cancelled

    async def destroy(self, workspace_id: str) -> Run:
        """Create a destroy run and wait for it to finish.

        Raises:
            DestroyRunError: If the destroy run errors or is cancelled or
                discarded before destroying anything.
            DestroyTimeoutError: If the run is still pending at the deadline.
        """
        run = await self._client.create_run(
            workspace_id, message=DESTROY_RUN_MESSAGE, is_destroy=True
        )
        self._logger.info(
            "Started destroy run",
            extra={"workspace_id": workspace_id, "run_id": run.id},
        )

        timeout = self._config.destroy_timeout_seconds
        started = self._clock()
        while True:
            run = await self._client.read_run(run.id)
            if is_errored(run.status):
                raise DestroyRunError(f"Destroy run {run.id} errored")
            if run.status in DESTROYED_RUN_STATUSES:
                self._logger.info(
                    "Destroy run finished",
                    extra={"workspace_id": workspace_id, "run_id": run.id, "status": run.status},
                )
                return run
            if run.status in TERMINAL_RUN_STATUSES:
                raise DestroyRunError(f"Destroy run {run.id} ended {run.status} without destroying")
            if timeout and self._clock() - started >= timeout:
                raise DestroyTimeoutError(
                    f"Destroy run {run.id} still {run.status} after {timeout}s"
                )
            await self._sleep(self._config.destroy_poll_interval_seconds)
