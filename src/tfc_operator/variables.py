"""Workspace variable convergence.

One pass makes the remote variable set match the desired one:
1. Delete remote variables whose key is not desired
2. Create desired variables missing remotely
3. Update non-sensitive remote variables whose value, HCL flag or
   category differs (or which are now declared sensitive)
4. Re-submit every sensitive remote variable

The platform never returns sensitive values, so step 4 cannot diff and
writes the current plaintext on every pass. Those writes are reported
separately as ``secrets_refreshed`` and do not count as a change.

SECURITY: Secret plaintext is only passed to the platform client. Log
records carry variable keys, never values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .models import RemoteVariable, Variable, VariableCategory
from .tfc_client import TerraformCloudClient


class SecretNotFoundError(Exception):
    """Raised when a sensitive variable's value cannot be read from the mount."""

    pass


@dataclass
class VariableSyncResult:
    """Keys touched by a variable convergence pass."""

    deleted: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    secrets_refreshed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True if a created or updated variable should trigger a new run."""
        return bool(self.created or self.updated)


def category_for(variable: Variable) -> str:
    if variable.environment_variable:
        return VariableCategory.ENV.value
    return VariableCategory.TERRAFORM.value


def desired_value(variable: Variable) -> str:
    """The declared value with a single trailing newline removed."""
    return variable.value.removesuffix("\n")


def read_secret(mount_path: str, key: str) -> str:
    """Read a sensitive variable's plaintext from ``{mount_path}/{key}``.

    Raises:
        SecretNotFoundError: If no mount path is configured or the file
            cannot be read.
    """
    if not mount_path:
        raise SecretNotFoundError(
            f"Variable {key} is sensitive with no value and no secrets mount path is set"
        )
    path = Path(mount_path) / key
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise SecretNotFoundError(f"Could not read secret for variable {key}: {e}") from e


def resolve_value(variable: Variable, mount_path: str) -> str:
    """Value to submit for a variable.

    Sensitive variables declared without a value are read from the mount.
    """
    value = desired_value(variable)
    if variable.sensitive and value == "":
        return read_secret(mount_path, variable.key)
    return value


def needs_secret_file(variables: list[Variable]) -> bool:
    return any(v.sensitive and desired_value(v) == "" for v in variables)


def _non_sensitive_changed(variable: Variable, remote: RemoteVariable) -> bool:
    if desired_value(variable) != (remote.value or ""):
        return True
    if variable.hcl != remote.hcl:
        return True
    if category_for(variable) != remote.category:
        return True
    return variable.sensitive


class VariableSynchronizer:
    """Converges a workspace's variables to the declared set."""

    def __init__(
        self,
        client: TerraformCloudClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger(__name__)

    async def sync(
        self,
        workspace_id: str,
        variables: list[Variable],
        mount_path: str = "",
    ) -> VariableSyncResult:
        """Converge remote variables for one workspace.

        Args:
            workspace_id: Remote workspace ID.
            variables: Desired variables (keys are unique).
            mount_path: Directory holding one file per sensitive variable.

        Returns:
            The keys deleted, created, updated and refreshed.

        Raises:
            SecretNotFoundError: If a sensitive value cannot be read.
            PlatformAPIError: If a platform call fails.
        """
        result = VariableSyncResult()
        remote_vars = await self._client.list_variables(workspace_id)
        remote_by_key = {v.key: v for v in remote_vars}
        desired_by_key = {v.key: v for v in variables}

        for remote in remote_vars:
            if remote.key not in desired_by_key:
                await self._client.delete_variable(workspace_id, remote.id)
                result.deleted.append(remote.key)

        for variable in variables:
            if variable.key in remote_by_key:
                continue
            await self._client.create_variable(
                workspace_id,
                key=variable.key,
                value=resolve_value(variable, mount_path),
                category=category_for(variable),
                hcl=variable.hcl,
                sensitive=variable.sensitive,
            )
            result.created.append(variable.key)

        for variable in variables:
            remote = remote_by_key.get(variable.key)
            if remote is None:
                continue

            if remote.sensitive:
                # Sensitive remote variables cannot be made non-sensitive
                await self._update(workspace_id, remote, variable, mount_path, sensitive=True)
                if variable.hcl != remote.hcl or category_for(variable) != remote.category:
                    result.updated.append(variable.key)
                else:
                    result.secrets_refreshed.append(variable.key)
            elif _non_sensitive_changed(variable, remote):
                await self._update(
                    workspace_id, remote, variable, mount_path, sensitive=variable.sensitive
                )
                result.updated.append(variable.key)

        if result.deleted or result.created or result.updated:
            self._logger.info(
                "Converged workspace variables",
                extra={
                    "workspace_id": workspace_id,
                    "deleted": result.deleted,
                    "created": result.created,
                    "updated": result.updated,
                },
            )
        if result.secrets_refreshed:
            self._logger.debug(
                "Re-submitted sensitive variables",
                extra={"workspace_id": workspace_id, "keys": result.secrets_refreshed},
            )
        return result

    async def _update(
        self,
        workspace_id: str,
        remote: RemoteVariable,
        variable: Variable,
        mount_path: str,
        *,
        sensitive: bool,
    ) -> None:
        await self._client.update_variable(
            workspace_id,
            remote.id,
            key=variable.key,
            value=resolve_value(variable, mount_path),
            category=category_for(variable),
            hcl=variable.hcl,
            sensitive=sensitive,
        )
