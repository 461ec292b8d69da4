"""Async client for the Terraform Cloud / Enterprise API.

Speaks the JSON:API dialect of the platform's ``/api/v2`` endpoints and
returns the plain views from ``models`` so the synchronizers never handle
raw documents. Only the operations the reconciler consumes are exposed.

Errors:
- HTTP 404 raises ResourceNotFoundError. Callers that treat "not found"
  as a branch condition (workspace read-or-create, deletion) catch it.
- Any other non-2xx response or transport failure raises PlatformAPIError.
  Nothing here retries; a failed call aborts the reconciliation pass.
"""

from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path
from typing import Any

import httpx

from . import __version__
from .config import MAX_STATE_SIZE_BYTES, Config, ConfigurationError
from .models import (
    AgentPool,
    ConfigurationVersion,
    NotificationConfiguration,
    RemoteRunTrigger,
    RemoteVariable,
    RemoteWorkspace,
    Run,
    SSHKey,
)

logger = logging.getLogger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"
API_PREFIX = "/api/v2"
USER_AGENT = f"tfc-workspace-operator/{__version__}"
PAGE_SIZE = 100


class PlatformAPIError(Exception):
    """Raised when a platform API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResourceNotFoundError(PlatformAPIError):
    """Raised when the platform reports that a resource does not exist."""

    pass


def pack_directory(directory: Path) -> bytes:
    """Pack a configuration directory into a gzipped tarball.

    Archive members are relative to ``directory`` so the platform sees the
    files at the root of the configuration.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                archive.add(path, arcname=str(path.relative_to(directory)))
    return buffer.getvalue()


def _relationship_id(data: dict[str, Any], name: str) -> str:
    rel = (data.get("relationships") or {}).get(name) or {}
    rel_data = rel.get("data")
    if isinstance(rel_data, dict):
        return str(rel_data.get("id") or "")
    return ""


def _relationship_ids(data: dict[str, Any], name: str) -> list[str]:
    rel = (data.get("relationships") or {}).get(name) or {}
    rel_data = rel.get("data")
    if isinstance(rel_data, list):
        return [str(item.get("id")) for item in rel_data if item.get("id")]
    return []


def _workspace_from_json(data: dict[str, Any]) -> RemoteWorkspace:
    attrs = data.get("attributes", {})
    agent_pool_id = _relationship_id(data, "agent-pool") or attrs.get("agent-pool-id") or ""
    return RemoteWorkspace(
        id=data["id"],
        name=attrs.get("name", ""),
        terraform_version=attrs.get("terraform-version") or "",
        agent_pool_id=agent_pool_id,
        execution_mode=attrs.get("execution-mode") or "",
        ssh_key_id=_relationship_id(data, "ssh-key"),
        current_run_id=_relationship_id(data, "current-run"),
        auto_apply=bool(attrs.get("auto-apply", False)),
    )


def _variable_from_json(data: dict[str, Any], workspace_id: str) -> RemoteVariable:
    attrs = data.get("attributes", {})
    return RemoteVariable(
        id=data["id"],
        key=attrs.get("key", ""),
        value=attrs.get("value"),
        workspace_id=_relationship_id(data, "configurable") or workspace_id,
        category=attrs.get("category", "terraform"),
        hcl=bool(attrs.get("hcl", False)),
        sensitive=bool(attrs.get("sensitive", False)),
    )


def _notification_from_json(data: dict[str, Any]) -> NotificationConfiguration:
    attrs = data.get("attributes", {})
    return NotificationConfiguration(
        id=data["id"],
        name=attrs.get("name", ""),
        destination_type=attrs.get("destination-type", ""),
        enabled=bool(attrs.get("enabled", False)),
        url=attrs.get("url") or "",
        token=attrs.get("token") or "",
        triggers=list(attrs.get("triggers") or []),
        email_addresses=list(attrs.get("email-addresses") or []),
        email_user_ids=_relationship_ids(data, "users"),
    )


def _configuration_version_from_json(data: dict[str, Any]) -> ConfigurationVersion:
    attrs = data.get("attributes", {})
    return ConfigurationVersion(
        id=data["id"],
        status=attrs.get("status", ""),
        upload_url=attrs.get("upload-url") or "",
    )


def _run_from_json(data: dict[str, Any]) -> Run:
    attrs = data.get("attributes", {})
    return Run(
        id=data["id"],
        status=attrs.get("status", ""),
        is_destroy=bool(attrs.get("is-destroy", False)),
        message=attrs.get("message") or "",
    )


def _error_detail(response: httpx.Response) -> str:
    """Extract a readable message from a JSON:API error document."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    errors = body.get("errors") if isinstance(body, dict) else None
    if not errors:
        return response.text[:200]
    parts = []
    for error in errors:
        if isinstance(error, dict):
            parts.append(error.get("detail") or error.get("title") or str(error))
        else:
            parts.append(str(error))
    return "; ".join(parts)


class TerraformCloudClient:
    """Terraform Cloud / Enterprise API client.

    Wraps a single ``httpx.AsyncClient``; use it as an async context manager
    or call ``close()`` when done.
    """

    def __init__(
        self,
        address: str,
        token: str,
        *,
        insecure: bool = False,
        timeout_seconds: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._address = address.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self._address + API_PREFIX,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": JSONAPI_CONTENT_TYPE,
                "Accept": JSONAPI_CONTENT_TYPE,
                "User-Agent": USER_AGENT,
            },
            timeout=timeout_seconds,
            verify=not insecure,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> TerraformCloudClient:
        """Build a client from operator configuration.

        Raises:
            ConfigurationError: If no API token is available for the host.
        """
        if not config.token:
            raise ConfigurationError(
                f"Define a token for {config.host} (TF_TOKEN or CLI credentials file)"
            )
        if config.insecure:
            logger.warning(
                "TLS verification disabled for platform API",
                extra={"host": config.host},
            )
        return cls(
            config.tf_url,
            config.token,
            insecure=config.insecure,
            timeout_seconds=config.request_timeout_seconds,
        )

    @property
    def address(self) -> str:
        return self._address

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> TerraformCloudClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method, url, json=json, params=params, content=content, headers=headers
            )
        except httpx.HTTPError as e:
            raise PlatformAPIError(f"{method} {url} failed: {e}") from e

        logger.debug(
            "Platform API call",
            extra={"method": method, "url": url, "status_code": response.status_code},
        )

        if response.status_code == 404:
            raise ResourceNotFoundError(
                f"{method} {url}: resource not found", status_code=404
            )
        if response.is_error:
            raise PlatformAPIError(
                f"{method} {url} returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(method, path, json=json, params=params)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise PlatformAPIError(f"{method} {path} returned invalid JSON") from e
        return body if isinstance(body, dict) else {}

    async def _list(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Collect every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query["page[number]"] = page
            query["page[size]"] = PAGE_SIZE
            body = await self._request("GET", path, params=query)
            items.extend(body.get("data") or [])

            pagination = (body.get("meta") or {}).get("pagination") or {}
            next_page = pagination.get("next-page")
            if not next_page:
                return items
            page = int(next_page)

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    async def read_organization(self, organization: str) -> str:
        """Read an organization, returning its name."""
        body = await self._request("GET", f"/organizations/{organization}")
        return str(body.get("data", {}).get("id", organization))

    async def list_ssh_keys(self, organization: str) -> list[SSHKey]:
        items = await self._list(f"/organizations/{organization}/ssh-keys")
        return [
            SSHKey(id=item["id"], name=item.get("attributes", {}).get("name", ""))
            for item in items
        ]

    async def list_agent_pools(self, organization: str) -> list[AgentPool]:
        items = await self._list(f"/organizations/{organization}/agent-pools")
        return [
            AgentPool(id=item["id"], name=item.get("attributes", {}).get("name", ""))
            for item in items
        ]

    # -------------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------------

    async def read_workspace(self, organization: str, name: str) -> RemoteWorkspace:
        body = await self._request("GET", f"/organizations/{organization}/workspaces/{name}")
        return _workspace_from_json(body["data"])

    async def read_workspace_by_id(self, workspace_id: str) -> RemoteWorkspace:
        body = await self._request("GET", f"/workspaces/{workspace_id}")
        return _workspace_from_json(body["data"])

    async def create_workspace(
        self,
        organization: str,
        name: str,
        *,
        terraform_version: str,
        auto_apply: bool = True,
        vcs_repo: dict[str, Any] | None = None,
        agent_pool_id: str = "",
    ) -> RemoteWorkspace:
        """Create a workspace.

        Args:
            organization: Owning organization.
            name: Workspace name.
            terraform_version: Tool version, e.g. "1.6.0" or "latest".
            auto_apply: Apply successful plans without confirmation.
            vcs_repo: Optional ``vcs-repo`` attributes (identifier, branch,
                oauth-token-id, ingress-submodules).
            agent_pool_id: If set, the workspace runs in agent execution mode.
        """
        attributes: dict[str, Any] = {
            "name": name,
            "auto-apply": auto_apply,
            "terraform-version": terraform_version,
        }
        if vcs_repo:
            attributes["vcs-repo"] = vcs_repo
        if agent_pool_id:
            attributes["execution-mode"] = "agent"
            attributes["agent-pool-id"] = agent_pool_id

        body = await self._request(
            "POST",
            f"/organizations/{organization}/workspaces",
            json={"data": {"type": "workspaces", "attributes": attributes}},
        )
        return _workspace_from_json(body["data"])

    async def update_workspace(self, workspace_id: str, **attributes: Any) -> RemoteWorkspace:
        """Update workspace attributes, given as platform attribute names with
        dashes replaced by underscores (``terraform_version="1.6.0"``)."""
        payload = {key.replace("_", "-"): value for key, value in attributes.items()}
        body = await self._request(
            "PATCH",
            f"/workspaces/{workspace_id}",
            json={"data": {"type": "workspaces", "attributes": payload}},
        )
        return _workspace_from_json(body["data"])

    async def delete_workspace(self, workspace_id: str) -> None:
        await self._request("DELETE", f"/workspaces/{workspace_id}")

    async def assign_ssh_key(self, workspace_id: str, ssh_key_id: str) -> RemoteWorkspace:
        body = await self._request(
            "PATCH",
            f"/workspaces/{workspace_id}/relationships/ssh-key",
            json={"data": {"type": "workspaces", "attributes": {"id": ssh_key_id}}},
        )
        return _workspace_from_json(body["data"])

    async def unassign_ssh_key(self, workspace_id: str) -> RemoteWorkspace:
        body = await self._request(
            "PATCH",
            f"/workspaces/{workspace_id}/relationships/ssh-key",
            json={"data": {"type": "workspaces", "attributes": {"id": None}}},
        )
        return _workspace_from_json(body["data"])

    # -------------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------------

    async def list_variables(self, workspace_id: str) -> list[RemoteVariable]:
        items = await self._list(f"/workspaces/{workspace_id}/vars")
        return [_variable_from_json(item, workspace_id) for item in items]

    async def create_variable(
        self,
        workspace_id: str,
        *,
        key: str,
        value: str,
        category: str,
        hcl: bool,
        sensitive: bool,
    ) -> RemoteVariable:
        body = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/vars",
            json={
                "data": {
                    "type": "vars",
                    "attributes": {
                        "key": key,
                        "value": value,
                        "category": category,
                        "hcl": hcl,
                        "sensitive": sensitive,
                    },
                }
            },
        )
        return _variable_from_json(body["data"], workspace_id)

    async def update_variable(
        self,
        workspace_id: str,
        variable_id: str,
        *,
        key: str,
        value: str,
        category: str,
        hcl: bool,
        sensitive: bool,
    ) -> RemoteVariable:
        body = await self._request(
            "PATCH",
            f"/workspaces/{workspace_id}/vars/{variable_id}",
            json={
                "data": {
                    "type": "vars",
                    "id": variable_id,
                    "attributes": {
                        "key": key,
                        "value": value,
                        "category": category,
                        "hcl": hcl,
                        "sensitive": sensitive,
                    },
                }
            },
        )
        return _variable_from_json(body["data"], workspace_id)

    async def delete_variable(self, workspace_id: str, variable_id: str) -> None:
        await self._request("DELETE", f"/workspaces/{workspace_id}/vars/{variable_id}")

    # -------------------------------------------------------------------------
    # Notification configurations
    # -------------------------------------------------------------------------

    async def list_notifications(self, workspace_id: str) -> list[NotificationConfiguration]:
        items = await self._list(f"/workspaces/{workspace_id}/notification-configurations")
        return [_notification_from_json(item) for item in items]

    async def create_notification(
        self,
        workspace_id: str,
        *,
        name: str,
        destination_type: str,
        enabled: bool,
        token: str,
        url: str,
        triggers: list[str],
        email_addresses: list[str],
        email_user_ids: list[str],
    ) -> NotificationConfiguration:
        data: dict[str, Any] = {
            "type": "notification-configurations",
            "attributes": {
                "name": name,
                "destination-type": destination_type,
                "enabled": enabled,
                "token": token,
                "url": url,
                "triggers": triggers,
                "email-addresses": email_addresses,
            },
        }
        if email_user_ids:
            data["relationships"] = {
                "users": {"data": [{"type": "users", "id": uid} for uid in email_user_ids]}
            }
        body = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/notification-configurations",
            json={"data": data},
        )
        return _notification_from_json(body["data"])

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", f"/notification-configurations/{notification_id}")

    # -------------------------------------------------------------------------
    # Run triggers
    # -------------------------------------------------------------------------

    async def list_run_triggers(self, workspace_id: str) -> list[RemoteRunTrigger]:
        items = await self._list(
            f"/workspaces/{workspace_id}/run-triggers",
            params={"filter[run-trigger][type]": "inbound"},
        )
        return [
            RemoteRunTrigger(
                id=item["id"],
                sourceable_id=_relationship_id(item, "sourceable"),
                sourceable_name=item.get("attributes", {}).get("sourceable-name", ""),
            )
            for item in items
        ]

    async def create_run_trigger(self, workspace_id: str, sourceable_id: str) -> RemoteRunTrigger:
        body = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/run-triggers",
            json={
                "data": {
                    "relationships": {
                        "sourceable": {"data": {"id": sourceable_id, "type": "workspaces"}}
                    }
                }
            },
        )
        data = body["data"]
        return RemoteRunTrigger(
            id=data["id"],
            sourceable_id=_relationship_id(data, "sourceable") or sourceable_id,
            sourceable_name=data.get("attributes", {}).get("sourceable-name", ""),
        )

    async def delete_run_trigger(self, run_trigger_id: str) -> None:
        await self._request("DELETE", f"/run-triggers/{run_trigger_id}")

    # -------------------------------------------------------------------------
    # Configuration versions
    # -------------------------------------------------------------------------

    async def create_configuration_version(
        self,
        workspace_id: str,
        *,
        auto_queue_runs: bool = False,
        speculative: bool = False,
    ) -> ConfigurationVersion:
        body = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/configuration-versions",
            json={
                "data": {
                    "type": "configuration-versions",
                    "attributes": {
                        "auto-queue-runs": auto_queue_runs,
                        "speculative": speculative,
                    },
                }
            },
        )
        return _configuration_version_from_json(body["data"])

    async def read_configuration_version(self, configuration_version_id: str) -> ConfigurationVersion:
        body = await self._request("GET", f"/configuration-versions/{configuration_version_id}")
        return _configuration_version_from_json(body["data"])

    async def list_configuration_versions(self, workspace_id: str) -> list[ConfigurationVersion]:
        items = await self._list(f"/workspaces/{workspace_id}/configuration-versions")
        return [_configuration_version_from_json(item) for item in items]

    async def upload_configuration(self, upload_url: str, directory: Path) -> None:
        """Upload a configuration directory to a configuration version."""
        await self._send(
            "PUT",
            upload_url,
            content=pack_directory(directory),
            headers={"Content-Type": "application/octet-stream"},
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def create_run(
        self,
        workspace_id: str,
        *,
        message: str,
        configuration_version_id: str = "",
        is_destroy: bool = False,
    ) -> Run:
        relationships: dict[str, Any] = {
            "workspace": {"data": {"type": "workspaces", "id": workspace_id}}
        }
        if configuration_version_id:
            relationships["configuration-version"] = {
                "data": {"type": "configuration-versions", "id": configuration_version_id}
            }
        body = await self._request(
            "POST",
            "/runs",
            json={
                "data": {
                    "type": "runs",
                    "attributes": {"message": message, "is-destroy": is_destroy},
                    "relationships": relationships,
                }
            },
        )
        return _run_from_json(body["data"])

    async def read_run(self, run_id: str) -> Run:
        body = await self._request("GET", f"/runs/{run_id}")
        return _run_from_json(body["data"])

    async def list_runs(self, workspace_id: str) -> list[Run]:
        items = await self._list(f"/workspaces/{workspace_id}/runs")
        return [_run_from_json(item) for item in items]

    async def force_cancel_run(self, run_id: str, comment: str) -> None:
        await self._request(
            "POST", f"/runs/{run_id}/actions/force-cancel", json={"comment": comment}
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def current_state_download_url(self, workspace_id: str) -> str:
        body = await self._request("GET", f"/workspaces/{workspace_id}/current-state-version")
        attrs = body.get("data", {}).get("attributes", {})
        return attrs.get("hosted-state-download-url") or ""

    async def download_state(self, download_url: str) -> bytes:
        """Download a raw state document.

        Raises:
            PlatformAPIError: If the download fails or exceeds the size limit.
        """
        response = await self._send("GET", download_url, headers={"Accept": "application/json"})
        if len(response.content) > MAX_STATE_SIZE_BYTES:
            raise PlatformAPIError(
                f"State document exceeds maximum size of {MAX_STATE_SIZE_BYTES} bytes"
            )
        return response.content
