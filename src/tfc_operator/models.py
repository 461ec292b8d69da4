"""Pydantic models for workspace resources with validation.

These models provide:
1. Type-safe parsing of workspace documents (desired spec + observed status)
2. Validation at the boundary (fail fast, fail loudly)
3. Plain views of the platform objects the reconciler reasons about
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Finalizer marker guarding removal of a workspace resource while a remote
# workspace may still exist.
WORKSPACE_FINALIZER = "finalizer.workspace.app.terraform.io"

API_VERSION = "app.terraform.io/v1alpha1"
KIND = "Workspace"


# =============================================================================
# Desired state
# =============================================================================


class Module(BaseModel):
    """Any remote module source (version control, registry)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    source: Annotated[str, Field(min_length=1)]
    # Module version for registry modules
    version: str | None = None


class VCS(BaseModel):
    """Connection between the workspace and a VCS repository."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Token ID of the VCS (OAuth) connection to use
    token_id: str = Field(alias="tokenID")
    # Repository in the format org/repo
    repo_identifier: Annotated[str, Field(min_length=1, alias="repoIdentifier")]
    branch: str = ""
    ingress_submodules: bool = Field(False, alias="ingressSubmodules")


class Variable(BaseModel):
    """An input to the module."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: Annotated[str, Field(min_length=1)]
    value: str = ""
    hcl: bool = False
    # Sensitive variables with an empty value are read from the secrets mount
    sensitive: bool = False
    environment_variable: bool = Field(False, alias="environmentVariable")


class OutputSpec(BaseModel):
    """A module output to expose."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: Annotated[str, Field(min_length=1)]
    module_output_name: Annotated[str, Field(min_length=1, alias="moduleOutputName")]


class OutputStatus(BaseModel):
    """A stringified output value read from the workspace state."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    key: str
    value: str


class NotificationType(str, Enum):
    """Notification destination types."""

    EMAIL = "email"
    GENERIC = "generic"
    SLACK = "slack"
    MICROSOFT_TEAMS = "microsoft-teams"


class Notification(BaseModel):
    """A workspace notification configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    type: NotificationType
    enabled: bool = False
    url: str = ""
    # Token used to generate an HMAC on the verification request
    token: str = ""
    # run:created, run:planning, run:needs_attention, run:applying, run:completed, run:errored
    triggers: list[str] = Field(default_factory=list)
    # Recipients' email addresses, only applicable for Terraform Enterprise
    recipients: list[str] = Field(default_factory=list)
    # User IDs to receive the notification email
    users: list[str] = Field(default_factory=list)


class RunTrigger(BaseModel):
    """A workspace whose successful applies queue runs in this one."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    sourceable_name: Annotated[str, Field(min_length=1, alias="sourceableName")]


class WorkspaceSpec(BaseModel):
    """Desired state of a workspace."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    organization: Annotated[str, Field(min_length=1)]
    module: Module | None = None
    vcs: VCS | None = None
    variables: list[Variable] = Field(default_factory=list)
    # Directory inside the operator holding one file per sensitive variable
    secrets_mount_path: str = Field("", alias="secretsMountPath")
    # SSH key name or ID; the key must already exist in the organization
    ssh_key_id: str = Field("", alias="sshKeyID")
    agent_pool_id: str = Field("", alias="agentPoolID")
    agent_pool_name: str = Field("", alias="agentPoolName")
    terraform_version: str = Field("", alias="terraformVersion")
    outputs: list[OutputSpec] = Field(default_factory=list)
    notifications: list[Notification] = Field(default_factory=list)
    run_triggers: list[RunTrigger] = Field(default_factory=list, alias="runTriggers")
    # Name of the downstream output store entry, defaults to "<name>-outputs"
    output_secret_name: str = Field("", alias="outputSecretName")

    @field_validator("variables")
    @classmethod
    def validate_unique_keys(cls, v: list[Variable]) -> list[Variable]:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for var in v:
            if var.key in seen:
                duplicates.add(var.key)
            seen.add(var.key)
        if duplicates:
            raise ValueError(f"variable keys must be unique, duplicated: {sorted(duplicates)}")
        return v

    @field_validator("notifications")
    @classmethod
    def validate_unique_notification_names(cls, v: list[Notification]) -> list[Notification]:
        names = [n.name for n in v]
        if len(names) != len(set(names)):
            raise ValueError("notification names must be unique")
        return v

    @model_validator(mode="after")
    def validate_single_source(self) -> WorkspaceSpec:
        if self.module is not None and self.vcs is not None:
            raise ValueError("only one of module or vcs may be specified")
        return self


class WorkspaceStatus(BaseModel):
    """Observed state of a workspace, written only by the reconciler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    workspace_id: str = Field("", alias="workspaceID")
    run_id: str = Field("", alias="runID")
    run_status: str = Field("", alias="runStatus")
    config_version_id: str = Field("", alias="configVersionID")
    # Digest of the configuration and variables the last operator run started with
    run_digest: str = Field("", alias="runDigest")
    outputs: list[OutputStatus] = Field(default_factory=list)
    output_secret_name: str = Field("", alias="outputSecretName")
    output_secret_namespace: str = Field("", alias="outputSecretNamespace")


class ObjectMeta(BaseModel):
    """Identity and lifecycle metadata of a stored resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")]
    namespace: Annotated[
        str, Field(min_length=1, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    ] = "default"
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    resource_version: int = Field(0, alias="resourceVersion")
    generation: int = 1


class WorkspaceResource(BaseModel):
    """A stored workspace document: metadata, desired spec and observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: WorkspaceSpec
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)

    @property
    def key(self) -> str:
        """Store key, "<namespace>/<name>"."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def workspace_name(self) -> str:
        """Name of the remote workspace, "<namespace>-<name>"."""
        return f"{self.metadata.namespace}-{self.metadata.name}"

    @property
    def output_secret_name(self) -> str:
        return self.spec.output_secret_name or f"{self.metadata.name}-outputs"

    @property
    def marked_for_deletion(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str = WORKSPACE_FINALIZER) -> bool:
        return finalizer in self.metadata.finalizers

    def to_document(self) -> dict[str, Any]:
        """Serialize to the on-disk document shape (camelCase keys)."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def split_key(key: str) -> tuple[str, str]:
    """Split a "<namespace>/<name>" key; a bare name uses the default namespace."""
    if "/" in key:
        namespace, _, name = key.partition("/")
        return namespace, name
    return "default", key


# =============================================================================
# Platform views
# =============================================================================


class RunStatus(str, Enum):
    """Run states the reconciler distinguishes."""

    PENDING = "pending"
    PLAN_QUEUED = "plan_queued"
    PLANNING = "planning"
    PLANNED = "planned"
    CONFIRMED = "confirmed"
    APPLY_QUEUED = "apply_queued"
    APPLYING = "applying"
    APPLIED = "applied"
    PLANNED_AND_FINISHED = "planned_and_finished"
    ERRORED = "errored"
    CANCELED = "canceled"
    # Reported after a force-cancel, including the one issued before a destroy
    FORCE_CANCELED = "force_canceled"
    DISCARDED = "discarded"


TERMINAL_RUN_STATUSES: frozenset[str] = frozenset(
    {
        RunStatus.APPLIED.value,
        RunStatus.PLANNED_AND_FINISHED.value,
        RunStatus.ERRORED.value,
        RunStatus.CANCELED.value,
        RunStatus.FORCE_CANCELED.value,
        RunStatus.DISCARDED.value,
    }
)

# Terminal states in which a destroy run actually completed
DESTROYED_RUN_STATUSES: frozenset[str] = frozenset(
    {
        RunStatus.APPLIED.value,
        RunStatus.PLANNED_AND_FINISHED.value,
    }
)


class ConfigurationStatus(str, Enum):
    """Configuration version states."""

    PENDING = "pending"
    FETCHING = "fetching"
    UPLOADED = "uploaded"
    ERRORED = "errored"
    ARCHIVED = "archived"


class VariableCategory(str, Enum):
    """Where the platform exposes a variable."""

    TERRAFORM = "terraform"
    ENV = "env"


@dataclass
class RemoteWorkspace:
    """The platform's view of a workspace."""

    id: str
    name: str
    terraform_version: str = ""
    agent_pool_id: str = ""
    execution_mode: str = ""
    ssh_key_id: str = ""
    current_run_id: str = ""
    auto_apply: bool = False


@dataclass
class RemoteVariable:
    """The platform's view of a variable. Sensitive values are never returned."""

    id: str
    key: str
    value: str | None
    workspace_id: str
    category: str = VariableCategory.TERRAFORM.value
    hcl: bool = False
    sensitive: bool = False


@dataclass
class ConfigurationVersion:
    """An immutable configuration snapshot associated with runs."""

    id: str
    status: str
    upload_url: str = ""


@dataclass
class Run:
    """A single plan/apply (or destroy) job."""

    id: str
    status: str
    is_destroy: bool = False
    message: str = ""


@dataclass
class NotificationConfiguration:
    """The platform's view of a workspace notification."""

    id: str
    name: str
    destination_type: str
    enabled: bool = False
    url: str = ""
    token: str = ""
    triggers: list[str] = field(default_factory=list)
    email_addresses: list[str] = field(default_factory=list)
    email_user_ids: list[str] = field(default_factory=list)


@dataclass
class SSHKey:
    id: str
    name: str


@dataclass
class AgentPool:
    id: str
    name: str


@dataclass
class RemoteRunTrigger:
    """An inbound run trigger on a workspace."""

    id: str
    sourceable_id: str
    sourceable_name: str
