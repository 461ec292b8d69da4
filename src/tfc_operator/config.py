"""Configuration management with validation.

Configuration is read once from the environment at startup and validated
as a whole, so a misconfigured operator fails before it touches any
workspace rather than halfway through a reconciliation.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_TF_URL = "https://app.terraform.io"
DEFAULT_TERRAFORM_VERSION = "latest"

DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_RUN_POLL_INTERVAL_SECONDS = 10
DEFAULT_ERROR_REQUEUE_SECONDS = 5

DEFAULT_DESTROY_POLL_INTERVAL_SECONDS = 30
DEFAULT_DESTROY_TIMEOUT_SECONDS = 3600  # 0 disables the deadline

DEFAULT_VCS_CONFIG_VERSION_ATTEMPTS = 5
DEFAULT_VCS_CONFIG_VERSION_DELAY_SECONDS = 2

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

# Size limits for files read from disk
MAX_RESOURCE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max workspace document
MAX_STORE_FILE_SIZE_BYTES = 4 * 1024 * 1024  # 4MB max output/config document
MAX_STATE_SIZE_BYTES = 64 * 1024 * 1024  # 64MB max downloaded state

# Default locations
DEFAULT_WORKSPACES_DIR = "/workspaces"
DEFAULT_DATA_DIR = "/var/lib/tfc-operator"
DEFAULT_MODULE_DIR = "/tmp/module"
CREDENTIALS_FILE = Path.home() / ".terraform.d" / "credentials.tfrc.json"


def load_cli_credentials(host: str, path: Path | None = None) -> str | None:
    """Look up the API token for a host in a Terraform CLI credentials file.

    The file has the shape written by ``terraform login``::

        {"credentials": {"app.terraform.io": {"token": "..."}}}

    Args:
        host: Platform hostname (no scheme).
        path: Credentials file, defaults to ``~/.terraform.d/credentials.tfrc.json``.

    Returns:
        The token, or None if the file or host entry does not exist.

    Raises:
        ConfigurationError: If the file exists but is not valid JSON.
    """
    path = path or CREDENTIALS_FILE
    if not path.exists():
        return None

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read credentials file {path}: {e}") from e

    entry = data.get("credentials", {}).get(host)
    if not isinstance(entry, dict):
        return None
    token = entry.get("token")
    return str(token) if token else None


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Platform connection
    tf_url: str = DEFAULT_TF_URL
    token: str = field(default="", repr=False)
    insecure: bool = False
    default_terraform_version: str = DEFAULT_TERRAFORM_VERSION
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Paths
    workspaces_dir: Path = field(default_factory=lambda: Path(DEFAULT_WORKSPACES_DIR))
    outputs_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR) / "outputs")
    configs_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR) / "configs")
    module_dir: Path = field(default_factory=lambda: Path(DEFAULT_MODULE_DIR))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    run_poll_interval_seconds: int = DEFAULT_RUN_POLL_INTERVAL_SECONDS
    error_requeue_seconds: int = DEFAULT_ERROR_REQUEUE_SECONDS
    destroy_poll_interval_seconds: int = DEFAULT_DESTROY_POLL_INTERVAL_SECONDS
    destroy_timeout_seconds: int = DEFAULT_DESTROY_TIMEOUT_SECONDS
    vcs_config_version_attempts: int = DEFAULT_VCS_CONFIG_VERSION_ATTEMPTS
    vcs_config_version_delay_seconds: float = DEFAULT_VCS_CONFIG_VERSION_DELAY_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Every problem is collected so a single startup failure reports
        all of them at once.
        """
        errors: list[str] = []

        parsed = urlparse(self.tf_url)
        if not parsed.scheme:
            errors.append(
                f"TF_URL must include a scheme (http:// or https://): {self.tf_url}"
            )
        elif parsed.scheme not in ("http", "https"):
            errors.append(f"TF_URL scheme must be http or https: {self.tf_url}")
        if not parsed.netloc:
            errors.append(f"TF_URL hostname is empty: {self.tf_url}")

        if not self.default_terraform_version:
            errors.append("DEFAULT_TERRAFORM_VERSION cannot be empty")

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.run_poll_interval_seconds < 1:
            errors.append("RUN_POLL_INTERVAL must be at least 1 second")

        if self.error_requeue_seconds < 0:
            errors.append("ERROR_REQUEUE_INTERVAL cannot be negative")

        if self.destroy_poll_interval_seconds < 1:
            errors.append("DESTROY_POLL_INTERVAL must be at least 1 second")

        if self.destroy_timeout_seconds < 0:
            errors.append("DESTROY_TIMEOUT cannot be negative (use 0 to disable)")

        if self.vcs_config_version_attempts < 1:
            errors.append("VCS_CONFIG_VERSION_ATTEMPTS must be at least 1")

        if self.vcs_config_version_delay_seconds < 0:
            errors.append("VCS_CONFIG_VERSION_DELAY cannot be negative")

        if self.request_timeout_seconds < 1:
            errors.append("REQUEST_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def host(self) -> str:
        """Platform hostname, used to look up CLI credentials."""
        return urlparse(self.tf_url).netloc

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TF_URL: Terraform Cloud/Enterprise address (default: https://app.terraform.io)
            TF_TOKEN: API token. If unset, the token for the TF_URL host is read
                from TF_CLI_CREDENTIALS_FILE (default: ~/.terraform.d/credentials.tfrc.json)
            TF_INSECURE: If set to anything but "false", skip TLS verification
            DEFAULT_TERRAFORM_VERSION: Version for newly created workspaces (default: latest)
            WORKSPACES_DIR: Workspace resource documents (default: /workspaces)
            OUTPUTS_DIR: Published outputs (default: /var/lib/tfc-operator/outputs)
            CONFIGS_DIR: Rendered configurations (default: /var/lib/tfc-operator/configs)
            MODULE_DIR: Working directory for configuration uploads (default: /tmp/module)
            RECONCILE_INTERVAL: Steady-state requeue in seconds (default: 60)
            RUN_POLL_INTERVAL: Requeue while a run is pending (default: 10)
            ERROR_REQUEUE_INTERVAL: Requeue after a failed pass (default: 5)
            DESTROY_POLL_INTERVAL: Destroy run poll interval (default: 30)
            DESTROY_TIMEOUT: Destroy run deadline, 0 disables (default: 3600)
            VCS_CONFIG_VERSION_ATTEMPTS: Checks for a VCS configuration version (default: 5)
            VCS_CONFIG_VERSION_DELAY: Seconds between those checks (default: 2)
            REQUEST_TIMEOUT: Per-request HTTP timeout in seconds (default: 30)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_insecure() -> bool:
            value = os.environ.get("TF_INSECURE", "")
            return value != "" and value.lower() != "false"

        tf_url = os.environ.get("TF_URL") or DEFAULT_TF_URL
        token = os.environ.get("TF_TOKEN", "")
        if not token:
            credentials_path = os.environ.get("TF_CLI_CREDENTIALS_FILE")
            token = (
                load_cli_credentials(
                    urlparse(tf_url).netloc,
                    Path(credentials_path) if credentials_path else None,
                )
                or ""
            )

        data_dir = Path(os.environ.get("DATA_DIR", DEFAULT_DATA_DIR))

        return cls(
            tf_url=tf_url,
            token=token,
            insecure=get_insecure(),
            default_terraform_version=os.environ.get(
                "DEFAULT_TERRAFORM_VERSION", DEFAULT_TERRAFORM_VERSION
            ),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            workspaces_dir=Path(os.environ.get("WORKSPACES_DIR", DEFAULT_WORKSPACES_DIR)),
            outputs_dir=Path(os.environ.get("OUTPUTS_DIR", str(data_dir / "outputs"))),
            configs_dir=Path(os.environ.get("CONFIGS_DIR", str(data_dir / "configs"))),
            module_dir=Path(os.environ.get("MODULE_DIR", DEFAULT_MODULE_DIR)),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            run_poll_interval_seconds=get_int(
                "RUN_POLL_INTERVAL", DEFAULT_RUN_POLL_INTERVAL_SECONDS
            ),
            error_requeue_seconds=get_int("ERROR_REQUEUE_INTERVAL", DEFAULT_ERROR_REQUEUE_SECONDS),
            destroy_poll_interval_seconds=get_int(
                "DESTROY_POLL_INTERVAL", DEFAULT_DESTROY_POLL_INTERVAL_SECONDS
            ),
            destroy_timeout_seconds=get_int("DESTROY_TIMEOUT", DEFAULT_DESTROY_TIMEOUT_SECONDS),
            vcs_config_version_attempts=get_int(
                "VCS_CONFIG_VERSION_ATTEMPTS", DEFAULT_VCS_CONFIG_VERSION_ATTEMPTS
            ),
            vcs_config_version_delay_seconds=get_float(
                "VCS_CONFIG_VERSION_DELAY", DEFAULT_VCS_CONFIG_VERSION_DELAY_SECONDS
            ),
        )
