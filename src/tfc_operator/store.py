"""File-backed stores for workspace resources and derived documents.

Resources live as one Kubernetes-style YAML document per workspace at
``{root}/{namespace}/{name}.yaml``. Writes use optimistic concurrency on
``metadata.resourceVersion``: a write carrying a stale version raises
ConflictError and the caller re-reads on its next pass.

SECURITY: All reads enforce size limits, and YAML is parsed with
``yaml.safe_load`` only.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCE_FILE_SIZE_BYTES, MAX_STORE_FILE_SIZE_BYTES
from .models import WorkspaceResource, split_key

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a stored document cannot be read or written."""

    pass


class ConflictError(StoreError):
    """Raised when a write is based on a stale resourceVersion."""

    pass


class ResourceStore(Protocol):
    """Declarative store of workspace resources."""

    def list_keys(self) -> list[str]: ...

    def get(self, key: str) -> WorkspaceResource | None: ...

    def update(self, resource: WorkspaceResource) -> None: ...

    def update_status(self, resource: WorkspaceResource) -> None: ...

    def mark_for_deletion(self, key: str) -> WorkspaceResource | None: ...


class KeyValueStore(Protocol):
    """Named string maps, keyed by namespace and name."""

    def get(self, namespace: str, name: str) -> dict[str, str] | None: ...

    def put(self, namespace: str, name: str, data: dict[str, str]) -> None: ...

    def delete(self, namespace: str, name: str) -> bool: ...


def _read_yaml(path: Path, max_size: int) -> Any:
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise StoreError(f"Failed to stat {path}: {e}") from e

    if file_size > max_size:
        raise StoreError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"Failed to read {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StoreError(f"Invalid YAML in {path}: {e}") from e


def _write_yaml(path: Path, data: Any) -> None:
    """Write a YAML document atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
        os.replace(tmp_name, path)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise StoreError(f"Failed to write {path}: {e}") from e


def parse_resource(raw_data: Any, source: str) -> WorkspaceResource:
    """Validate a raw workspace document.

    Raises:
        StoreError: If the document is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise StoreError(f"Resource document must be a YAML mapping: {source}")

    try:
        return WorkspaceResource.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise StoreError(f"Validation failed for {source}:\n{error_list}") from e


class FileResourceStore:
    """Workspace resources stored as YAML files under a root directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, namespace: str, name: str) -> Path:
        return self._root / namespace / f"{name}.yaml"

    def list_keys(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(
            f"{path.parent.name}/{path.stem}"
            for path in self._root.glob("*/*.yaml")
            if path.is_file()
        )

    def get(self, key: str) -> WorkspaceResource | None:
        """Load a resource, or None if it does not exist.

        The document's directory and file name are authoritative for its
        namespace and name.
        """
        namespace, name = split_key(key)
        path = self._path(namespace, name)
        if not path.exists():
            return None

        raw_data = _read_yaml(path, MAX_RESOURCE_FILE_SIZE_BYTES)
        if isinstance(raw_data, dict):
            metadata = raw_data.setdefault("metadata", {})
            if isinstance(metadata, dict):
                metadata["name"] = name
                metadata["namespace"] = namespace
        return parse_resource(raw_data, str(path))

    def _commit(self, resource: WorkspaceResource, *, status_only: bool) -> None:
        stored = self.get(resource.key)
        if stored is None:
            raise StoreError(f"Resource not found: {resource.key}")

        if stored.metadata.resource_version != resource.metadata.resource_version:
            raise ConflictError(
                f"Resource {resource.key} was modified: stored resourceVersion "
                f"{stored.metadata.resource_version}, "
                f"write based on {resource.metadata.resource_version}"
            )

        if status_only:
            stored.status = resource.status.model_copy(deep=True)
        else:
            stored.metadata.finalizers = list(resource.metadata.finalizers)

        stored.metadata.resource_version += 1
        path = self._path(stored.metadata.namespace, stored.metadata.name)

        if stored.marked_for_deletion and not stored.metadata.finalizers:
            path.unlink(missing_ok=True)
            logger.info(
                "Removed resource with no remaining finalizers",
                extra={"resource": stored.key},
            )
        else:
            _write_yaml(path, stored.to_document())

        resource.metadata.resource_version = stored.metadata.resource_version

    def update(self, resource: WorkspaceResource) -> None:
        """Persist metadata changes (finalizers)."""
        self._commit(resource, status_only=False)

    def update_status(self, resource: WorkspaceResource) -> None:
        """Persist the observed status."""
        self._commit(resource, status_only=True)

    def mark_for_deletion(self, key: str) -> WorkspaceResource | None:
        """Set the deletion marker on a resource.

        A resource without finalizers is removed at once. Returns the
        updated resource, or None if it does not exist (or was removed).
        """
        resource = self.get(key)
        if resource is None:
            return None

        path = self._path(resource.metadata.namespace, resource.metadata.name)
        if not resource.metadata.finalizers:
            path.unlink(missing_ok=True)
            logger.info("Removed resource", extra={"resource": key})
            return None

        if resource.metadata.deletion_timestamp is None:
            resource.metadata.deletion_timestamp = datetime.now(UTC)
            resource.metadata.resource_version += 1
            _write_yaml(path, resource.to_document())
            logger.info("Marked resource for deletion", extra={"resource": key})
        return resource


class FileKeyValueStore:
    """String maps stored as YAML mappings at ``{root}/{namespace}/{name}.yaml``."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, namespace: str, name: str) -> Path:
        return self._root / namespace / f"{name}.yaml"

    def get(self, namespace: str, name: str) -> dict[str, str] | None:
        path = self._path(namespace, name)
        if not path.exists():
            return None
        data = _read_yaml(path, MAX_STORE_FILE_SIZE_BYTES)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise StoreError(f"Store document must be a YAML mapping: {path}")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}

    def put(self, namespace: str, name: str, data: dict[str, str]) -> None:
        _write_yaml(self._path(namespace, name), dict(data))

    def delete(self, namespace: str, name: str) -> bool:
        """Delete an entry. Returns False if it did not exist."""
        path = self._path(namespace, name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to delete {path}: {e}") from e
        return True
