"""Tests for the file-backed resource and key-value stores."""

from pathlib import Path

import pytest
import yaml

from tfc_mock import workspace_document, write_workspace
from tfc_operator.models import WORKSPACE_FINALIZER
from tfc_operator.store import (
    ConflictError,
    FileKeyValueStore,
    FileResourceStore,
    StoreError,
    parse_resource,
)


class TestFileResourceStore:
    """Tests for FileResourceStore."""

    def test_list_keys_sorted(self, tmp_path: Path) -> None:
        write_workspace(tmp_path, workspace_document("b", "prod"))
        write_workspace(tmp_path, workspace_document("a", "stage"))
        write_workspace(tmp_path, workspace_document("a", "prod"))

        assert FileResourceStore(tmp_path).list_keys() == ["prod/a", "prod/b", "stage/a"]

    def test_list_keys_missing_root(self, tmp_path: Path) -> None:
        assert FileResourceStore(tmp_path / "absent").list_keys() == []

    def test_get_missing(self, tmp_path: Path) -> None:
        assert FileResourceStore(tmp_path).get("prod/network") is None

    def test_path_is_authoritative_for_identity(self, tmp_path: Path) -> None:
        """Test that name and namespace come from the file location."""
        document = workspace_document("network", "prod")
        document["metadata"]["name"] = "something-else"
        path = tmp_path / "prod" / "network.yaml"
        path.parent.mkdir(parents=True)
        path.write_text(yaml.safe_dump(document))

        resource = FileResourceStore(tmp_path).get("prod/network")

        assert resource is not None
        assert resource.key == "prod/network"

    def test_invalid_document(self, tmp_path: Path) -> None:
        """Test that validation errors name the failing field."""
        document = workspace_document()
        document["spec"]["organization"] = ""
        key = write_workspace(tmp_path, document)

        with pytest.raises(StoreError) as exc_info:
            FileResourceStore(tmp_path).get(key)

        assert "spec.organization" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "prod" / "network.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("metadata: [unclosed")

        with pytest.raises(StoreError) as exc_info:
            FileResourceStore(tmp_path).get("prod/network")

        assert "Invalid YAML" in str(exc_info.value)

    def test_update_status_persists_and_bumps_version(self, tmp_path: Path) -> None:
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document())
        resource = store.get(key)
        assert resource is not None

        resource.status.workspace_id = "ws-1"
        store.update_status(resource)

        stored = store.get(key)
        assert stored is not None
        assert stored.status.workspace_id == "ws-1"
        assert stored.metadata.resource_version == 1
        assert resource.metadata.resource_version == 1

    def test_update_status_ignores_spec_changes(self, tmp_path: Path) -> None:
        """Test that a status write never rewrites the desired spec."""
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document())
        resource = store.get(key)
        assert resource is not None

        resource.spec.organization = "other"
        resource.status.run_id = "run-1"
        store.update_status(resource)

        stored = store.get(key)
        assert stored is not None
        assert stored.spec.organization == "acme"
        assert stored.status.run_id == "run-1"

    def test_stale_write_conflicts(self, tmp_path: Path) -> None:
        """Test optimistic concurrency on resourceVersion."""
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document())
        first = store.get(key)
        second = store.get(key)
        assert first is not None and second is not None

        first.status.run_id = "run-1"
        store.update_status(first)

        second.status.run_id = "run-2"
        with pytest.raises(ConflictError):
            store.update_status(second)

    def test_update_persists_finalizers(self, tmp_path: Path) -> None:
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document())
        resource = store.get(key)
        assert resource is not None

        resource.metadata.finalizers.append(WORKSPACE_FINALIZER)
        store.update(resource)

        stored = store.get(key)
        assert stored is not None
        assert stored.has_finalizer()

    def test_mark_for_deletion_without_finalizers_removes(self, tmp_path: Path) -> None:
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document())

        assert store.mark_for_deletion(key) is None
        assert store.get(key) is None

    def test_mark_for_deletion_waits_for_finalizers(self, tmp_path: Path) -> None:
        """Test that a finalized resource is only removed once its finalizer is released."""
        store = FileResourceStore(tmp_path)
        key = write_workspace(tmp_path, workspace_document(finalizers=[WORKSPACE_FINALIZER]))

        marked = store.mark_for_deletion(key)
        assert marked is not None
        assert marked.marked_for_deletion

        resource = store.get(key)
        assert resource is not None
        assert resource.marked_for_deletion

        resource.metadata.finalizers.clear()
        store.update(resource)

        assert store.get(key) is None
        assert store.list_keys() == []


class TestParseResource:
    def test_rejects_non_mapping(self) -> None:
        with pytest.raises(StoreError) as exc_info:
            parse_resource(["not", "a", "mapping"], "inline")

        assert "mapping" in str(exc_info.value)


class TestFileKeyValueStore:
    """Tests for FileKeyValueStore."""

    def test_put_get_delete(self, tmp_path: Path) -> None:
        store = FileKeyValueStore(tmp_path)

        assert store.get("prod", "network-outputs") is None

        store.put("prod", "network-outputs", {"vpc": '"vpc-1"'})
        assert store.get("prod", "network-outputs") == {"vpc": '"vpc-1"'}

        assert store.delete("prod", "network-outputs") is True
        assert store.delete("prod", "network-outputs") is False
        assert store.get("prod", "network-outputs") is None

    def test_values_are_strings(self, tmp_path: Path) -> None:
        path = tmp_path / "prod" / "entry.yaml"
        path.parent.mkdir(parents=True)
        path.write_text("count: 3\nempty:\n")

        assert FileKeyValueStore(tmp_path).get("prod", "entry") == {"count": "3", "empty": ""}
