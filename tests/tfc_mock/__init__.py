"""Terraform Cloud API Mock for Integration Testing.

This module provides a mock implementation of the Terraform Cloud API
surface the operator consumes, so reconciliation can be tested without
platform connectivity.

Key Features:
- In-memory organizations, workspaces, variables, notifications and run triggers
- Configuration version and run lifecycle simulation (statuses set by the test)
- Scripted destroy runs (pending → applying → applied)
- Mutation log for asserting idempotent passes
- Error injection for testing failure scenarios

Usage:
    from tfc_mock import create_mock_client

    client = create_mock_client()
    reconciler = WorkspaceReconciler(client=client, ...)
    await reconciler.reconcile("prod/network")

    # Assert on mock state
    assert client.state.operations() == ["create_workspace", ...]
"""

from .platform import (
    Mutation,
    MockPlatformState,
    MockTerraformCloudClient,
    create_mock_client,
)
from .resources import workspace_document, write_workspace

__all__ = [
    "MockPlatformState",
    "MockTerraformCloudClient",
    "Mutation",
    "create_mock_client",
    "workspace_document",
    "write_workspace",
]
