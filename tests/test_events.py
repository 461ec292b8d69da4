"""Tests for event recording."""

import logging

import pytest

from tfc_operator.events import EventRecorder, EventType
from tfc_operator.models import WorkspaceResource


@pytest.fixture
def resource() -> WorkspaceResource:
    return WorkspaceResource.model_validate(
        {"metadata": {"name": "network", "namespace": "prod"}, "spec": {"organization": "acme"}}
    )


class TestEventRecorder:
    """Tests for EventRecorder."""

    def test_records_by_resource(self, resource: WorkspaceResource) -> None:
        recorder = EventRecorder()

        recorder.normal(resource, "Started new Terraform job with id run-1")
        recorder.warning(resource, "Run failed")

        events = recorder.events_for("prod/network")
        assert [e.event_type for e in events] == [EventType.NORMAL, EventType.WARNING]
        assert events[0].reason == "WorkspaceEvent"
        assert recorder.events_for("prod/other") == []

    def test_history_is_bounded(self, resource: WorkspaceResource) -> None:
        recorder = EventRecorder(max_events=2)

        for i in range(3):
            recorder.normal(resource, f"event {i}")

        assert [e.message for e in recorder.events] == ["event 1", "event 2"]

    def test_warning_logged_at_warning_level(
        self, resource: WorkspaceResource, caplog: pytest.LogCaptureFixture
    ) -> None:
        recorder = EventRecorder()

        with caplog.at_level(logging.INFO, logger="tfc_operator.events"):
            recorder.warning(resource, "Secrets mount path is invalid")

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.resource == "prod/network"

    def test_to_dict(self, resource: WorkspaceResource) -> None:
        event = EventRecorder().normal(resource, "hello")

        data = event.to_dict()
        assert data["event_type"] == "Normal"
        assert data["resource"] == "prod/network"
        assert isinstance(data["timestamp"], str)
