"""
Tests for the FastAPI dashboard adapter.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from sandbox_devtools.api import create_app
from sandbox_devtools.devtools import create_devtools
from sandbox_devtools.exceptions import UnsupportedResourceTypeError
from sandbox_devtools.models import LogEntry, SandboxStatus, StackEvent
from sandbox_devtools.sandbox_state import SandboxStateManager
from sandbox_devtools.settings import DevToolsSettings


METADATA = {
    "name": "sandbox-1",
    "region": "us-west-2",
    "resources": [{
        "logicalResourceId": "amplifyDataTable",
        "physicalResourceId": "table-123",
        "resourceType": "AWS::DynamoDB::Table",
        "resourceStatus": "CREATE_COMPLETE",
    }],
}


@pytest.fixture
def tail_source():
    source = Mock()
    source.open.return_value = iter([])
    return source


@pytest.fixture
def metadata_source():
    source = Mock()
    source.get_backend_metadata.return_value = METADATA
    return source


@pytest.fixture
def devtools(tmp_path, metadata_source, tail_source):
    return create_devtools(
        "sandbox-1",
        settings=DevToolsSettings(home=tmp_path / "devtools"),
        metadata_source=metadata_source,
        tail_source=tail_source,
        sandbox_state=SandboxStateManager(SandboxStatus.RUNNING),
    )


@pytest.fixture
def client(devtools):
    return TestClient(create_app(devtools))


class TestResourcesEndpoints:
    """Test resource listing."""

    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json() == {"status": "running", "identifier": "sandbox-1"}

    def test_resources_fetched_and_saved(self, client, metadata_source):
        response = client.get("/api/resources")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "sandbox-1"
        assert data["status"] == "running"
        assert data["resources"][0]["friendlyName"] == "Data Table"

        saved = client.get("/api/resources/saved")
        assert saved.status_code == 200
        assert saved.json() == data
        metadata_source.get_backend_metadata.assert_called_once()

    def test_saved_resources_missing(self, client):
        response = client.get("/api/resources/saved")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "no_saved_resources"

    def test_deploying_placeholder(self, client, metadata_source):
        metadata_source.get_backend_metadata.side_effect = Exception("deployment is in progress")
        data = client.get("/api/resources").json()
        assert data["status"] == "deploying"
        assert data["resources"] == []
        assert "message" in data

    def test_unclassified_error(self, client, metadata_source):
        metadata_source.get_backend_metadata.side_effect = RuntimeError("Access denied")
        response = client.get("/api/resources")
        assert response.status_code == 500
        assert response.json()["detail"]["message"] == "Access denied"

    def test_friendly_name_override_applied(self, client, devtools):
        response = client.put("/api/friendly-names/table-123", json={"friendlyName": "Orders"})
        assert response.status_code == 200
        assert client.get("/api/friendly-names").json() == {"table-123": "Orders"}

        data = client.get("/api/resources").json()
        assert data["resources"][0]["friendlyName"] == "Orders"
        assert devtools.storage.load_resources().resources[0].friendly_name == "Data Table"

        client.delete("/api/friendly-names/table-123")
        assert client.get("/api/friendly-names").json() == {}


class TestStatusEndpoints:
    """Test sandbox status and deployment reports."""

    def test_status_update(self, client, devtools):
        response = client.put("/api/status", json={"status": "stopped"})

        assert response.status_code == 200
        assert response.json() == {"status": "stopped", "identifier": "sandbox-1"}
        assert client.get("/api/status").json()["status"] == "stopped"
        assert devtools.sandbox_state.get_status() == SandboxStatus.STOPPED

    def test_status_update_rejects_unknown_value(self, client):
        assert client.put("/api/status", json={"status": "sleeping"}).status_code == 422

    def test_resources_report_updated_status(self, client):
        client.put("/api/status", json={"status": "deploying"})
        assert client.get("/api/resources").json()["status"] == "deploying"

    def test_finished_deployment_refetches_resources(self, client, metadata_source):
        client.get("/api/resources")
        client.put("/api/status", json={"status": "deploying"})
        client.put("/api/status", json={"status": "running"})

        assert client.get("/api/resources/saved").status_code == 404
        client.get("/api/resources")
        assert metadata_source.get_backend_metadata.call_count == 2

    def test_deployment_completed(self, client, devtools):
        client.get("/api/resources")
        assert client.post("/api/deployment/started").json()["status"] == "deploying"

        response = client.post("/api/deployment/completed")

        assert response.json() == {"status": "running", "identifier": "sandbox-1"}
        assert devtools.storage.load_resources() is None

    def test_deployment_failed(self, client, devtools):
        client.get("/api/resources")
        client.post("/api/deployment/started")

        response = client.post("/api/deployment/failed", json={"error": "Role not found"})

        assert response.json()["status"] == "running"
        assert devtools.storage.load_resources() is not None

    def test_refresh_without_status_source(self, client):
        assert client.post("/api/status/refresh").json()["status"] == "running"


class TestLogEndpoints:
    """Test log subscription endpoints."""

    def test_start_and_stop(self, client, devtools, tail_source):
        tail_source.open.return_value = iter([LogEntry("2024-01-01T00:00:00Z", "hello")])

        response = client.post("/api/logs/fn-1/start", json={"resourceType": "AWS::Lambda::Function"})
        assert response.status_code == 200
        assert response.json() == {"resourceId": "fn-1", "status": "active"}
        tail_source.open.assert_called_once_with("fn-1", "AWS::Lambda::Function")

        response = client.post("/api/logs/fn-1/stop")
        assert response.json() == {"resourceId": "fn-1", "status": "stopped"}
        assert client.get("/api/logs/active").json() == {"active": []}

    def test_unsupported_type(self, client, tail_source):
        tail_source.open.side_effect = UnsupportedResourceTypeError("bucket-1", "AWS::S3::Bucket")
        response = client.post("/api/logs/bucket-1/start", json={"resourceType": "AWS::S3::Bucket"})
        assert response.status_code == 400
        assert "Unsupported resource type" in response.json()["detail"]["message"]

    def test_saved_logs(self, client, devtools):
        devtools.storage.save_logs("fn-1", [LogEntry("2024-01-01T00:00:00Z", "saved line")])
        response = client.get("/api/logs/fn-1")
        assert response.json() == {
            "resourceId": "fn-1",
            "logs": [{"timestamp": "2024-01-01T00:00:00Z", "message": "saved line"}],
        }

    def test_log_settings(self, client, devtools):
        assert client.get("/api/logs/settings").json()["maxLogSizeMB"] == 50

        response = client.put("/api/logs/settings", json={"maxLogSizeMB": 5})
        assert response.status_code == 200
        assert response.json()["maxLogSizeMB"] == 5
        assert devtools.storage.max_log_size_mb == 5

    def test_log_settings_rejects_non_positive(self, client):
        response = client.put("/api/logs/settings", json={"maxLogSizeMB": 0})
        assert response.status_code == 422


class TestProgressEndpoints:
    """Test deployment progress endpoints."""

    def test_record_list_and_clear(self, client):
        response = client.post("/api/progress", json={
            "message": "10:15:01 AM | CREATE_IN_PROGRESS | AWS::Lambda::Function | sayHello",
        })
        assert len(response.json()) == 1

        events = client.get("/api/progress").json()
        assert events[0]["message"] == "10:15:01 AM | CREATE_IN_PROGRESS | AWS::Lambda::Function | sayHello"

        client.delete("/api/progress")
        assert client.get("/api/progress").json() == []


class TestStackEventEndpoint:
    """Test pulling CloudFormation stack events into progress."""

    def test_stack_events_recorded(self, tmp_path, metadata_source, tail_source):
        event_source = Mock()
        event_source.get_stack_events.return_value = [StackEvent(
            event_id="e1",
            timestamp=datetime(2024, 1, 1, 10, 15, 1, tzinfo=timezone.utc),
            logical_id="sayHelloFn",
            physical_id="say-hello",
            resource_type="AWS::Lambda::Function",
            status="CREATE_IN_PROGRESS",
            stack_id="stack-id",
            stack_name="sandbox-1",
        )]
        devtools = create_devtools(
            "sandbox-1",
            settings=DevToolsSettings(home=tmp_path / "devtools"),
            metadata_source=metadata_source,
            tail_source=tail_source,
            event_source=event_source,
        )
        client = TestClient(create_app(devtools))

        response = client.post("/api/progress/stack-events")

        assert response.status_code == 200
        assert response.json()[0]["timestamp"] == "2024-01-01T10:15:01+00:00"
        assert client.get("/api/progress").json() == response.json()
        event_source.get_stack_events.assert_called_once_with("sandbox-1", None)

    def test_no_event_source(self, client):
        assert client.post("/api/progress/stack-events").json() == []


class TestEventSocket:
    """Test the WebSocket relay."""

    def test_events_relayed(self, client):
        with client.websocket_connect("/ws") as websocket:
            client.put("/api/friendly-names/fn-1", json={"friendlyName": "Checkout"})
            message = websocket.receive_json()

        assert message == {
            "event": "customFriendlyNameUpdated",
            "data": {"resourceId": "fn-1", "friendlyName": "Checkout"},
        }

    def test_listener_removed_on_disconnect(self, client, devtools):
        before = devtools.broadcaster.listener_count()
        with client.websocket_connect("/ws"):
            pass
        client.get("/api/status")
        assert devtools.broadcaster.listener_count() == before

    def test_disconnect_with_pending_events(self, client, devtools):
        before = devtools.broadcaster.listener_count()
        with client.websocket_connect("/ws"):
            for i in range(5):
                client.put(f"/api/friendly-names/fn-{i}", json={"friendlyName": f"Fn {i}"})

        assert client.get("/api/status").status_code == 200
        assert devtools.broadcaster.listener_count() == before


class TestLifespan:
    """Test shutdown on server stop."""

    def test_shutdown_clears_cache(self, devtools):
        devtools.storage.save_logs("fn-1", [LogEntry("2024-01-01T00:00:00Z", "line")])
        with TestClient(create_app(devtools)) as client:
            client.get("/api/status")

        assert devtools.storage.load_logs("fn-1") == []
        assert devtools.broadcaster.closed


class TestWiring:
    """Test the devtools wiring."""

    def test_sandbox_status_change_broadcast(self, devtools):
        listener = Mock()
        devtools.broadcaster.add_listener(listener)

        devtools.sandbox_state.update_status(SandboxStatus.DEPLOYING)

        listener.assert_called_once_with("sandboxStatus", {"status": "deploying", "identifier": "sandbox-1"})

    def test_store_directory_per_backend(self, devtools, tmp_path):
        assert devtools.storage.base_dir == tmp_path / "devtools-sandbox-1"

    def test_default_aws_sources(self, tmp_path):
        from sandbox_devtools.aws import CloudFormationEventSource, CloudFormationMetadataSource

        devtools = create_devtools("sandbox-1", settings=DevToolsSettings(home=tmp_path / "devtools"))

        assert isinstance(devtools.resources.metadata_source, CloudFormationMetadataSource)
        assert devtools.deployment.status_source is devtools.resources.metadata_source
        assert isinstance(devtools.progress.event_source, CloudFormationEventSource)
