"""
Tests for live log streaming subscriptions.
"""

import queue
import threading
import time
from unittest.mock import Mock, patch

import pytest
from sandbox_devtools.aws.log_tail import CloudWatchLogTailSource
from sandbox_devtools.exceptions import LogStreamError, UnsupportedResourceTypeError
from sandbox_devtools.models import LogEntry, SubscriptionStatus
from sandbox_devtools.obs.broadcast import Broadcaster, EventTypes
from sandbox_devtools.services.log_streaming_service import LogStreamingService
from sandbox_devtools.storage import LocalStorageManager

_CLOSED = object()


class FakeTailSource:
    """In-memory tail source fed by tests."""

    def __init__(self):
        self.queues = {}
        self.feeds = {}
        self.opened = []
        self.closed = []
        self.open_error = None

    def open(self, resource_id, resource_type):
        if self.open_error is not None:
            raise self.open_error
        self.opened.append(resource_id)
        feed = queue.Queue()
        self.queues[resource_id] = feed
        stream = self._iterate(feed)
        self.feeds[stream] = feed
        return stream

    def close(self, resource_id, stream):
        self.closed.append(resource_id)
        feed = self.feeds.pop(stream, None)
        if feed is not None:
            feed.put(_CLOSED)

    def push(self, resource_id, entry):
        self.queues[resource_id].put(entry)

    def end(self, resource_id):
        self.queues[resource_id].put(_CLOSED)

    def fail(self, resource_id, error):
        self.queues[resource_id].put(error)

    @staticmethod
    def _iterate(feed):
        while True:
            item = feed.get(timeout=5)
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _entry(message):
    return LogEntry(timestamp="2024-01-01T00:00:00Z", message=message)


@pytest.fixture
def storage(tmp_path):
    return LocalStorageManager(tmp_path)


@pytest.fixture
def tail():
    return FakeTailSource()


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(storage, tail, events):
    broadcaster = Broadcaster()
    broadcaster.add_listener(lambda event_type, data: events.append((event_type, data)))
    service = LogStreamingService(storage, tail, broadcaster)
    yield service
    service.cleanup()


def _statuses(events, resource_id):
    return [
        data["status"] for event_type, data in events
        if event_type == EventTypes.LOG_STREAM_STATUS and data["resourceId"] == resource_id
    ]


class TestSubscriptionLifecycle:
    """Test starting and stopping subscriptions."""

    def test_start_marks_active(self, service, storage, tail, events):
        status = service.start_subscription("fn-1", "AWS::Lambda::Function")

        assert status == SubscriptionStatus.ACTIVE
        assert service.list_active_subscriptions() == {"fn-1"}
        assert service.is_active("fn-1")
        assert storage.list_actively_logged_resources() == {"fn-1"}
        assert tail.opened == ["fn-1"]
        assert _statuses(events, "fn-1") == ["starting", "active"]

    def test_duplicate_start_is_noop(self, service, storage, tail, events):
        """Test that a second start reports already-active without reopening."""
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        stamped = storage.get_logging_state("fn-1").last_updated

        status = service.start_subscription("fn-1", "AWS::Lambda::Function")

        assert status == SubscriptionStatus.ALREADY_ACTIVE
        assert tail.opened == ["fn-1"]
        assert service.list_active_subscriptions() == {"fn-1"}
        assert storage.get_logging_state("fn-1").last_updated == stamped
        assert _statuses(events, "fn-1")[-1] == "already-active"

    def test_stop_releases_tail(self, service, storage, tail, events):
        service.start_subscription("fn-1", "AWS::Lambda::Function")

        status = service.stop_subscription("fn-1")

        assert status == SubscriptionStatus.STOPPED
        assert tail.closed == ["fn-1"]
        assert service.list_active_subscriptions() == set()
        assert storage.get_logging_state("fn-1").is_active is False
        assert _statuses(events, "fn-1")[-1] == "stopped"

    def test_stop_when_idle(self, service, storage):
        assert service.stop_subscription("fn-9") == SubscriptionStatus.STOPPED
        assert storage.get_logging_state("fn-9").is_active is False

    def test_restart_after_stop(self, service, tail):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        service.stop_subscription("fn-1")
        assert service.start_subscription("fn-1", "AWS::Lambda::Function") == SubscriptionStatus.ACTIVE
        assert tail.opened == ["fn-1", "fn-1"]

    def test_cleanup_stops_everything(self, service, storage):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        service.start_subscription("api-1", "AWS::ApiGateway::RestApi")

        service.cleanup()

        assert service.list_active_subscriptions() == set()
        assert storage.list_actively_logged_resources() == set()


class TestOpenFailures:
    """Test failures while opening the live tail."""

    def test_open_failure_not_tracked(self, service, storage, tail, events):
        tail.open_error = UnsupportedResourceTypeError("bucket-1", "AWS::S3::Bucket")

        with pytest.raises(UnsupportedResourceTypeError):
            service.start_subscription("bucket-1", "AWS::S3::Bucket")

        assert service.list_active_subscriptions() == set()
        assert storage.get_logging_state("bucket-1") is None
        errors = [data for event_type, data in events if event_type == EventTypes.LOG_STREAM_ERROR]
        assert errors == [{"resourceId": "bucket-1", "error": "Unsupported resource type for logs: AWS::S3::Bucket"}]

    def test_unexpected_error_wrapped(self, service, tail):
        tail.open_error = RuntimeError("throttled")

        with pytest.raises(LogStreamError) as exc_info:
            service.start_subscription("fn-1", "AWS::Lambda::Function")

        assert exc_info.value.resource_id == "fn-1"
        assert "throttled" in str(exc_info.value)
        assert not service.is_active("fn-1")


class TestStreaming:
    """Test appending and broadcasting live lines."""

    def test_lines_cached_and_broadcast(self, service, storage, tail, events):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        tail.push("fn-1", _entry("START RequestId"))
        tail.push("fn-1", _entry("END RequestId"))

        assert _wait_for(lambda: len(storage.load_logs("fn-1")) == 2)
        assert [e.message for e in service.replay("fn-1")] == ["START RequestId", "END RequestId"]

        assert _wait_for(lambda: len([e for e in events if e[0] == EventTypes.RESOURCE_LOGS]) == 2)
        log_events = [data for event_type, data in events if event_type == EventTypes.RESOURCE_LOGS]
        assert log_events[0] == {
            "resourceId": "fn-1",
            "logs": [{"timestamp": "2024-01-01T00:00:00Z", "message": "START RequestId"}],
        }

    def test_no_appends_after_stop(self, service, storage, tail):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        tail.push("fn-1", _entry("before"))
        assert _wait_for(lambda: len(storage.load_logs("fn-1")) == 1)

        feed = tail.queues["fn-1"]
        service.stop_subscription("fn-1")
        feed.put(_entry("after"))
        time.sleep(0.1)

        assert [e.message for e in storage.load_logs("fn-1")] == ["before"]

    def test_replay_without_subscription(self, service, storage, tail):
        storage.save_logs("fn-1", [_entry("saved")])
        assert service.replay("fn-1") == [_entry("saved")]
        assert tail.opened == []

    def test_stream_error_broadcast_and_subscription_ended(self, service, storage, tail, events):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        tail.fail("fn-1", RuntimeError("connection reset"))

        assert _wait_for(lambda: not service.is_active("fn-1"))
        errors = [data for event_type, data in events if event_type == EventTypes.LOG_STREAM_ERROR]
        assert errors[0]["resourceId"] == "fn-1"
        assert "connection reset" in errors[0]["error"]
        assert storage.get_logging_state("fn-1").is_active is False

    def test_tail_end_marks_stopped(self, service, storage, tail, events):
        service.start_subscription("fn-1", "AWS::Lambda::Function")
        tail.end("fn-1")

        assert _wait_for(lambda: not service.is_active("fn-1"))
        assert _wait_for(lambda: _statuses(events, "fn-1")[-1] == "stopped")

    def test_failing_listener_does_not_break_stream(self, storage, tail):
        broadcaster = Broadcaster()
        broadcaster.add_listener(Mock(side_effect=RuntimeError("client gone")))
        service = LogStreamingService(storage, tail, broadcaster)

        service.start_subscription("fn-1", "AWS::Lambda::Function")
        tail.push("fn-1", _entry("one"))
        tail.push("fn-1", _entry("two"))

        assert _wait_for(lambda: len(storage.load_logs("fn-1")) == 2)
        assert service.is_active("fn-1")
        service.cleanup()


class TestConcurrentLifecycle:
    """Test start/stop races."""

    def test_stop_during_open(self, storage, events):
        """Test that a stop arriving while the tail opens wins."""
        opening = threading.Event()
        release = threading.Event()

        class SlowTail(FakeTailSource):
            def open(self, resource_id, resource_type):
                opening.set()
                release.wait(2)
                return super().open(resource_id, resource_type)

        tail = SlowTail()
        service = LogStreamingService(storage, tail, Broadcaster())
        result = {}

        starter = threading.Thread(
            target=lambda: result.update(status=service.start_subscription("fn-1", "AWS::Lambda::Function"))
        )
        starter.start()
        assert opening.wait(2)
        service.stop_subscription("fn-1")
        release.set()
        starter.join(2)

        assert result["status"] == SubscriptionStatus.STOPPED
        assert service.list_active_subscriptions() == set()
        assert storage.get_logging_state("fn-1").is_active is False

    def test_concurrent_duplicate_starts_open_once(self, service, tail):
        statuses = []
        threads = [
            threading.Thread(target=lambda: statuses.append(
                service.start_subscription("fn-1", "AWS::Lambda::Function")))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(2)

        assert tail.opened == ["fn-1"]
        assert statuses.count(SubscriptionStatus.ACTIVE) == 1
        assert statuses.count(SubscriptionStatus.ALREADY_ACTIVE) == 4

    def test_late_open_after_restart_keeps_new_stream(self, storage, events):
        """Test start, stop, start where the first open finishes last."""
        opening = threading.Event()
        release = threading.Event()
        calls = []

        class SlowFirstTail(FakeTailSource):
            def open(self, resource_id, resource_type):
                calls.append(resource_id)
                if len(calls) == 1:
                    opening.set()
                    release.wait(2)
                return super().open(resource_id, resource_type)

        tail = SlowFirstTail()
        service = LogStreamingService(storage, tail, Broadcaster())
        result = {}

        starter = threading.Thread(
            target=lambda: result.update(status=service.start_subscription("fn-1", "AWS::Lambda::Function"))
        )
        starter.start()
        assert opening.wait(2)
        service.stop_subscription("fn-1")
        assert service.start_subscription("fn-1", "AWS::Lambda::Function") == SubscriptionStatus.ACTIVE
        live_feed = tail.queues["fn-1"]
        release.set()
        starter.join(2)

        assert result["status"] == SubscriptionStatus.STOPPED
        assert service.list_active_subscriptions() == {"fn-1"}
        assert storage.get_logging_state("fn-1").is_active is True

        live_feed.put(_entry("still live"))
        assert _wait_for(lambda: [e.message for e in storage.load_logs("fn-1")] == ["still live"])
        service.cleanup()

    def test_late_open_after_restart_with_cloudwatch_tail(self, storage):
        """Test start, stop, start against the CloudWatch tail when the first open finishes last."""
        opening = threading.Event()
        release = threading.Event()
        describe_calls = []
        fetches = []

        def describe_log_streams(**kwargs):
            describe_calls.append(kwargs)
            if len(describe_calls) == 1:
                opening.set()
                release.wait(2)
            return {"logStreams": [{"logStreamName": "2024/01/01/[$LATEST]abc"}]}

        def get_log_events(**kwargs):
            fetches.append(kwargs)
            if len(fetches) == 1:
                return {"events": [{"timestamp": 1704067200000, "message": "hello\n"}], "nextForwardToken": "f/1"}
            return {"events": [], "nextForwardToken": "f/1"}

        client = Mock()
        client.describe_log_streams.side_effect = describe_log_streams
        client.get_log_events.side_effect = get_log_events
        service = LogStreamingService(storage, CloudWatchLogTailSource(poll_interval=0.01, client=client), Broadcaster())
        result = {}

        starter = threading.Thread(
            target=lambda: result.update(status=service.start_subscription("fn-1", "AWS::Lambda::Function"))
        )
        starter.start()
        assert opening.wait(2)
        service.stop_subscription("fn-1")
        assert service.start_subscription("fn-1", "AWS::Lambda::Function") == SubscriptionStatus.ACTIVE
        release.set()
        starter.join(2)

        assert result["status"] == SubscriptionStatus.STOPPED
        assert _wait_for(lambda: [e.message for e in storage.load_logs("fn-1")] == ["hello"])
        polled = len(fetches)
        assert _wait_for(lambda: len(fetches) > polled)
        assert service.is_active("fn-1")
        assert storage.get_logging_state("fn-1").is_active is True

        service.stop_subscription("fn-1")
        assert storage.get_logging_state("fn-1").is_active is False


class TestLogSettingsAndEndpoint:
    """Test log settings and endpoint discovery."""

    def test_log_settings(self, service, storage, events):
        settings = service.save_log_settings(10)

        assert settings["maxLogSizeMB"] == 10
        assert storage.max_log_size_mb == 10
        assert service.get_log_settings() == settings
        assert (EventTypes.LOG_SETTINGS, settings) in events

    def test_log_settings_rejects_non_positive(self, service):
        with pytest.raises(ValueError):
            service.save_log_settings(0)

    def test_endpoint_falls_back_to_localhost(self, service):
        with patch.object(service, "get_local_ip_address", return_value=None):
            assert service.get_endpoint() == "ws://localhost:3334"

    def test_endpoint_uses_local_address(self, service):
        with patch.object(service, "get_local_ip_address", return_value="192.168.1.20"):
            assert service.get_endpoint() == "ws://192.168.1.20:3334"

    def test_local_ip_loopback_rejected(self, service):
        with patch("sandbox_devtools.services.log_streaming_service.socket.socket") as mock_socket:
            mock_socket.return_value.__enter__.return_value.getsockname.return_value = ("127.0.0.1", 0)
            assert service.get_local_ip_address() is None
