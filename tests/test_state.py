"""
Tests for the state broadcaster that keeps the tray and window in step.
"""

from unittest.mock import Mock

import pytest

from proxy_tray.state import (
    EVENT_CLOSE_REQUESTED,
    EVENT_STARTED,
    EVENT_STOPPED,
    EVENT_TRIGGER_START,
    ServiceState,
    ServiceStatus,
    StateBroadcaster,
)
from proxy_tray.supervisor import StartResult, StopResult, WorkerNotFoundError


class RecordingObserver:
    def __init__(self):
        self.states = []
        self.events = []

    def on_service_state(self, state):
        self.states.append(state)

    def on_service_event(self, event, payload):
        self.events.append((event, payload))


@pytest.fixture
def supervisor():
    sup = Mock()
    sup.start.return_value = StartResult(pid=42, already_running=False)
    sup.stop.return_value = StopResult(ok=True, message="service stopped")
    return sup


@pytest.fixture
def broadcaster(supervisor):
    b = StateBroadcaster()
    b.bind_supervisor(supervisor)
    return b


class TestObservers:
    def test_new_observer_sees_current_state(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        assert observer.states == [ServiceState()]

    def test_state_changes_reach_every_observer(self, broadcaster):
        a, b = RecordingObserver(), RecordingObserver()
        broadcaster.add_observer(a)
        broadcaster.add_observer(b)

        broadcaster.on_state_change(ServiceStatus.RUNNING, pid=7, model_name="gpt-4o")

        expected = ServiceState(ServiceStatus.RUNNING, pid=7, last_model_name="gpt-4o")
        assert a.states[-1] == expected
        assert b.states[-1] == expected
        assert broadcaster.state.running

    def test_failing_observer_does_not_block_others(self, broadcaster):
        bad = Mock()
        bad.on_service_state.side_effect = RuntimeError("boom")
        good = RecordingObserver()
        broadcaster.add_observer(bad)
        broadcaster.add_observer(good)

        broadcaster.on_state_change(ServiceStatus.IDLE)
        assert len(good.states) == 2

    def test_removed_observer_is_silent(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        broadcaster.remove_observer(observer)
        broadcaster.on_state_change(ServiceStatus.RUNNING, pid=1)
        assert len(observer.states) == 1


class TestStateRules:
    def test_pid_only_while_running(self, broadcaster):
        broadcaster.on_state_change(ServiceStatus.IDLE, pid=5)
        assert broadcaster.state.pid is None

    def test_error_only_in_error_state(self, broadcaster):
        broadcaster.on_state_change(ServiceStatus.ERROR, error="missing worker")
        assert broadcaster.state.last_error == "missing worker"
        broadcaster.on_state_change(ServiceStatus.IDLE, error="ignored")
        assert broadcaster.state.last_error is None

    def test_model_name_is_remembered(self, broadcaster):
        broadcaster.on_state_change(ServiceStatus.RUNNING, pid=1, model_name="claude")
        broadcaster.on_state_change(ServiceStatus.IDLE)
        assert broadcaster.state.last_model_name == "claude"


class TestCommands:
    def test_start_remembers_payload(self, broadcaster, supervisor):
        result = broadcaster.start_service(["start", "--port", "1"], "gpt-4o")
        assert result.pid == 42
        supervisor.start.assert_called_once_with(["start", "--port", "1"], "gpt-4o")
        assert broadcaster.last_payload.args == ("start", "--port", "1")

    def test_failed_start_keeps_previous_payload(self, broadcaster, supervisor):
        broadcaster.start_service(["start", "--port", "1111"], "m")
        supervisor.start.side_effect = WorkerNotFoundError("gone")

        with pytest.raises(WorkerNotFoundError):
            broadcaster.start_service(["start", "--port", "2222"], "other")

        assert broadcaster.last_payload.args == ("start", "--port", "1111")
        assert broadcaster.last_payload.model_name == "m"

    def test_already_running_start_keeps_previous_payload(self, broadcaster, supervisor):
        broadcaster.start_service(["start", "--port", "1111"], "m")
        supervisor.start.return_value = StartResult(pid=42, already_running=True)

        result = broadcaster.start_service(["start", "--port", "9999"], "m")

        assert result.already_running is True
        assert broadcaster.last_payload.args == ("start", "--port", "1111")

    def test_replay_without_payload_asks_window(self, broadcaster, supervisor):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)

        assert broadcaster.replay_last_start() is False
        assert observer.events == [(EVENT_TRIGGER_START, {})]
        supervisor.start.assert_not_called()

    def test_replay_reuses_last_payload(self, broadcaster, supervisor):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        broadcaster.start_service(["start"], "m")
        supervisor.start.reset_mock()

        assert broadcaster.replay_last_start() is True
        supervisor.start.assert_called_once_with(["start"], "m")
        assert observer.events[-1] == (EVENT_STARTED, {})

    def test_replay_failure_is_reported(self, broadcaster, supervisor):
        broadcaster.start_service(["start"], "m")
        supervisor.start.side_effect = WorkerNotFoundError("gone")
        assert broadcaster.replay_last_start() is False

    def test_tray_stop_is_echoed(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)

        broadcaster.stop_service(from_tray=True)
        assert observer.events == [(EVENT_STOPPED, {"unexpected": False})]

    def test_window_stop_is_not_echoed(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        result = broadcaster.stop_service()
        assert result.ok
        assert observer.events == []

    def test_unexpected_exit(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        broadcaster.on_unexpected_exit(3)
        assert observer.events == [(EVENT_STOPPED, {"unexpected": True, "code": 3})]

    def test_request_close(self, broadcaster):
        observer = RecordingObserver()
        broadcaster.add_observer(observer)
        broadcaster.request_close()
        assert observer.events == [(EVENT_CLOSE_REQUESTED, {})]

    def test_unbound_broadcaster(self):
        with pytest.raises(RuntimeError):
            StateBroadcaster().stop_service()
