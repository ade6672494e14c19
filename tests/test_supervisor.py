"""
Tests for the proxy worker supervisor.

The worker is a real Python subprocess launched through a fake locator, so
output capture, exit watching and termination run for real.
"""

import sys
import threading
import time
from unittest.mock import Mock

import psutil
import pytest

from proxy_tray.state import ServiceStatus
from proxy_tray.supervisor import (
    MAX_LOG_LINES,
    TOKEN_FLAG,
    LogBuffer,
    ProcessSupervisor,
    SignalTerminator,
    TreeTerminator,
    WorkerCommand,
    WorkerLocator,
    WorkerNotFoundError,
    describe_exit,
)


class ScriptLocator:
    """Runs *script* with the current interpreter; worker args land in sys.argv."""

    def __init__(self, script):
        self.script = script

    def resolve(self):
        return WorkerCommand(argv=(sys.executable, "-c", self.script))


class MissingLocator:
    def resolve(self):
        raise WorkerNotFoundError("no worker here")


PRINT_ARGS = "import sys; print(' '.join(sys.argv[1:]), flush=True)"
SLEEP = "import time; print('ready', flush=True); time.sleep(30)"
FAIL = "import sys; print('boom', file=sys.stderr, flush=True); sys.exit(1)"


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def credentials():
    creds = Mock()
    creds.read_with_migration.return_value = ""
    return creds


def make_supervisor(credentials, script, **kwargs):
    return ProcessSupervisor(
        credentials,
        locator=ScriptLocator(script),
        terminator=SignalTerminator(),
        **kwargs,
    )


class TestLogBuffer:
    def test_capacity_evicts_oldest(self):
        logs = LogBuffer(capacity=3)
        for i in range(5):
            logs.append(f"line {i}")
        assert logs.snapshot() == ["line 2", "line 3", "line 4"]
        assert len(logs) == 3

    def test_default_capacity_keeps_last_500(self):
        logs = LogBuffer()
        for i in range(501):
            logs.append(f"line {i}")
        lines = logs.snapshot()
        assert len(lines) == MAX_LOG_LINES == 500
        assert lines[0] == "line 1"
        assert lines[-1] == "line 500"

    def test_append_chunk_splits_lines(self):
        logs = LogBuffer()
        logs.append_chunk("one\r\ntwo\n\nthree\n")
        assert logs.snapshot() == ["one", "two", "three"]

    def test_snapshot_is_a_copy(self):
        logs = LogBuffer()
        logs.append("a")
        snap = logs.snapshot()
        snap.append("b")
        assert logs.snapshot() == ["a"]


class TestWorkerLocator:
    def test_bundled_binary_wins(self, tmp_path):
        name = "copilot-proxy-server.exe" if sys.platform == "win32" else "copilot-proxy-server"
        (tmp_path / name).write_text("")
        command = WorkerLocator(resources_dir=tmp_path, frozen=True).resolve()
        assert command.argv == (str(tmp_path / name),)

    def test_frozen_without_bundle_fails(self, tmp_path):
        with pytest.raises(WorkerNotFoundError):
            WorkerLocator(resources_dir=tmp_path, frozen=True).resolve()

    def test_missing_source_fails(self, tmp_path):
        with pytest.raises(WorkerNotFoundError):
            WorkerLocator(resources_dir=tmp_path, source_dir=tmp_path, frozen=False).resolve()


class TestStart:
    def test_output_is_captured(self, credentials):
        sup = make_supervisor(credentials, PRINT_ARGS)
        result = sup.start(["start", "--port", "5000"])

        assert result.already_running is False
        assert result.pid > 0
        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert "start --port 5000" in sup.get_logs()

    def test_token_is_injected(self, credentials):
        credentials.read_with_migration.return_value = "gho_secret"
        sup = make_supervisor(credentials, PRINT_ARGS)
        sup.start(["start"])

        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert f"start {TOKEN_FLAG} gho_secret" in sup.get_logs()

    def test_token_flag_is_not_duplicated(self, credentials):
        credentials.read_with_migration.return_value = "gho_stored"
        sup = make_supervisor(credentials, PRINT_ARGS)
        sup.start(["start", TOKEN_FLAG, "gho_given"])

        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert f"start {TOKEN_FLAG} gho_given" in sup.get_logs()
        assert not any("gho_stored" in line for line in sup.get_logs())

    def test_second_start_reports_already_running(self, credentials):
        sup = make_supervisor(credentials, SLEEP)
        try:
            first = sup.start(None)
            assert wait_for(lambda: "ready" in sup.get_logs())

            second = sup.start(None)

            assert second.already_running is True
            assert second.pid == first.pid
            assert "ready" in sup.get_logs()
        finally:
            sup.stop()

    def test_running_state_reported(self, credentials):
        on_state = Mock()
        sup = make_supervisor(credentials, SLEEP, on_state_change=on_state)
        try:
            result = sup.start(None, model_name="gpt-4o")
            on_state.assert_called_with(
                ServiceStatus.RUNNING, pid=result.pid, model_name="gpt-4o"
            )
            assert sup.is_running
            assert sup.pid == result.pid
        finally:
            sup.stop()

    def test_missing_worker_reports_error(self, credentials):
        on_state = Mock()
        sup = ProcessSupervisor(
            credentials, locator=MissingLocator(), on_state_change=on_state
        )
        with pytest.raises(WorkerNotFoundError):
            sup.start(None)
        on_state.assert_called_once_with(
            ServiceStatus.ERROR, error="no worker here", model_name=""
        )
        assert not sup.is_running


class TestExit:
    def test_unexpected_exit_is_reported(self, credentials):
        on_state = Mock()
        exited = threading.Event()
        codes = []

        def on_exit(code):
            codes.append(code)
            exited.set()

        sup = make_supervisor(
            credentials, FAIL, on_state_change=on_state, on_unexpected_exit=on_exit
        )
        sup.start(None)

        assert exited.wait(10)
        assert codes == [1]
        assert not sup.is_running
        logs = sup.get_logs()
        assert "boom" in logs
        assert logs[-1] == "[process exited with code 1]"
        assert on_state.call_args_list[-1].args == (ServiceStatus.IDLE,)

    def test_stop_is_not_unexpected(self, credentials):
        on_exit = Mock()
        sup = make_supervisor(credentials, SLEEP, on_unexpected_exit=on_exit)
        sup.start(None)
        assert wait_for(lambda: "ready" in sup.get_logs())

        result = sup.stop()

        assert result.ok is True
        assert result.message == "service stopped"
        assert not sup.is_running
        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        time.sleep(0.1)
        on_exit.assert_not_called()

    def test_stop_when_idle_is_a_no_op(self, credentials):
        on_state = Mock()
        sup = make_supervisor(credentials, SLEEP, on_state_change=on_state)
        result = sup.stop()
        assert result.ok is True
        assert result.message == "service was not running"
        on_state.assert_not_called()

    def test_restart_gets_fresh_logs(self, credentials):
        sup = make_supervisor(credentials, PRINT_ARGS)
        sup.start(["first"])
        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert wait_for(lambda: not sup.is_running)

        sup.start(["second"])
        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        logs = sup.get_logs()
        assert "second" in logs
        assert "first" not in logs

    def test_tree_terminator_kills_worker(self, credentials):
        sup = ProcessSupervisor(
            credentials, locator=ScriptLocator(SLEEP), terminator=TreeTerminator(wait_seconds=5)
        )
        pid = sup.start(None).pid
        assert wait_for(lambda: "ready" in sup.get_logs())

        sup.stop()

        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert not psutil.pid_exists(pid)

    def test_terminator_failure_still_stops(self, credentials):
        terminator = Mock()
        terminator.terminate.side_effect = OSError("denied")
        sup = ProcessSupervisor(
            credentials, locator=ScriptLocator(SLEEP), terminator=terminator
        )
        process_pid = sup.start(None).pid
        try:
            result = sup.stop()
            assert result.ok is True
            assert not sup.is_running
        finally:
            try:
                psutil.Process(process_pid).kill()
            except psutil.NoSuchProcess:
                pass


class TestStopDuringStart:
    def test_stop_waits_for_running_report(self, credentials):
        statuses = []
        stopper = []
        blocked = []

        def on_state(status, **details):
            statuses.append(status)
            if status is ServiceStatus.RUNNING and not stopper:
                thread = threading.Thread(target=sup.stop, daemon=True)
                stopper.append(thread)
                thread.start()
                thread.join(0.3)
                blocked.append(thread.is_alive())

        sup = make_supervisor(credentials, SLEEP, on_state_change=on_state)
        sup.start(None)
        stopper[0].join(10)

        assert blocked == [True]
        assert statuses == [ServiceStatus.RUNNING, ServiceStatus.IDLE]
        assert not sup.is_running


class TestExitDescription:
    def test_plain_code(self):
        assert describe_exit(0) == "code 0"
        assert describe_exit(3) == "code 3"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_signal_name(self):
        assert describe_exit(-15) == "signal SIGTERM"
        assert describe_exit(-9) == "signal SIGKILL"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_terminated_worker_logs_signal(self, credentials):
        sup = make_supervisor(credentials, SLEEP)
        sup.start(None)
        assert wait_for(lambda: "ready" in sup.get_logs())

        sup.stop()

        assert wait_for(lambda: any("exited" in line for line in sup.get_logs()))
        assert sup.get_logs()[-1] == "[process exited with signal SIGTERM]"
