import json
import threading
import time
from typing import Any, Mapping

import pytest

from powercli_runner import RunnerSettings, SessionConnectError, SessionManager
from powercli_runner.execution import CancelScope, FailureKind, HostError, HostReply
from powercli_runner.execution.host import HostCancelled
from powercli_runner.sessions import ConnectionFailureKind, SessionState, classify_error
from powercli_runner.sessions.manager import CONNECT_SCRIPT, LOGOUT_SCRIPT


class _SessionHost:
    def __init__(self, connect_reply: dict[str, Any], logout_error: Exception | None = None) -> None:
        self.connect_reply = connect_reply
        self.logout_error = logout_error
        self.alive = True
        self.killed = False
        self.closed = False
        self.calls: list[tuple[str, Mapping[str, Any]]] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def invoke(self, script: str, parameters: Mapping[str, Any], scope: CancelScope) -> HostReply:
        self.calls.append((script, dict(parameters)))
        if script == CONNECT_SCRIPT:
            return HostReply(request_id=1, output=[json.dumps(self.connect_reply)])
        if script == LOGOUT_SCRIPT:
            if self.logout_error is not None:
                raise self.logout_error
            return HostReply(request_id=1)
        if script == "hang":
            while scope.sleep(0.01) is None:
                pass
            self.kill()
            raise HostCancelled(scope.reason(), scope.describe())
        if script == "slow":
            with self._lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(0.1)
            with self._lock:
                self.active -= 1
        return HostReply(request_id=1, output=[f"ran {script}"])

    def kill(self) -> None:
        self.killed = True
        self.alive = False

    def close(self, grace_seconds: float | None = None) -> None:
        self.closed = True
        self.alive = False


_CONNECTED = {"Success": True, "Version": "8.0.2", "Build": "22385739", "ApiVersion": "8.0.2.0", "ErrorMessage": None}


class _Interpreters:
    def __init__(self, connect_reply: dict[str, Any] | None = None, **host_options: Any) -> None:
        self.connect_reply = connect_reply or _CONNECTED
        self.host_options = host_options
        self.hosts: list[_SessionHost] = []
        self.error: Exception | None = None

    def open_interpreter(self) -> _SessionHost:
        if self.error is not None:
            raise self.error
        host = _SessionHost(self.connect_reply, **self.host_options)
        self.hosts.append(host)
        return host


def _manager(interpreters: _Interpreters, **settings: Any) -> SessionManager:
    return SessionManager(interpreters, RunnerSettings(**settings))


def test_connect_registers_session_with_server_details() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)

    session = manager.connect("vc01.lab", "admin", "s3cret")

    assert session.connected
    assert session.state is SessionState.CONNECTED
    assert session.server_version == "8.0.2"
    assert session.api_version == "8.0.2.0"
    assert manager.active_sessions == [session]
    assert session.session_id in manager.registry
    script, params = interpreters.hosts[0].calls[0]
    assert script == CONNECT_SCRIPT
    assert params["ServerUrl"] == "vc01.lab"
    assert params["IgnoreInvalidCertificates"] is True


def test_connect_failure_is_classified_and_cleaned_up() -> None:
    interpreters = _Interpreters({"Success": False, "ErrorMessage": "Cannot complete login due to an incorrect user name or password."})
    manager = _manager(interpreters)

    with pytest.raises(SessionConnectError) as caught:
        manager.connect("vc01.lab", "admin", "wrong")

    assert caught.value.kind is ConnectionFailureKind.AUTHENTICATION
    assert "incorrect user name or password" in str(caught.value)
    assert caught.value.remediation
    assert len(manager.registry) == 0
    assert interpreters.hosts[0].closed


def test_connect_without_interpreter_raises_connect_error() -> None:
    interpreters = _Interpreters()
    interpreters.error = HostError("Embedded PowerShell initialization failed")
    manager = _manager(interpreters)

    with pytest.raises(SessionConnectError, match="Failed to start PowerShell"):
        manager.connect("vc01.lab", "admin", "pw")
    assert len(manager.registry) == 0


def test_connect_rejects_empty_server() -> None:
    with pytest.raises(ValueError):
        _manager(_Interpreters()).connect("  ", "admin", "pw")


def test_execute_runs_on_session_host() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)
    session = manager.connect("vc01.lab", "admin", "pw")

    result = manager.execute(session, "Get-VM -Name $Name", {"Name": "web01"}, timeout_seconds=5)

    assert result.success
    assert result.output == "ran Get-VM -Name $Name"
    assert interpreters.hosts[0].calls[-1][1] == {"Name": "web01"}


def test_commands_on_one_session_are_serialized() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)
    session = manager.connect("vc01.lab", "admin", "pw")

    threads = [threading.Thread(target=manager.execute, args=(session, "slow"), kwargs={"timeout_seconds": 5}) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert interpreters.hosts[0].peak == 1


def test_timeout_tears_down_session() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)
    session = manager.connect("vc01.lab", "admin", "pw")

    result = manager.execute(session, "hang", timeout_seconds=0.2)

    assert result.failure is FailureKind.TIMEOUT
    assert not session.connected
    assert len(manager.registry) == 0
    after = manager.execute(session, "Get-VM", timeout_seconds=5)
    assert after.failure is FailureKind.MECHANISM
    assert "is not connected" in after.error


def test_disconnect_survives_failing_logout() -> None:
    interpreters = _Interpreters(logout_error=RuntimeError("server went away"))
    manager = _manager(interpreters)
    session = manager.connect("vc01.lab", "admin", "pw")

    manager.disconnect(session)

    assert session.state is SessionState.DISCONNECTED
    assert len(manager.registry) == 0
    assert interpreters.hosts[0].closed


def test_test_connection_reports_and_disconnects() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)

    outcome = manager.test_connection("https://vc01.lab", "admin", "pw")

    assert outcome.success
    assert outcome.secure
    assert outcome.server_version == "8.0.2"
    assert outcome.response_seconds > 0
    assert len(manager.registry) == 0
    assert interpreters.hosts[0].calls[-1][0] == LOGOUT_SCRIPT


def test_test_connection_failure_does_not_raise() -> None:
    manager = _manager(_Interpreters({"Success": False, "ErrorMessage": "The remote name could not be resolved"}))

    outcome = manager.test_connection("vc01.lab", "admin", "pw")

    assert not outcome.success
    assert outcome.error_kind is ConnectionFailureKind.NETWORK
    assert not outcome.secure


def test_shutdown_disconnects_every_session() -> None:
    interpreters = _Interpreters()
    manager = _manager(interpreters)
    sessions = [manager.connect(f"vc0{index}.lab", "admin", "pw") for index in range(3)]

    manager.shutdown(grace_seconds=5)

    assert len(manager.registry) == 0
    assert all(session.state is SessionState.DISCONNECTED for session in sessions)
    assert all(host.closed for host in interpreters.hosts)


def test_classify_error_keywords() -> None:
    assert classify_error("The SSL connection could not be established") is ConnectionFailureKind.CERTIFICATE
    assert classify_error("The operation has timed out") is ConnectionFailureKind.TIMEOUT
    assert classify_error("No connection could be made because the target machine actively refused it") is ConnectionFailureKind.NETWORK
    assert classify_error("something odd") is ConnectionFailureKind.UNKNOWN
