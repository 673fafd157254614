from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from ..execution.cancellation import CancellationToken, CancelScope
from ..execution.host import HostError
from ..execution.pooled_engine import ScriptHost, run_on_host
from ..execution.script import validate_parameters
from ..execution.types import ExecutionResult, FailureKind, Stopwatch, failure_for
from ..settings import RunnerSettings
from .errors import ConnectionFailureKind, SessionConnectError, classify_error
from .registry import Session, SessionRegistry, SessionState

logger = logging.getLogger(__name__)

_BACKEND = "session"
_LOCK_POLL_SECONDS = 0.05

CONNECT_SCRIPT = """\
try {
    if ($IgnoreInvalidCertificates) {
        Set-PowerCLIConfiguration -InvalidCertificateAction Ignore -DefaultVIServerMode Multiple -Scope Session -Confirm:$false -ErrorAction SilentlyContinue | Out-Null
    } else {
        Set-PowerCLIConfiguration -DefaultVIServerMode Multiple -Scope Session -Confirm:$false -ErrorAction SilentlyContinue | Out-Null
    }
    $connection = Connect-VIServer -Server $ServerUrl -User $Username -Password $Password -ErrorAction Stop
    if ($connection) {
        $about = (Get-View -Id ServiceInstance -Server $connection -ErrorAction Stop).Content.About
        [pscustomobject]@{
            Success = $true
            Version = $about.Version
            Build = $about.Build
            ApiVersion = $about.ApiVersion
            ErrorMessage = $null
        }
    } else {
        [pscustomobject]@{ Success = $false; ErrorMessage = 'Failed to establish connection' }
    }
} catch {
    [pscustomobject]@{ Success = $false; ErrorMessage = $_.Exception.Message }
}
"""

LOGOUT_SCRIPT = "Disconnect-VIServer -Server $ServerUrl -Confirm:$false -ErrorAction Stop"


class InterpreterSource(Protocol):
    """Anything that can hand out a dedicated prepared interpreter."""

    def open_interpreter(self) -> ScriptHost:
        """Start and return a prepared interpreter host.

        Example:
            ```python
            host = gateway.open_interpreter()
            ```
        """
        ...


@dataclass(frozen=True, slots=True)
class ConnectionTestResult:
    """Outcome of a connect-probe-disconnect round trip.

    Example:
        ```python
        result = ConnectionTestResult(success=True, response_seconds=1.2, server_version="8.0.2")
        ```
    """

    success: bool
    response_seconds: float
    error_message: str = ""
    error_kind: ConnectionFailureKind | None = None
    server_version: str = ""
    server_build: str = ""
    api_version: str = ""
    secure: bool = False


class SessionManager:
    """Open, use and close sessions against management servers.

    Each session owns one interpreter and one command slot; commands on the
    same session run one at a time, distinct sessions run in parallel.

    Example:
        ```python
        manager = SessionManager(gateway, settings)
        session = manager.connect("vc01.lab", "admin", password)
        result = manager.execute(session, "Get-Cluster | Select-Object -ExpandProperty Name")
        manager.disconnect(session)
        ```
    """

    def __init__(
        self,
        interpreters: InterpreterSource,
        settings: RunnerSettings | None = None,
        *,
        registry: SessionRegistry | None = None,
    ) -> None:
        """Bind the manager to an interpreter source and its own registry.

        Example:
            ```python
            manager = SessionManager(gateway, registry=SessionRegistry())
            ```
        """
        self._interpreters = interpreters
        self._settings = settings or RunnerSettings()
        self._registry = registry or SessionRegistry()

    @property
    def registry(self) -> SessionRegistry:
        """Return the registry of open sessions.

        Example:
            ```python
            count = len(manager.registry)
            ```
        """
        return self._registry

    @property
    def active_sessions(self) -> list[Session]:
        """Return the currently connected sessions.

        Example:
            ```python
            for session in manager.active_sessions:
                ...
            ```
        """
        return [session for session in self._registry.snapshot() if session.connected]

    def connect(
        self,
        server_url: str,
        username: str,
        password: str,
        timeout_seconds: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> Session:
        """Open a session; raise `SessionConnectError` on any failure.

        Example:
            ```python
            session = manager.connect("vc01.lab", "administrator@vsphere.local", password, timeout_seconds=60)
            ```
        """
        if not server_url.strip():
            raise ValueError("server_url must not be empty")
        timeout = self._settings.connect_timeout_seconds if timeout_seconds is None else timeout_seconds
        scope = CancelScope(timeout, cancel)
        session = Session(server_url=server_url, username=username)
        logger.info("Connecting session %s to %s as %s", session.session_id, server_url, username)

        try:
            session.host = self._interpreters.open_interpreter()
        except HostError as exc:
            self._dispose(session)
            raise SessionConnectError(
                f"Failed to start PowerShell for {server_url}: {exc}", server_url=server_url
            ) from exc

        session.state = SessionState.CONNECTING
        parameters = {
            "ServerUrl": server_url,
            "Username": username,
            "Password": password,
            "IgnoreInvalidCertificates": self._settings.ignore_invalid_certificates,
        }
        try:
            result, _ = run_on_host(session.host, CONNECT_SCRIPT, parameters, scope, backend=_BACKEND)
        except Exception:
            self._dispose(session)
            raise
        if not result.success:
            self._dispose(session)
            raise self._connect_error(server_url, result)

        record = result.first_record()
        if record is None:
            self._dispose(session)
            raise SessionConnectError(
                f"No valid response received from connection attempt to {server_url}", server_url=server_url
            )
        if record.get_bool("Success").value is not True:
            self._dispose(session)
            message = record.get_str("ErrorMessage").or_default("") or "Unknown connection error"
            raise SessionConnectError(
                f"Failed to connect to {server_url}: {message}", classify_error(message), server_url=server_url
            )

        session.server_version = record.get_str("Version").or_default("")
        session.server_build = record.get_str("Build").or_default("")
        session.api_version = record.get_str("ApiVersion").or_default("")
        session.state = SessionState.CONNECTED
        session.touch()
        self._registry.add(session)
        logger.info("Session %s connected to %s (version %s)", session.session_id, server_url, session.server_version)
        return session

    def _connect_error(self, server_url: str, result: ExecutionResult) -> SessionConnectError:
        """Build the connect error for a failed connect script run.

        Example:
            ```python
            error = manager._connect_error("vc01", result)
            ```
        """
        if result.failure is FailureKind.TIMEOUT:
            kind = ConnectionFailureKind.TIMEOUT
        elif result.failure is FailureKind.CANCELLED:
            kind = ConnectionFailureKind.UNKNOWN
        else:
            kind = classify_error(result.error)
        return SessionConnectError(f"Failed to connect to {server_url}: {result.error}", kind, server_url=server_url)

    def execute(
        self,
        session: Session,
        command: str,
        parameters: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run a command on the session's interpreter.

        A command that times out or is cancelled tears the session down.

        Example:
            ```python
            result = manager.execute(session, "Get-VM -Name $Name", {"Name": "web01"}, timeout_seconds=120)
            ```
        """
        watch = Stopwatch()
        timeout = self._settings.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        scope = CancelScope(timeout, cancel)
        params = validate_parameters(parameters)
        if not session.connected:
            return self._not_connected(session, watch)

        while not session.command_lock.acquire(timeout=_LOCK_POLL_SECONDS):
            reason = scope.reason()
            if reason is not None:
                return ExecutionResult.failed(
                    failure_for(reason),
                    scope.describe("Waiting for the session"),
                    elapsed_seconds=watch.elapsed(),
                    backend=_BACKEND,
                )
        try:
            host = session.host
            if not session.connected or host is None:
                return self._not_connected(session, watch)
            result, spent = run_on_host(host, command, params, scope, backend=_BACKEND)
            session.touch()
            if spent:
                logger.warning("Tearing down session %s: %s", session.session_id, result.error)
                self._dispose(session)
        finally:
            session.command_lock.release()
        result.elapsed_seconds = watch.elapsed()
        return result

    def _not_connected(self, session: Session, watch: Stopwatch) -> ExecutionResult:
        """Return the failure for a command on a closed session.

        Example:
            ```python
            result = manager._not_connected(session, Stopwatch())
            ```
        """
        return ExecutionResult.failed(
            FailureKind.MECHANISM,
            f"Session {session.session_id} is not connected",
            elapsed_seconds=watch.elapsed(),
            backend=_BACKEND,
        )

    def disconnect(self, session: Session) -> None:
        """Log out best-effort, then always release the session.

        Example:
            ```python
            manager.disconnect(session)
            ```
        """
        logger.info("Disconnecting session %s", session.session_id)
        acquired = session.command_lock.acquire(timeout=self._settings.logout_timeout_seconds)
        try:
            host = session.host
            if acquired and session.connected and host is not None:
                scope = CancelScope(self._settings.logout_timeout_seconds)
                result, _ = run_on_host(host, LOGOUT_SCRIPT, {"ServerUrl": session.server_url}, scope, backend=_BACKEND)
                if not result.success:
                    logger.warning("Logout from %s failed: %s", session.server_url, result.error)
            elif not acquired:
                logger.warning("Session %s is busy; skipping logout", session.session_id)
        except Exception as exc:
            logger.warning("Logout from %s failed: %s", session.server_url, exc)
        finally:
            self._dispose(session)
            if acquired:
                session.command_lock.release()
        logger.info("Session %s disconnected", session.session_id)

    def _dispose(self, session: Session) -> None:
        """Release the session's interpreter and unregister it.

        Example:
            ```python
            manager._dispose(session)
            ```
        """
        host, session.host = session.host, None
        session.state = SessionState.DISCONNECTED
        self._registry.remove(session.session_id)
        if host is None:
            return
        try:
            if host.alive:
                host.close(grace_seconds=self._settings.kill_grace_seconds)
        except Exception as exc:
            logger.warning("Failed to close interpreter for session %s: %s", session.session_id, exc)
            host.kill()

    def test_connection(
        self,
        server_url: str,
        username: str,
        password: str,
        timeout_seconds: float | None = None,
    ) -> ConnectionTestResult:
        """Connect, read server details and disconnect, without raising.

        Example:
            ```python
            outcome = manager.test_connection("https://vc01.lab", "admin", password)
            ```
        """
        watch = Stopwatch()
        secure = server_url.lower().startswith("https://")
        try:
            session = self.connect(server_url, username, password, timeout_seconds)
        except SessionConnectError as exc:
            logger.warning("Connection test to %s failed: %s", server_url, exc)
            return ConnectionTestResult(
                success=False,
                response_seconds=watch.elapsed(),
                error_message=str(exc),
                error_kind=exc.kind,
                secure=secure,
            )
        try:
            return ConnectionTestResult(
                success=True,
                response_seconds=watch.elapsed(),
                server_version=session.server_version,
                server_build=session.server_build,
                api_version=session.api_version,
                secure=secure,
            )
        finally:
            self.disconnect(session)

    def shutdown(self, grace_seconds: float | None = None) -> None:
        """Disconnect every open session, each bounded by a grace period.

        Example:
            ```python
            manager.shutdown(grace_seconds=5)
            ```
        """
        grace = self._settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        sessions = self._registry.snapshot()
        if not sessions:
            return
        logger.info("Shutting down %s session(s)", len(sessions))
        workers: list[tuple[Session, threading.Thread]] = []
        for session in sessions:
            worker = threading.Thread(
                target=self.disconnect, args=(session,), name=f"pcr-disconnect-{session.session_id[:8]}", daemon=True
            )
            worker.start()
            workers.append((session, worker))
        deadline = time.monotonic() + grace
        for session, worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                logger.warning("Session %s did not disconnect within %ss; killing it", session.session_id, grace)
                host, session.host = session.host, None
                session.state = SessionState.DISCONNECTED
                self._registry.remove(session.session_id)
                if host is not None:
                    host.kill()
