from .diagnostics import DiagnosticIssue, DiagnosticReport, DiagnosticsEngine, Severity
from .execution.cancellation import CancellationToken
from .execution.types import ExecutionResult, FailureKind
from .gateway import ScriptGateway
from .modules import ModuleResolver
from .sessions import Session, SessionConnectError, SessionManager
from .settings import ExecutionMode, RunnerSettings

__all__ = [
    "CancellationToken",
    "DiagnosticIssue",
    "DiagnosticReport",
    "DiagnosticsEngine",
    "ExecutionMode",
    "ExecutionResult",
    "FailureKind",
    "ModuleResolver",
    "RunnerSettings",
    "ScriptGateway",
    "Session",
    "SessionConnectError",
    "SessionManager",
    "Severity",
]
