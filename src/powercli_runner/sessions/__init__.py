from .errors import ConnectionFailureKind, SessionConnectError, classify_error
from .manager import ConnectionTestResult, SessionManager
from .registry import Session, SessionRegistry, SessionState

__all__ = [
    "ConnectionFailureKind",
    "ConnectionTestResult",
    "Session",
    "SessionConnectError",
    "SessionManager",
    "SessionRegistry",
    "SessionState",
    "classify_error",
]
