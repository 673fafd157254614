from .cancellation import CancellationToken, CancelReason, CancelScope
from .engine import ExecutionEngine, ScriptRunner
from .host import HostError, HostReply, InterpreterHost
from .pool import InterpreterPool, PoolSettings
from .pooled_engine import InitState, PooledEngine
from .process_engine import ProcessEngine
from .records import Lookup, LookupStatus, Record
from .types import ExecutionRequest, ExecutionResult, FailureKind

__all__ = [
    "CancelReason",
    "CancelScope",
    "CancellationToken",
    "ExecutionEngine",
    "ExecutionRequest",
    "ExecutionResult",
    "FailureKind",
    "HostError",
    "HostReply",
    "InitState",
    "InterpreterHost",
    "InterpreterPool",
    "Lookup",
    "LookupStatus",
    "PoolSettings",
    "PooledEngine",
    "ProcessEngine",
    "Record",
    "ScriptRunner",
]
