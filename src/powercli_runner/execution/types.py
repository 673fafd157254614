from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .cancellation import CancelReason, CancelScope
from .records import Record

_MIN_ELAPSED_SECONDS = 1e-6


class FailureKind(str, Enum):
    """Classification of a failed execution.

    Example:
        ```python
        kind = FailureKind.MECHANISM
        ```
    """

    MECHANISM = "mechanism"
    SCRIPT = "script"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def failure_for(reason: CancelReason) -> FailureKind:
    """Map a fired cancel reason to its failure kind.

    Example:
        ```python
        kind = failure_for(CancelReason.TIMEOUT)
        ```
    """
    if reason is CancelReason.CALLER:
        return FailureKind.CANCELLED
    return FailureKind.TIMEOUT


@dataclass(slots=True)
class ExecutionRequest:
    """One script invocation sent to an execution backend.

    Example:
        ```python
        req = ExecutionRequest(script="Get-Date", parameters={}, scope=CancelScope(30))
        ```
    """

    script: str
    parameters: Mapping[str, Any]
    scope: CancelScope

    @property
    def timeout_seconds(self) -> float:
        """Return the timeout the scope was created with.

        Example:
            ```python
            seconds = req.timeout_seconds
            ```
        """
        return self.scope.timeout_seconds


@dataclass(slots=True)
class ExecutionResult:
    """Normalized outcome returned by every backend and by the gateway.

    Example:
        ```python
        result = ExecutionResult(success=True, output="ok", elapsed_seconds=0.2)
        ```
    """

    success: bool
    output: str = ""
    error: str = ""
    warnings: list[str] = field(default_factory=list)
    verbose: list[str] = field(default_factory=list)
    elapsed_seconds: float = _MIN_ELAPSED_SECONDS
    objects: list[Any] = field(default_factory=list)
    failure: FailureKind | None = None
    backend: str = ""
    exit_code: int | None = None
    fell_back: bool = False

    def __post_init__(self) -> None:
        """Enforce the success/error invariant and a positive elapsed time.

        Example:
            ```python
            ExecutionResult(success=False, error="boom", failure=FailureKind.SCRIPT)
            ```
        """
        if self.success and (self.error.strip() or self.failure is not None):
            raise ValueError("A successful result cannot carry error text or a failure kind")
        if not self.success and self.failure is None:
            self.failure = FailureKind.SCRIPT
        self.elapsed_seconds = max(float(self.elapsed_seconds), _MIN_ELAPSED_SECONDS)

    @classmethod
    def failed(
        cls,
        kind: FailureKind,
        message: str,
        *,
        elapsed_seconds: float,
        backend: str = "",
        output: str = "",
        exit_code: int | None = None,
    ) -> "ExecutionResult":
        """Build a failed result of the given kind.

        Example:
            ```python
            result = ExecutionResult.failed(FailureKind.MECHANISM, "pwsh not found", elapsed_seconds=0.01)
            ```
        """
        return cls(
            success=False,
            output=output,
            error=message,
            elapsed_seconds=elapsed_seconds,
            failure=kind,
            backend=backend,
            exit_code=exit_code,
        )

    @property
    def timed_out(self) -> bool:
        """Return True for a timeout failure.

        Example:
            ```python
            if result.timed_out:
                ...
            ```
        """
        return self.failure is FailureKind.TIMEOUT

    def first_record(self) -> Record | None:
        """Return the first returned object as a typed `Record`.

        Falls back to decoding the last JSON object line of stdout, which is
        how the process backend returns structured data.

        Example:
            ```python
            record = result.first_record()
            ```
        """
        for item in self.objects:
            if isinstance(item, dict):
                return Record(item)
        for line in reversed(self.output.splitlines()):
            stripped = line.strip()
            if stripped.startswith("{"):
                record = Record.from_json(stripped)
                if record is not None:
                    return record
        return None

    def json_values(self) -> list[Any]:
        """Return decoded objects, or the decoded stdout when there are none.

        Example:
            ```python
            values = result.json_values()
            ```
        """
        if self.objects:
            return list(self.objects)
        text = self.output.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except ValueError:
            return []
        return decoded if isinstance(decoded, list) else [decoded]


class Stopwatch:
    """Monotonic timer used to fill `elapsed_seconds`.

    Example:
        ```python
        watch = Stopwatch()
        elapsed = watch.elapsed()
        ```
    """

    def __init__(self) -> None:
        """Start timing now.

        Example:
            ```python
            watch = Stopwatch()
            ```
        """
        self._started = time.perf_counter()

    def elapsed(self) -> float:
        """Return seconds since start, always positive.

        Example:
            ```python
            seconds = watch.elapsed()
            ```
        """
        return max(time.perf_counter() - self._started, _MIN_ELAPSED_SECONDS)
