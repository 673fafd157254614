from __future__ import annotations

from typing import Any, Mapping, Protocol

from .cancellation import CancellationToken
from .types import ExecutionRequest, ExecutionResult


class ExecutionEngine(Protocol):
    """One interchangeable execution backend.

    Engines never raise for expected failures; they return a failed
    `ExecutionResult` carrying a `FailureKind`.
    """

    name: str

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute one request and return a normalized result.

        Example:
            ```python
            result = engine.execute(ExecutionRequest(script="Get-Date", parameters={}, scope=CancelScope(30)))
            ```
        """
        ...

    def close(self) -> None:
        """Release every process or slot owned by the engine.

        Example:
            ```python
            engine.close()
            ```
        """
        ...


class ScriptRunner(Protocol):
    """Anything that runs a script with a timeout, such as the gateway."""

    def execute(
        self,
        script: str,
        parameters: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run `script` and return its result.

        Example:
            ```python
            result = runner.execute("Get-ExecutionPolicy", timeout_seconds=30)
            ```
        """
        ...
