from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from typing import Any, Mapping, Protocol

from .cancellation import CancelScope
from .processes import child_environment, kill_process_tree, remove_quietly, resolve_interpreter, spawn_options
from .script import render_script
from .types import ExecutionRequest, ExecutionResult, FailureKind, Stopwatch, failure_for

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1

class ScriptLauncher(Protocol):
    """How a rendered script file is turned into a child process command."""

    suffix: str

    def render(self, script: str, parameters: Mapping[str, Any]) -> str:
        """Return the full file content for one request.

        Example:
            ```python
            text = launcher.render("Get-Date", {})
            ```
        """
        ...

    def command(self, script_path: str) -> list[str]:
        """Return the argv that runs `script_path`.

        Example:
            ```python
            argv = launcher.command("/tmp/pcr-1.ps1")
            ```
        """
        ...


class PowerShellLauncher:
    """Launch PowerShell non-interactively with the policy bypassed.

    Example:
        ```python
        launcher = PowerShellLauncher(executable="/usr/bin/pwsh")
        ```
    """

    suffix = ".ps1"

    def __init__(self, executable: str | None = None) -> None:
        """Remember the configured executable; resolution happens per call.

        Example:
            ```python
            launcher = PowerShellLauncher()
            ```
        """
        self._executable = executable

    def render(self, script: str, parameters: Mapping[str, Any]) -> str:
        """Render the strict preamble, assignments and script body.

        Example:
            ```python
            text = launcher.render("Get-VM -Name $Name", {"Name": "web01"})
            ```
        """
        return render_script(script, parameters)

    def command(self, script_path: str) -> list[str]:
        """Build the interpreter argv, raising when no interpreter exists.

        Example:
            ```python
            argv = launcher.command("/tmp/pcr-1.ps1")
            ```
        """
        exe = resolve_interpreter(self._executable)
        if exe is None:
            wanted = self._executable or "pwsh or powershell"
            raise FileNotFoundError(f"PowerShell executable not found: {wanted}")
        return [
            exe,
            "-NoLogo",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-File",
            script_path,
        ]


class ProcessEngine:
    """Execute each request in a fresh interpreter process.

    Example:
        ```python
        engine = ProcessEngine(launcher=PowerShellLauncher())
        ```
    """

    name = "external"

    def __init__(
        self,
        *,
        launcher: ScriptLauncher | None = None,
        inherit_environment: bool = True,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        """Initialize the engine; it holds no shared mutable state.

        Example:
            ```python
            engine = ProcessEngine(inherit_environment=False, kill_grace_seconds=2)
            ```
        """
        if kill_grace_seconds <= 0:
            raise ValueError("kill_grace_seconds must be positive")
        self._launcher = launcher or PowerShellLauncher()
        self._inherit_environment = inherit_environment
        self._kill_grace = float(kill_grace_seconds)

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one request in a child process and wait under its scope.

        Example:
            ```python
            result = engine.execute(ExecutionRequest(script="Get-Date", parameters={}, scope=CancelScope(30)))
            ```
        """
        watch = Stopwatch()
        reason = request.scope.reason()
        if reason is not None:
            return ExecutionResult.failed(
                failure_for(reason),
                request.scope.describe(),
                elapsed_seconds=watch.elapsed(),
                backend=self.name,
            )

        script_path: str | None = None
        try:
            fd, script_path = tempfile.mkstemp(prefix="pcr-", suffix=self._launcher.suffix)
            with os.fdopen(fd, "w", encoding="utf-8-sig", newline="\n") as handle:
                handle.write(self._launcher.render(request.script, request.parameters))
            cmd = self._launcher.command(script_path)
            logger.debug("Launching %s", cmd[0])
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=child_environment(self._inherit_environment),
                **spawn_options(),
            )
        except (OSError, ValueError) as exc:
            remove_quietly(script_path)
            logger.warning("External execution could not start: %s", exc)
            return ExecutionResult.failed(
                FailureKind.MECHANISM,
                f"Failed to start PowerShell process: {exc}",
                elapsed_seconds=watch.elapsed(),
                backend=self.name,
            )

        try:
            return self._wait(proc, request.scope, watch)
        finally:
            remove_quietly(script_path)

    def _wait(self, proc: subprocess.Popen[str], scope: CancelScope, watch: Stopwatch) -> ExecutionResult:
        """Collect output until exit, killing the tree once the scope fires.

        Example:
            ```python
            result = engine._wait(proc, scope, Stopwatch())
            ```
        """
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                reason = scope.reason()
                if reason is None:
                    continue
                logger.warning("Killing PowerShell process %s: %s", proc.pid, scope.describe())
                kill_process_tree(proc.pid, grace_seconds=self._kill_grace)
                partial = ""
                try:
                    partial, _ = proc.communicate(timeout=self._kill_grace)
                except subprocess.TimeoutExpired:
                    logger.warning("Process %s did not exit within %ss of kill", proc.pid, self._kill_grace)
                return ExecutionResult.failed(
                    failure_for(reason),
                    scope.describe(),
                    elapsed_seconds=watch.elapsed(),
                    backend=self.name,
                    output=partial or "",
                    exit_code=proc.returncode,
                )

        error_text = (stderr or "").strip()
        if proc.returncode == 0 and not error_text:
            return ExecutionResult(
                success=True,
                output=stdout or "",
                elapsed_seconds=watch.elapsed(),
                backend=self.name,
                exit_code=0,
            )
        if not error_text:
            error_text = f"PowerShell exited with code {proc.returncode}"
        logger.debug("External script failed with exit code %s", proc.returncode)
        return ExecutionResult.failed(
            FailureKind.SCRIPT,
            error_text,
            elapsed_seconds=watch.elapsed(),
            backend=self.name,
            output=stdout or "",
            exit_code=proc.returncode,
        )

    def close(self) -> None:
        """Nothing to release; every call owns its own process.

        Example:
            ```python
            engine.close()
            ```
        """
        return None
