from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from .execution.cancellation import CancellationToken, CancelScope
from .execution.engine import ExecutionEngine
from .execution.pooled_engine import PooledEngine, ScriptHost
from .execution.process_engine import PowerShellLauncher, ProcessEngine
from .execution.script import validate_parameters, wrap_vendor_command
from .execution.types import ExecutionRequest, ExecutionResult, FailureKind, Stopwatch
from .modules.resolver import COMMON_MODULE, CORE_MODULE, INVENTORY_SCRIPT, ModuleResolver, VendorVersionInfo, parse_inventory
from .settings import ExecutionMode, RunnerSettings

logger = logging.getLogger(__name__)


class ScriptGateway:
    """Single entry point for running PowerShell scripts.

    Prefers the external process backend and falls back to the embedded
    pool when the external mechanism itself fails.

    Example:
        ```python
        gateway = ScriptGateway(RunnerSettings())
        result = gateway.execute("Get-VMHost | Select-Object Name", timeout_seconds=120)
        ```
    """

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        external: ExecutionEngine | None = None,
        embedded: PooledEngine | None = None,
        resolver: ModuleResolver | None = None,
    ) -> None:
        """Build both backends from settings unless they are supplied.

        Example:
            ```python
            gateway = ScriptGateway(settings, external=ProcessEngine())
            ```
        """
        self._settings = settings or RunnerSettings()
        self.resolver = resolver or ModuleResolver(pinned_version=self._settings.pinned_module_version)
        self._external = external or ProcessEngine(
            launcher=PowerShellLauncher(self._settings.executable),
            inherit_environment=self._settings.inherit_environment,
            kill_grace_seconds=self._settings.kill_grace_seconds,
        )
        self._embedded = embedded or PooledEngine(self._settings, resolver=self.resolver)
        self._forced_embedded = False
        self._mode_lock = threading.Lock()

    @property
    def settings(self) -> RunnerSettings:
        """Return the active settings.

        Example:
            ```python
            timeout = gateway.settings.default_timeout_seconds
            ```
        """
        return self._settings

    @property
    def mode(self) -> ExecutionMode:
        """Return the effective mode, honoring a sticky `force_embedded`.

        Example:
            ```python
            if gateway.mode is ExecutionMode.EMBEDDED:
                ...
            ```
        """
        with self._mode_lock:
            if self._forced_embedded:
                return ExecutionMode.EMBEDDED
        return self._settings.mode

    def force_embedded(self) -> None:
        """Route every later call to the embedded backend until reset.

        Example:
            ```python
            gateway.force_embedded()
            ```
        """
        with self._mode_lock:
            self._forced_embedded = True
        logger.info("Forcing embedded PowerShell execution")

    def reset_execution_mode(self) -> None:
        """Return to the configured mode.

        Example:
            ```python
            gateway.reset_execution_mode()
            ```
        """
        with self._mode_lock:
            self._forced_embedded = False
        logger.info("Execution mode reset to %s", self._settings.mode.value)

    def execute(
        self,
        script: str,
        parameters: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run `script` and return a normalized result; never raises for run failures.

        Invalid parameter names or a non-positive timeout raise `ValueError`.

        Example:
            ```python
            result = gateway.execute("Get-VM -Name $Name", {"Name": "web01"}, timeout_seconds=60)
            ```
        """
        timeout = self._settings.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        request = ExecutionRequest(
            script=script,
            parameters=validate_parameters(parameters),
            scope=CancelScope(timeout, cancel),
        )
        watch = Stopwatch()
        mode = self.mode
        if mode is ExecutionMode.EMBEDDED:
            return self._run(self._embedded, request)

        result = self._run(self._external, request)
        if mode is ExecutionMode.BOTH and result.failure is FailureKind.MECHANISM:
            logger.warning("External PowerShell failed (%s); falling back to embedded execution", result.error)
            result = self._run(self._embedded, request)
            result.fell_back = True
            result.elapsed_seconds = watch.elapsed()
        return result

    def _run(self, engine: ExecutionEngine, request: ExecutionRequest) -> ExecutionResult:
        """Call one backend, converting unexpected exceptions into failures.

        Example:
            ```python
            result = gateway._run(engine, request)
            ```
        """
        watch = Stopwatch()
        try:
            result = engine.execute(request)
        except Exception as exc:
            logger.exception("Backend %s raised during execution", engine.name)
            return ExecutionResult.failed(
                FailureKind.MECHANISM,
                f"{engine.name} backend error: {exc}",
                elapsed_seconds=watch.elapsed(),
                backend=engine.name,
            )
        if result.success:
            logger.debug("%s completed in %.3fs", engine.name, result.elapsed_seconds)
        else:
            logger.debug("%s failed (%s): %s", engine.name, result.failure.value if result.failure else "", result.error)
        return result

    def execute_vendor_command(
        self,
        command: str,
        parameters: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run a PowerCLI command with the module import preamble.

        Example:
            ```python
            result = gateway.execute_vendor_command("Get-Cluster | Select-Object -ExpandProperty Name")
            ```
        """
        return self.execute(wrap_vendor_command(command), parameters, timeout_seconds, cancel)

    def is_vendor_toolkit_available(self, timeout_seconds: float = 30.0) -> bool:
        """Return True when the core PowerCLI module is installed.

        Example:
            ```python
            if not gateway.is_vendor_toolkit_available():
                ...
            ```
        """
        result = self.execute(
            f"if (Get-Module -ListAvailable -Name '{CORE_MODULE}') {{ 'True' }} else {{ 'False' }}",
            timeout_seconds=timeout_seconds,
        )
        return result.success and result.output.strip().splitlines()[-1:] == ["True"]

    def module_versions(self, timeout_seconds: float = 60.0) -> VendorVersionInfo:
        """Report installed PowerCLI modules and whether they are compatible.

        Example:
            ```python
            info = gateway.module_versions()
            ```
        """
        result = self.execute(INVENTORY_SCRIPT, timeout_seconds=timeout_seconds)
        if not result.success:
            return VendorVersionInfo(message=f"Module inventory failed: {result.error}")
        try:
            installed = parse_inventory(result)
        except ValueError as exc:
            return VendorVersionInfo(message=str(exc))
        plan = self.resolver.resolve(installed)
        core_version = plan.version_of(CORE_MODULE)
        if core_version is None:
            return VendorVersionInfo(modules=installed, message="VMware PowerCLI is not installed")
        compatible = not plan.dropped and plan.version_of(COMMON_MODULE) is not None
        message = "; ".join(plan.notes) or "Modules are compatible"
        return VendorVersionInfo(version=core_version, modules=installed, compatible=compatible, message=message)

    def open_interpreter(self) -> ScriptHost:
        """Start a dedicated, prepared interpreter for a session.

        Example:
            ```python
            host = gateway.open_interpreter()
            ```
        """
        return self._embedded.spawn_host()

    def close(self) -> None:
        """Shut down both backends.

        Example:
            ```python
            gateway.close()
            ```
        """
        for engine in (self._external, self._embedded):
            try:
                engine.close()
            except Exception:
                logger.exception("Failed to close %s backend", engine.name)
