from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Mapping, Protocol

from ..modules.loader import ModuleLoader, ModuleLoadOutcome
from ..modules.resolver import INVENTORY_SCRIPT, ModuleLoadPlan, ModuleResolver, parse_inventory
from ..settings import RunnerSettings
from .cancellation import CancelScope
from .host import HostCancelled, HostError, HostLauncher, HostReply, InterpreterHost, PowerShellHostLauncher
from .pool import InterpreterPool, PoolSettings
from .types import ExecutionRequest, ExecutionResult, FailureKind, Stopwatch, failure_for

logger = logging.getLogger(__name__)

POLICY_SCRIPT = "Set-ExecutionPolicy -ExecutionPolicy Bypass -Scope Process -Force"
VENDOR_SMOKE_SCRIPT = "Get-Command -Name Connect-VIServer -ErrorAction Stop | Out-Null; 'ok'"
GENERIC_SMOKE_SCRIPT = "$PSVersionTable.PSVersion.ToString()"

_INIT_POLL_SECONDS = 0.02


class InitState(str, Enum):
    """Lifecycle of the embedded backend's one-time initialization.

    Example:
        ```python
        state = InitState.READY
        ```
    """

    NOT_STARTED = "not_started"
    READY = "ready"
    UNAVAILABLE = "unavailable"


class ScriptHost(Protocol):
    """The part of an interpreter host the embedded backend drives."""

    @property
    def alive(self) -> bool:
        """Return True while the host can take requests.

        Example:
            ```python
            ok = host.alive
            ```
        """
        ...

    def invoke(self, script: str, parameters: Mapping[str, Any], scope: CancelScope) -> HostReply:
        """Run one script and return its streams.

        Example:
            ```python
            reply = host.invoke("Get-Date", {}, CancelScope(30))
            ```
        """
        ...

    def kill(self) -> None:
        """Stop the host immediately.

        Example:
            ```python
            host.kill()
            ```
        """
        ...

    def close(self, grace_seconds: float | None = None) -> None:
        """Stop the host gracefully.

        Example:
            ```python
            host.close()
            ```
        """
        ...


def reply_to_result(reply: HostReply, *, elapsed_seconds: float, backend: str) -> ExecutionResult:
    """Convert collected host streams into an `ExecutionResult`.

    Example:
        ```python
        result = reply_to_result(reply, elapsed_seconds=0.4, backend="embedded")
        ```
    """
    output = "\n".join([*reply.stray, *reply.output])
    if reply.succeeded:
        return ExecutionResult(
            success=True,
            output=output,
            warnings=list(reply.warnings),
            verbose=list(reply.verbose),
            elapsed_seconds=elapsed_seconds,
            objects=list(reply.objects),
            backend=backend,
        )
    return ExecutionResult(
        success=False,
        output=output,
        error="\n".join(reply.errors) or "Script reported errors",
        warnings=list(reply.warnings),
        verbose=list(reply.verbose),
        elapsed_seconds=elapsed_seconds,
        objects=list(reply.objects),
        failure=FailureKind.SCRIPT,
        backend=backend,
    )


def run_on_host(
    host: ScriptHost,
    script: str,
    parameters: Mapping[str, Any],
    scope: CancelScope,
    *,
    backend: str,
) -> tuple[ExecutionResult, bool]:
    """Run a script on one host; return the result and whether the host is spent.

    The host is spent (already killed) after a cancel, timeout or protocol failure.

    Example:
        ```python
        result, spent = run_on_host(host, "Get-VM", {}, CancelScope(60), backend="session")
        ```
    """
    watch = Stopwatch()
    reason = scope.reason()
    if reason is not None:
        return ExecutionResult.failed(
            failure_for(reason), scope.describe(), elapsed_seconds=watch.elapsed(), backend=backend
        ), False
    try:
        reply = host.invoke(script, parameters, scope)
    except HostCancelled as exc:
        return ExecutionResult.failed(
            failure_for(exc.reason), str(exc), elapsed_seconds=watch.elapsed(), backend=backend
        ), True
    except HostError as exc:
        logger.warning("Interpreter host failed: %s", exc)
        host.kill()
        return ExecutionResult.failed(
            FailureKind.MECHANISM, str(exc), elapsed_seconds=watch.elapsed(), backend=backend
        ), True
    return reply_to_result(reply, elapsed_seconds=watch.elapsed(), backend=backend), False


def _raise_if_fired(scope: CancelScope) -> None:
    """Raise `HostCancelled` when `scope` has already fired.

    Example:
        ```python
        _raise_if_fired(request.scope)
        ```
    """
    reason = scope.reason()
    if reason is not None:
        raise HostCancelled(reason, scope.describe("Preparing an interpreter host"))


class PooledEngine:
    """Execute requests on a bounded pool of pre-initialized interpreter hosts.

    Initialization happens once, lazily, behind a lock. A failed
    initialization leaves the engine unavailable for its lifetime.

    Example:
        ```python
        engine = PooledEngine(RunnerSettings(pool_capacity=3))
        result = engine.execute(ExecutionRequest(script="Get-VM", parameters={}, scope=CancelScope(60)))
        ```
    """

    name = "embedded"

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        launcher: HostLauncher | None = None,
        resolver: ModuleResolver | None = None,
        host_factory: Callable[[], ScriptHost] | None = None,
    ) -> None:
        """Configure the engine without starting any host.

        Example:
            ```python
            engine = PooledEngine(settings, resolver=ModuleResolver(pinned_version="13.2.0"))
            ```
        """
        self._settings = settings or RunnerSettings()
        self._launcher = launcher or PowerShellHostLauncher(self._settings.executable)
        self._resolver = resolver or ModuleResolver(pinned_version=self._settings.pinned_module_version)
        self._loader = ModuleLoader(self._resolver)
        self._host_factory = host_factory or self._start_host
        self._init_lock = threading.Lock()
        self._init_done = threading.Event()
        self._init_thread: threading.Thread | None = None
        self._state = InitState.NOT_STARTED
        self._init_error = ""
        self._plan: ModuleLoadPlan | None = None
        self._load_outcome: ModuleLoadOutcome | None = None
        self._pool = InterpreterPool(
            PoolSettings(
                capacity=int(self._settings.pool_capacity),
                max_runs=int(self._settings.host_max_runs),
                ttl_seconds=float(self._settings.host_ttl_seconds),
            ),
            factory=self._spawn_prepared,
        )

    @property
    def state(self) -> InitState:
        """Return the initialization state.

        Example:
            ```python
            if engine.state is InitState.UNAVAILABLE:
                ...
            ```
        """
        return self._state

    @property
    def init_error(self) -> str:
        """Return the message recorded when initialization failed.

        Example:
            ```python
            message = engine.init_error
            ```
        """
        return self._init_error

    @property
    def pool(self) -> InterpreterPool:
        """Return the underlying host pool.

        Example:
            ```python
            busy = engine.pool.in_use
            ```
        """
        return self._pool

    @property
    def load_plan(self) -> ModuleLoadPlan | None:
        """Return the module plan chosen during initialization.

        Example:
            ```python
            plan = engine.load_plan
            ```
        """
        return self._plan

    @property
    def load_outcome(self) -> ModuleLoadOutcome | None:
        """Return the module load outcome of the first host.

        Example:
            ```python
            outcome = engine.load_outcome
            ```
        """
        return self._load_outcome

    def initialize(self, scope: CancelScope | None = None) -> bool:
        """Bootstrap once; later calls return the recorded result.

        The bootstrap runs on its own thread bounded by `init_timeout_seconds`.
        A caller passing `scope` stops waiting when it fires and gets
        `HostCancelled`; the bootstrap keeps going for later callers.

        Example:
            ```python
            ready = engine.initialize(CancelScope(30))
            ```
        """
        with self._init_lock:
            if self._init_thread is None and self._state is InitState.NOT_STARTED:
                self._init_thread = threading.Thread(
                    target=self._run_bootstrap, name="pcr-embedded-init", daemon=True
                )
                self._init_thread.start()
        if scope is None:
            self._init_done.wait()
        else:
            while not self._init_done.wait(_INIT_POLL_SECONDS):
                reason = scope.reason()
                if reason is not None:
                    raise HostCancelled(reason, scope.describe("Waiting for embedded PowerShell initialization"))
        return self._state is InitState.READY

    def _run_bootstrap(self) -> None:
        """Bootstrap and record the resulting state; runs on the init thread.

        Example:
            ```python
            threading.Thread(target=engine._run_bootstrap).start()
            ```
        """
        try:
            self._bootstrap()
        except Exception as exc:
            self._init_error = f"Embedded PowerShell initialization failed: {exc}"
            self._state = InitState.UNAVAILABLE
            logger.error("%s", self._init_error)
        else:
            self._state = InitState.READY
            logger.info("Embedded PowerShell backend ready (capacity %s)", self._pool.capacity)
        finally:
            self._init_done.set()

    def _bootstrap(self) -> None:
        """Start the first host, resolve modules and smoke-test it.

        Example:
            ```python
            engine._bootstrap()
            ```
        """
        scope = CancelScope(self._settings.init_timeout_seconds)
        host = self._host_factory()
        try:
            self._checked(host, POLICY_SCRIPT, scope, "Setting the execution policy")
            inventory = self._checked(host, INVENTORY_SCRIPT, scope, "Module inventory")
            self._plan = self._resolver.plan(parse_inventory(inventory))
            for note in self._plan.notes:
                logger.info("%s", note)
            self._load_outcome = self._load_modules(host, scope)
            smoke = VENDOR_SMOKE_SCRIPT if self._load_outcome.success else GENERIC_SMOKE_SCRIPT
            self._checked(host, smoke, scope, "Smoke test")
        except BaseException:
            host.kill()
            raise
        self._pool.adopt(host)

    def _load_modules(self, host: ScriptHost, scope: CancelScope) -> ModuleLoadOutcome:
        """Run the load script for the memoized plan on `host`.

        Example:
            ```python
            outcome = engine._load_modules(host, CancelScope(120))
            ```
        """
        plan = self._plan or ModuleLoadPlan()
        if plan.empty:
            outcome = self._loader.evaluate(ExecutionResult(success=True), plan)
        else:
            result, spent = run_on_host(host, self._loader.script(plan), {}, scope, backend=self.name)
            if spent:
                raise HostError(result.error)
            outcome = self._loader.evaluate(result, plan)
        for failure in outcome.failures:
            logger.debug("Module load: %s", failure)
        if not outcome.success:
            if self._settings.require_vendor_modules:
                detail = "; ".join(outcome.failures[-3:]) or "no mandatory module loaded"
                raise HostError(f"VMware PowerCLI modules could not be loaded: {detail}")
            logger.warning("Continuing without VMware PowerCLI modules")
        return outcome

    def _checked(self, host: ScriptHost, script: str, scope: CancelScope, step: str) -> ExecutionResult:
        """Run a bootstrap step and raise when it fails.

        Example:
            ```python
            result = engine._checked(host, POLICY_SCRIPT, scope, "Setting the execution policy")
            ```
        """
        result, _ = run_on_host(host, script, {}, scope, backend=self.name)
        if not result.success:
            _raise_if_fired(scope)
            raise HostError(f"{step} failed: {result.error}")
        return result

    def _start_host(self) -> InterpreterHost:
        """Start a bare interpreter host.

        Example:
            ```python
            host = engine._start_host()
            ```
        """
        host = InterpreterHost(
            self._launcher,
            inherit_environment=self._settings.inherit_environment,
            startup_timeout_seconds=self._settings.init_timeout_seconds,
            kill_grace_seconds=self._settings.kill_grace_seconds,
        )
        host.start()
        return host

    def _spawn_prepared(self, scope: CancelScope | None = None) -> ScriptHost:
        """Start a host and replay the policy and module loading on it.

        Preparation runs under `scope` when given, else under the init timeout.

        Example:
            ```python
            host = engine._spawn_prepared(request.scope)
            ```
        """
        scope = scope or CancelScope(self._settings.init_timeout_seconds)
        host = self._host_factory()
        try:
            _raise_if_fired(scope)
            self._checked(host, POLICY_SCRIPT, scope, "Setting the execution policy")
            plan = self._plan or ModuleLoadPlan()
            if self._load_outcome is not None and self._load_outcome.success and not plan.empty:
                result, spent = run_on_host(host, self._loader.script(plan), {}, scope, backend=self.name)
                if spent or not self._loader.evaluate(result, plan).success:
                    _raise_if_fired(scope)
                    raise HostError(f"Module loading failed on a new host: {result.error}")
        except BaseException:
            host.kill()
            raise
        return host

    def spawn_host(self) -> ScriptHost:
        """Return a new prepared host owned by the caller, outside the pool.

        Example:
            ```python
            host = engine.spawn_host()
            ```
        """
        if not self.initialize():
            raise HostError(self._init_error)
        return self._spawn_prepared()

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Lease a host, run the request, and release the host.

        Example:
            ```python
            result = engine.execute(ExecutionRequest(script="Get-VM", parameters={}, scope=CancelScope(60)))
            ```
        """
        watch = Stopwatch()
        try:
            if not self.initialize(request.scope):
                return ExecutionResult.failed(
                    FailureKind.MECHANISM, self._init_error, elapsed_seconds=watch.elapsed(), backend=self.name
                )
            lease = self._pool.acquire(request.scope)
        except HostCancelled as exc:
            return ExecutionResult.failed(
                failure_for(exc.reason), str(exc), elapsed_seconds=watch.elapsed(), backend=self.name
            )
        except HostError as exc:
            return ExecutionResult.failed(
                FailureKind.MECHANISM, str(exc), elapsed_seconds=watch.elapsed(), backend=self.name
            )

        spent = True
        try:
            result, spent = run_on_host(
                lease.host, request.script, request.parameters, request.scope, backend=self.name
            )
        finally:
            self._pool.release(lease, mark_bad=spent)
        result.elapsed_seconds = watch.elapsed()
        return result

    def close(self) -> None:
        """Shut down every pooled host.

        Example:
            ```python
            engine.close()
            ```
        """
        self._pool.close()
