from __future__ import annotations

import collections
import itertools
import json
import logging
import os
import queue
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import IO, Any, Mapping, Protocol

from .cancellation import CancelReason, CancelScope
from .processes import child_environment, kill_process_tree, remove_quietly, resolve_interpreter, spawn_options
from .records import Record
from .script import render_script

logger = logging.getLogger(__name__)

READY_MARKER = "@@PCR-READY@@"
REPLY_MARKER = "@@PCR@@"

_POLL_SECONDS = 0.05
_STDERR_TAIL = 50

# One request per stdin line: {"id": <int>, "script": <text>}.
# One reply per request: REPLY_MARKER followed by a JSON object.
HOST_LOOP_PS1 = r"""
$ErrorActionPreference = 'Continue'
try {
    [Console]::InputEncoding = New-Object System.Text.UTF8Encoding $false
    [Console]::OutputEncoding = New-Object System.Text.UTF8Encoding $false
} catch { }

$rs = [runspacefactory]::CreateRunspace()
$rs.Open()

function Send-Reply($reply) {
    $json = [pscustomobject]$reply | ConvertTo-Json -Compress -Depth 5
    [Console]::Out.WriteLine('@@PCR@@' + $json)
    [Console]::Out.Flush()
}

[Console]::Out.WriteLine('@@PCR-READY@@')
[Console]::Out.Flush()

while ($true) {
    $line = [Console]::In.ReadLine()
    if ($null -eq $line) { break }
    if ([string]::IsNullOrWhiteSpace($line)) { continue }

    $request = $line | ConvertFrom-Json
    $output = New-Object System.Collections.Generic.List[string]
    $objects = New-Object System.Collections.Generic.List[string]
    $errors = New-Object System.Collections.Generic.List[string]
    $warnings = New-Object System.Collections.Generic.List[string]
    $verbose = New-Object System.Collections.Generic.List[string]
    $hadErrors = $false

    $ps = [powershell]::Create()
    $ps.Runspace = $rs
    try {
        [void]$ps.AddScript([string]$request.script)
        $results = $ps.Invoke()
        foreach ($item in $results) {
            if ($null -eq $item) { continue }
            $base = $item.BaseObject
            if ($base -is [string] -or $base -is [ValueType]) {
                $output.Add([string]$base)
            } else {
                $output.Add(($item | Out-String).TrimEnd())
            }
            try {
                $objects.Add(($item | ConvertTo-Json -Compress -Depth 4))
            } catch {
                $objects.Add(([string]$item | ConvertTo-Json -Compress))
            }
        }
        $hadErrors = $ps.HadErrors
    } catch {
        $hadErrors = $true
        $ex = $_.Exception
        if ($null -ne $ex.InnerException) { $ex = $ex.InnerException }
        $errors.Add($ex.Message)
    }
    foreach ($record in $ps.Streams.Error) { $errors.Add($record.ToString()) }
    foreach ($record in $ps.Streams.Warning) { $warnings.Add($record.Message) }
    foreach ($record in $ps.Streams.Verbose) { $verbose.Add($record.Message) }
    $ps.Dispose()

    Send-Reply ([ordered]@{
        id = $request.id
        output = $output.ToArray()
        objects = $objects.ToArray()
        errors = $errors.ToArray()
        warnings = $warnings.ToArray()
        verbose = $verbose.ToArray()
        hadErrors = [bool]$hadErrors
    })
}

$rs.Close()
"""


class HostError(RuntimeError):
    """Raised when an interpreter host cannot start or stops answering."""


class HostCancelled(HostError):
    """Raised when a request is abandoned because its scope fired.

    The host has already been killed when this is raised.
    """

    def __init__(self, reason: CancelReason, message: str) -> None:
        """Carry the latched cancel reason.

        Example:
            ```python
            raise HostCancelled(CancelReason.TIMEOUT, "timed out")
            ```
        """
        super().__init__(message)
        self.reason = reason


@dataclass(slots=True)
class HostReply:
    """Streams collected by the host for one request.

    Example:
        ```python
        reply = HostReply(request_id=1, output=["ok"])
        ```
    """

    request_id: int
    output: list[str] = field(default_factory=list)
    objects: list[Any] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    verbose: list[str] = field(default_factory=list)
    had_errors: bool = False
    stray: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return True when the script raised nothing and wrote no errors.

        Example:
            ```python
            ok = reply.succeeded
            ```
        """
        return not self.errors and not self.had_errors

    @classmethod
    def parse(cls, payload: str, stray: list[str]) -> "HostReply":
        """Decode one reply payload, tolerating scalar-for-list fields.

        Example:
            ```python
            reply = HostReply.parse('{"id": 1, "output": "ok"}', [])
            ```
        """
        record = Record.from_json(payload)
        if record is None:
            raise HostError(f"Malformed reply from interpreter host: {payload[:200]}")
        request_id = record.get_int("id").or_default(-1)

        def strings(key: str) -> list[str]:
            """Return a list field as strings.

            Example:
                ```python
                errors = strings("errors")
                ```
            """
            return [str(item) for item in record.get_list(key).or_default([]) if item is not None]

        objects: list[Any] = []
        for raw in strings("objects"):
            try:
                objects.append(json.loads(raw))
            except ValueError:
                objects.append(raw)
        return cls(
            request_id=request_id,
            output=strings("output"),
            objects=objects,
            errors=strings("errors"),
            warnings=strings("warnings"),
            verbose=strings("verbose"),
            had_errors=record.get_bool("hadErrors").or_default(False),
            stray=list(stray),
        )


class HostLauncher(Protocol):
    """How an interpreter host process is started and fed scripts."""

    suffix: str

    def loop_source(self) -> str:
        """Return the host loop program text.

        Example:
            ```python
            source = launcher.loop_source()
            ```
        """
        ...

    def command(self, loop_path: str) -> list[str]:
        """Return the argv that runs the host loop at `loop_path`.

        Example:
            ```python
            argv = launcher.command("/tmp/pcr-host-1.ps1")
            ```
        """
        ...

    def render(self, script: str, parameters: Mapping[str, Any]) -> str:
        """Render a script with its parameter assignments.

        Example:
            ```python
            text = launcher.render("Get-VM", {})
            ```
        """
        ...


class PowerShellHostLauncher:
    """Run the PowerShell host loop with the policy bypassed.

    Example:
        ```python
        launcher = PowerShellHostLauncher(executable="pwsh")
        ```
    """

    suffix = ".ps1"

    def __init__(self, executable: str | None = None) -> None:
        """Remember the configured interpreter.

        Example:
            ```python
            launcher = PowerShellHostLauncher()
            ```
        """
        self._executable = executable

    def loop_source(self) -> str:
        """Return the PowerShell host loop.

        Example:
            ```python
            source = launcher.loop_source()
            ```
        """
        return HOST_LOOP_PS1

    def command(self, loop_path: str) -> list[str]:
        """Build the interpreter argv for the host loop.

        Example:
            ```python
            argv = launcher.command("/tmp/pcr-host-1.ps1")
            ```
        """
        exe = resolve_interpreter(self._executable)
        if exe is None:
            raise HostError(f"PowerShell executable not found: {self._executable or 'pwsh or powershell'}")
        return [exe, "-NoLogo", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-File", loop_path]

    def render(self, script: str, parameters: Mapping[str, Any]) -> str:
        """Render the strict preamble, assignments and script.

        Example:
            ```python
            text = launcher.render("Get-VM -Name $Name", {"Name": "web01"})
            ```
        """
        return render_script(script, parameters)


class InterpreterHost:
    """One long-lived interpreter process answering requests in order.

    A host serves one request at a time; the pool and the session manager
    give each host a single owner.

    Example:
        ```python
        host = InterpreterHost(PowerShellHostLauncher())
        host.start()
        reply = host.invoke("Get-Date", {}, CancelScope(30))
        ```
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        launcher: HostLauncher,
        *,
        inherit_environment: bool = True,
        startup_timeout_seconds: float = 60.0,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        """Configure the host without starting it.

        Example:
            ```python
            host = InterpreterHost(launcher, startup_timeout_seconds=30)
            ```
        """
        self._launcher = launcher
        self._inherit_environment = inherit_environment
        self._startup_timeout = startup_timeout_seconds
        self._kill_grace = kill_grace_seconds
        self._proc: subprocess.Popen[str] | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL)
        self._request_ids = itertools.count(1)
        self.host_id = next(self._ids)
        self.created_at = time.time()

    @property
    def alive(self) -> bool:
        """Return True while the host process is running.

        Example:
            ```python
            if host.alive:
                ...
            ```
        """
        return self._proc is not None and self._proc.poll() is None

    @property
    def pid(self) -> int | None:
        """Return the host process id once started.

        Example:
            ```python
            pid = host.pid
            ```
        """
        return self._proc.pid if self._proc is not None else None

    def start(self) -> None:
        """Spawn the host loop and wait for its ready handshake.

        Example:
            ```python
            host.start()
            ```
        """
        if self._proc is not None:
            raise HostError("Interpreter host already started")
        loop_path: str | None = None
        try:
            fd, loop_path = tempfile.mkstemp(prefix="pcr-host-", suffix=self._launcher.suffix)
            with os.fdopen(fd, "w", encoding="utf-8-sig", newline="\n") as handle:
                handle.write(self._launcher.loop_source())
            try:
                self._proc = subprocess.Popen(
                    self._launcher.command(loop_path),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    env=child_environment(self._inherit_environment),
                    **spawn_options(),
                )
            except OSError as exc:
                raise HostError(f"Failed to start interpreter host: {exc}") from exc
            self._pump(self._proc.stdout, self._lines.put, "stdout")
            self._pump(self._proc.stderr, self._stderr_tail.append, "stderr")
            self._await_ready()
        finally:
            remove_quietly(loop_path)
        logger.debug("Interpreter host %s ready (pid %s)", self.host_id, self.pid)

    def _pump(self, stream: IO[str] | None, sink: Any, label: str) -> None:
        """Start a daemon thread copying `stream` lines into `sink`.

        Example:
            ```python
            host._pump(proc.stdout, lines.put, "stdout")
            ```
        """
        if stream is None:
            return

        def run() -> None:
            """Copy lines until EOF, then signal the end of stdout.

            Example:
                ```python
                run()
                ```
            """
            for line in stream:
                sink(line.rstrip("\r\n"))
            if label == "stdout":
                self._lines.put(None)

        thread = threading.Thread(target=run, name=f"pcr-host-{self.host_id}-{label}", daemon=True)
        thread.start()

    def _await_ready(self) -> None:
        """Block until the ready marker arrives or the startup timeout ends.

        Example:
            ```python
            host._await_ready()
            ```
        """
        deadline = time.monotonic() + self._startup_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.kill()
                raise HostError(f"Interpreter host did not start within {self._startup_timeout:g} seconds")
            try:
                line = self._lines.get(timeout=min(remaining, 0.5))
            except queue.Empty:
                continue
            if line is None:
                self.kill()
                raise HostError(f"Interpreter host exited during startup{self._stderr_suffix()}")
            if line.strip() == READY_MARKER:
                return
            logger.debug("Host %s startup output: %s", self.host_id, line)

    def invoke(self, script: str, parameters: Mapping[str, Any], scope: CancelScope) -> HostReply:
        """Send one script and wait for its reply under `scope`.

        Raises `HostCancelled` (after killing the host) when the scope fires
        and `HostError` when the host dies or breaks protocol.

        Example:
            ```python
            reply = host.invoke("Get-VM", {}, CancelScope(60))
            ```
        """
        proc = self._proc
        if proc is None or proc.stdin is None or not self.alive:
            raise HostError("Interpreter host is not running")
        request_id = next(self._request_ids)
        text = self._launcher.render(script, parameters)
        try:
            proc.stdin.write(json.dumps({"id": request_id, "script": text}) + "\n")
            proc.stdin.flush()
        except (OSError, ValueError) as exc:
            self.kill()
            raise HostError(f"Failed to send script to interpreter host: {exc}") from exc

        stray: list[str] = []
        while True:
            reason = scope.reason()
            if reason is not None:
                message = scope.describe()
                logger.warning("Abandoning interpreter host %s: %s", self.host_id, message)
                self.kill()
                raise HostCancelled(reason, message)
            try:
                line = self._lines.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if line is None:
                self.kill()
                raise HostError(f"Interpreter host exited unexpectedly{self._stderr_suffix()}")
            if not line.startswith(REPLY_MARKER):
                stray.append(line)
                continue
            reply = HostReply.parse(line[len(REPLY_MARKER):], stray)
            if reply.request_id != request_id:
                logger.warning("Dropping stale reply %s on host %s", reply.request_id, self.host_id)
                continue
            return reply

    def kill(self) -> None:
        """Kill the host process tree immediately.

        Example:
            ```python
            host.kill()
            ```
        """
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        kill_process_tree(proc.pid, grace_seconds=self._kill_grace)

    def close(self, grace_seconds: float | None = None) -> None:
        """Ask the loop to exit by closing stdin, killing it after a grace period.

        Example:
            ```python
            host.close(grace_seconds=2)
            ```
        """
        proc = self._proc
        if proc is None:
            return
        grace = self._kill_grace if grace_seconds is None else grace_seconds
        if proc.poll() is None:
            try:
                if proc.stdin is not None:
                    proc.stdin.close()
            except OSError as exc:
                logger.debug("Closing host %s stdin failed: %s", self.host_id, exc)
            try:
                proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                self.kill()
        logger.debug("Interpreter host %s closed", self.host_id)

    def _stderr_suffix(self) -> str:
        """Return recent stderr lines formatted for an error message.

        Example:
            ```python
            message = "exited" + host._stderr_suffix()
            ```
        """
        tail = [line for line in self._stderr_tail if line.strip()]
        if not tail:
            return ""
        return ": " + " | ".join(tail[-5:])
