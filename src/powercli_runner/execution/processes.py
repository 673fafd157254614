from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Mapping

import psutil

logger = logging.getLogger(__name__)

# Variables an interpreter needs even when the host environment is not inherited.
_ESSENTIAL_ENV = (
    "PATH",
    "PATHEXT",
    "SYSTEMROOT",
    "SYSTEMDRIVE",
    "WINDIR",
    "COMSPEC",
    "TEMP",
    "TMP",
    "TMPDIR",
    "HOME",
    "USERPROFILE",
    "APPDATA",
    "LOCALAPPDATA",
    "PROGRAMFILES",
    "PROGRAMFILES(X86)",
    "PROGRAMDATA",
    "PSMODULEPATH",
    "LANG",
)


def resolve_interpreter(configured: str | None = None) -> str | None:
    """Locate the PowerShell executable, preferring an explicit path.

    Example:
        ```python
        exe = resolve_interpreter(None)
        ```
    """
    if configured:
        if os.path.isfile(configured):
            return configured
        return shutil.which(configured)
    for candidate in ("pwsh", "powershell"):
        found = shutil.which(candidate)
        if found:
            return found
    return None


def child_environment(inherit: bool, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Build the environment passed to interpreter processes.

    Example:
        ```python
        env = child_environment(inherit=False)
        ```
    """
    if inherit:
        env = dict(os.environ)
    else:
        env = {key: value for key, value in os.environ.items() if key.upper() in _ESSENTIAL_ENV}
    if overrides:
        env.update(overrides)
    return env


def spawn_options() -> dict[str, object]:
    """Return Popen options that put the child in its own process group.

    Example:
        ```python
        proc = subprocess.Popen(cmd, **spawn_options())
        ```
    """
    if os.name == "nt":
        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(subprocess, "CREATE_NO_WINDOW", 0)
        return {"creationflags": flags}
    return {"start_new_session": True}


def kill_process_tree(pid: int, *, grace_seconds: float) -> bool:
    """Kill a process and all of its descendants, waiting a bounded time.

    Returns True when every process in the tree is gone.

    Example:
        ```python
        gone = kill_process_tree(proc.pid, grace_seconds=5)
        ```
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True
    try:
        procs = parent.children(recursive=True)
    except psutil.Error:
        procs = []
    procs.append(parent)
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as exc:
            logger.warning("Failed to kill process %s: %s", proc.pid, exc)
    _, alive = psutil.wait_procs(procs, timeout=max(0.0, grace_seconds))
    if alive:
        logger.warning("Processes still alive after kill: %s", [proc.pid for proc in alive])
    return not alive


def remove_quietly(path: str | None) -> None:
    """Delete a file if present; log instead of raising on failure.

    Example:
        ```python
        remove_quietly("/tmp/pcr-1234.ps1")
        ```
    """
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Failed to delete temporary script file %s: %s", path, exc)
