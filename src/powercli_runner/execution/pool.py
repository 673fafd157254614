from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from .cancellation import CancelScope
from .host import HostCancelled, HostError

logger = logging.getLogger(__name__)

_ACQUIRE_POLL_SECONDS = 0.05


class PooledHost(Protocol):
    """The part of an interpreter host the pool relies on."""

    @property
    def alive(self) -> bool:
        """Return True while the host can take requests.

        Example:
            ```python
            ok = host.alive
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


@dataclass(frozen=True, slots=True)
class PoolSettings:
    """Capacity and rotation limits for the interpreter pool.

    Example:
        ```python
        settings = PoolSettings(capacity=5, max_runs=200, ttl_seconds=3600)
        ```
    """

    capacity: int = 5
    max_runs: int = 200
    ttl_seconds: float = 3600.0

    def __post_init__(self) -> None:
        """Validate limits.

        Example:
            ```python
            PoolSettings(capacity=0)  # raises ValueError
            ```
        """
        if self.capacity < 1:
            raise ValueError("Pool capacity must be at least 1")
        if self.max_runs < 1:
            raise ValueError("max_runs must be at least 1")
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")


@dataclass(slots=True)
class HostLease:
    """A leased pooled host with its rotation counters.

    Example:
        ```python
        lease = HostLease(host=host, created_at=0.0, last_used_at=0.0, run_count=0)
        ```
    """

    host: PooledHost
    created_at: float
    last_used_at: float
    run_count: int


@dataclass(slots=True)
class _PoolEntry:
    """Internal pool entry tracking lease state.

    Example:
        ```python
        entry = _PoolEntry(lease=lease, in_use=False)
        ```
    """

    lease: HostLease
    in_use: bool


def should_rotate(lease: HostLease, settings: PoolSettings, now: float) -> bool:
    """Decide whether a pooled host should be replaced.

    Example:
        ```python
        rotate = should_rotate(lease, settings, now=time.time())
        ```
    """
    if lease.run_count >= settings.max_runs:
        return True
    return (now - lease.created_at) >= settings.ttl_seconds


class InterpreterPool:
    """Capacity-bounded pool of warm interpreter hosts.

    Callers beyond capacity block in `acquire` until a host is released or
    their scope fires.

    Example:
        ```python
        pool = InterpreterPool(PoolSettings(capacity=5), factory=spawn_host)
        ```
    """

    def __init__(self, settings: PoolSettings, factory: Callable[[CancelScope], PooledHost]) -> None:
        """Initialize an empty thread-safe pool.

        Example:
            ```python
            pool = InterpreterPool(PoolSettings(), factory=spawn_host)
            ```
        """
        self._settings = settings
        self._factory = factory
        self._lock = threading.Lock()
        self._entries: list[_PoolEntry] = []
        self._starting = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        """Return the maximum number of concurrently leased hosts.

        Example:
            ```python
            n = pool.capacity
            ```
        """
        return self._settings.capacity

    @property
    def in_use(self) -> int:
        """Return the number of hosts currently leased.

        Example:
            ```python
            busy = pool.in_use
            ```
        """
        with self._lock:
            return sum(1 for entry in self._entries if entry.in_use)

    @property
    def size(self) -> int:
        """Return the number of hosts owned by the pool.

        Example:
            ```python
            total = pool.size
            ```
        """
        with self._lock:
            return len(self._entries)

    def acquire(self, scope: CancelScope) -> HostLease:
        """Lease an idle host, starting one when below capacity.

        Example:
            ```python
            lease = pool.acquire(CancelScope(30))
            ```
        """
        while True:
            stale: list[PooledHost] = []
            leased: HostLease | None = None
            create = False
            with self._lock:
                if self._closed:
                    raise HostError("Interpreter pool is closed")
                stale.extend(self._rotate_locked())
                for entry in self._entries:
                    if entry.in_use:
                        continue
                    entry.in_use = True
                    leased = entry.lease
                    break
                if leased is None and len(self._entries) + self._starting < self._settings.capacity:
                    self._starting += 1
                    create = True
            self._dispose(stale)

            if leased is not None:
                return leased
            if create:
                return self._start_host(scope)

            reason = scope.sleep(_ACQUIRE_POLL_SECONDS)
            if reason is not None:
                raise HostCancelled(reason, scope.describe("Waiting for an interpreter slot"))

    def _start_host(self, scope: CancelScope) -> HostLease:
        """Create a host outside the lock for a reserved slot; the factory sees `scope`.

        Example:
            ```python
            lease = pool._start_host(CancelScope(30))
            ```
        """
        try:
            host = self._factory(scope)
        except BaseException:
            with self._lock:
                self._starting -= 1
            raise
        now = time.time()
        lease = HostLease(host=host, created_at=now, last_used_at=now, run_count=0)
        with self._lock:
            self._starting -= 1
            if self._closed:
                closed = True
            else:
                closed = False
                self._entries.append(_PoolEntry(lease=lease, in_use=True))
        if closed:
            host.kill()
            raise HostError("Interpreter pool is closed")
        logger.debug("Started pooled interpreter host (%s/%s)", self.size, self._settings.capacity)
        return lease

    def adopt(self, host: PooledHost) -> bool:
        """Add an already started host as idle; close it when the pool is full.

        Example:
            ```python
            pool.adopt(host)
            ```
        """
        now = time.time()
        with self._lock:
            if not self._closed and len(self._entries) + self._starting < self._settings.capacity:
                lease = HostLease(host=host, created_at=now, last_used_at=now, run_count=0)
                self._entries.append(_PoolEntry(lease=lease, in_use=False))
                return True
        host.close()
        return False

    def release(self, lease: HostLease, *, mark_bad: bool = False) -> None:
        """Return a lease to the pool; bad or dead hosts are discarded.

        Example:
            ```python
            pool.release(lease, mark_bad=True)
            ```
        """
        discard: list[PooledHost] = []
        with self._lock:
            for entry in list(self._entries):
                if entry.lease is not lease:
                    continue
                entry.in_use = False
                entry.lease.last_used_at = time.time()
                entry.lease.run_count += 1
                if mark_bad or self._closed or not entry.lease.host.alive:
                    self._entries.remove(entry)
                    discard.append(entry.lease.host)
                break
        for host in discard:
            host.kill()

    def _rotate_locked(self) -> list[PooledHost]:
        """Detach idle hosts that are dead or exceed run/TTL limits.

        Example:
            ```python
            stale = pool._rotate_locked()
            ```
        """
        now = time.time()
        stale: list[PooledHost] = []
        for entry in list(self._entries):
            if entry.in_use:
                continue
            if should_rotate(entry.lease, self._settings, now) or not entry.lease.host.alive:
                self._entries.remove(entry)
                stale.append(entry.lease.host)
        return stale

    def _dispose(self, hosts: list[PooledHost]) -> None:
        """Close detached hosts.

        Example:
            ```python
            pool._dispose([host])
            ```
        """
        for host in hosts:
            try:
                host.close(grace_seconds=1.0)
            except HostError as exc:
                logger.warning("Failed to close rotated interpreter host: %s", exc)
        hosts.clear()

    def close(self) -> None:
        """Shut down every host; leased hosts are killed.

        Example:
            ```python
            pool.close()
            ```
        """
        with self._lock:
            self._closed = True
            entries = list(self._entries)
            self._entries.clear()
        for entry in entries:
            if entry.in_use:
                entry.lease.host.kill()
            else:
                entry.lease.host.close()
