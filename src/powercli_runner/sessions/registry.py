from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from ..execution.pooled_engine import ScriptHost


class SessionState(str, Enum):
    """Lifecycle of a remote session.

    Example:
        ```python
        state = SessionState.CONNECTED
        ```
    """

    CREATED = "created"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(slots=True, eq=False)
class Session:
    """An authenticated connection bound to one dedicated interpreter.

    Example:
        ```python
        session = Session(server_url="vc01.lab", username="admin")
        ```
    """

    server_url: str
    username: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    state: SessionState = SessionState.CREATED
    server_version: str = ""
    server_build: str = ""
    api_version: str = ""
    host: ScriptHost | None = None
    command_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def connected(self) -> bool:
        """Return True only between a successful connect and teardown.

        Example:
            ```python
            if session.connected:
                ...
            ```
        """
        return self.state is SessionState.CONNECTED and self.host is not None

    def touch(self) -> None:
        """Record activity now.

        Example:
            ```python
            session.touch()
            ```
        """
        self.last_activity = time.time()


class SessionRegistry:
    """Thread-safe map of open sessions, owned by one manager.

    Example:
        ```python
        registry = SessionRegistry()
        registry.add(session)
        ```
    """

    def __init__(self) -> None:
        """Create an empty registry.

        Example:
            ```python
            registry = SessionRegistry()
            ```
        """
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        """Register a session under its id.

        Example:
            ```python
            registry.add(session)
            ```
        """
        with self._lock:
            self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Session | None:
        """Unregister a session; missing ids are ignored.

        Example:
            ```python
            registry.remove(session.session_id)
            ```
        """
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session | None:
        """Return a session by id.

        Example:
            ```python
            session = registry.get(session_id)
            ```
        """
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self) -> list[Session]:
        """Return the open sessions at this moment.

        Example:
            ```python
            for session in registry.snapshot():
                ...
            ```
        """
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        """Return the number of open sessions.

        Example:
            ```python
            count = len(registry)
            ```
        """
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        """Return True when `session_id` is registered.

        Example:
            ```python
            assert session.session_id in registry
            ```
        """
        with self._lock:
            return session_id in self._sessions
