from __future__ import annotations

from enum import Enum


class ConnectionFailureKind(str, Enum):
    """Best-effort classification of a failed connection.

    Example:
        ```python
        kind = ConnectionFailureKind.AUTHENTICATION
        ```
    """

    AUTHENTICATION = "authentication"
    CERTIFICATE = "certificate"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


_KEYWORDS: tuple[tuple[ConnectionFailureKind, tuple[str, ...]], ...] = (
    (ConnectionFailureKind.AUTHENTICATION, ("authentication", "credentials", "password", "login", "unauthorized")),
    (ConnectionFailureKind.CERTIFICATE, ("certificate", "ssl", "tls", "trust relationship")),
    (ConnectionFailureKind.TIMEOUT, ("timed out", "timeout")),
    (ConnectionFailureKind.NETWORK, ("network", "unreachable", "refused", "could not resolve", "could not be resolved", "no such host")),
)

_REMEDIATION = {
    ConnectionFailureKind.AUTHENTICATION: "Invalid username or password; check the credentials and account lockout state",
    ConnectionFailureKind.CERTIFICATE: "SSL certificate validation failed; install the server certificate or allow invalid certificates",
    ConnectionFailureKind.NETWORK: "Network connection failed; check the server address, DNS and firewall rules",
    ConnectionFailureKind.TIMEOUT: "The server did not answer in time; check reachability or raise the connect timeout",
    ConnectionFailureKind.UNKNOWN: "Check the server address and the PowerCLI installation",
}


def classify_error(message: str) -> ConnectionFailureKind:
    """Map connection error text to a failure kind by keyword.

    Example:
        ```python
        assert classify_error("Cannot complete login due to an incorrect user name or password") is ConnectionFailureKind.AUTHENTICATION
        ```
    """
    lowered = (message or "").lower()
    for kind, keywords in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return ConnectionFailureKind.UNKNOWN


def remediation_for(kind: ConnectionFailureKind) -> str:
    """Return operator guidance for a failure kind.

    Example:
        ```python
        hint = remediation_for(ConnectionFailureKind.NETWORK)
        ```
    """
    return _REMEDIATION[kind]


class SessionConnectError(RuntimeError):
    """Raised when a session cannot be established.

    Example:
        ```python
        raise SessionConnectError("Failed to connect to vc01: bad password", ConnectionFailureKind.AUTHENTICATION)
        ```
    """

    def __init__(
        self,
        message: str,
        kind: ConnectionFailureKind = ConnectionFailureKind.UNKNOWN,
        *,
        server_url: str = "",
    ) -> None:
        """Store the failure kind and its remediation hint.

        Example:
            ```python
            error = SessionConnectError("timed out", ConnectionFailureKind.TIMEOUT, server_url="vc01")
            ```
        """
        super().__init__(message)
        self.kind = kind
        self.server_url = server_url
        self.remediation = remediation_for(kind)
