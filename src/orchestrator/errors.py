"""Errors surfaced by the gateway to its callers."""

from enum import Enum
from typing import Optional


class RemovalReason(str, Enum):
    """Why a session left the registry."""
    DISCONNECTED = "disconnected"
    TERMINATED_BY_SERVER = "terminated_by_server"
    SHUTDOWN = "shutdown"


class GatewayError(Exception):
    """Base exception for errors reported to gateway callers."""

    requires_reconnect = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthMissingError(GatewayError):
    """No usable bearer token was supplied."""
    pass


class ConnectFailureError(GatewayError):
    """The tool server session could not be opened; nothing was registered."""
    pass


class SessionNotFoundError(GatewayError):
    """The session id is unknown or was already removed."""

    requires_reconnect = True

    def __init__(self, session_id: str, reason: Optional[RemovalReason] = None) -> None:
        if reason is RemovalReason.TERMINATED_BY_SERVER:
            message = "Session terminated by server. Please connect again."
        else:
            message = "Session not found or expired. Please connect again."
        super().__init__(message)
        self.session_id = session_id
        self.reason = reason


class SessionTerminatedError(GatewayError):
    """The tool server ended the session during a chat round."""

    requires_reconnect = True

    def __init__(self, session_id: str) -> None:
        super().__init__("Session terminated by server. Please connect again.")
        self.session_id = session_id


class ChatFailedError(GatewayError):
    """A chat round failed at the model or tool layer; details are logged only."""
    pass
