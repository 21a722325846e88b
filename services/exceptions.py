"""Error types raised by the runner services."""

from typing import Optional


class ControlPlaneError(Exception):
    """A ControlPlane request failed (transport error or HTTP error status)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is not None:
            message = f"{message} (status {self.status_code})"
        if self.body:
            message = f"{message}: {self.body}"
        return message


class AuthenticationError(ControlPlaneError):
    """The ControlPlane rejected the auth token. Never retried."""


class ActionError(Exception):
    """A command cannot be executed as requested (missing script or field, bad file operation)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"ActionError: {message}")


class ScriptSpawnError(ActionError):
    """The shell for a script could not be started."""
