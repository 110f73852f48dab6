"""
Error taxonomy for the live recitation client.

Every error carries a human-readable message plus optional context; none of
them is meant to end the process. Callers surface them on the status line.
"""

from __future__ import annotations

from typing import Any


class RecitationError(Exception):
    """Base exception for all recitation client errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


class DeviceError(RecitationError):
    """Raised when the microphone cannot be opened or used."""


class PermissionDenied(DeviceError):
    """Raised when access to the microphone is refused."""


class DeviceBusy(DeviceError):
    """Raised when the microphone is already owned by another recorder."""

    def __init__(self, owner: str, requested_by: str) -> None:
        super().__init__(
            "Microphone is already in use",
            {"owner": owner, "requested_by": requested_by},
        )
        self.owner = owner
        self.requested_by = requested_by


class ChannelError(RecitationError):
    """Raised when the session socket reports a transport error."""


class ChannelClosed(ChannelError):
    """Raised when the session socket was closed."""


class DecodeError(RecitationError):
    """Raised when correction audio cannot be decoded."""


class UploadFailure(RecitationError):
    """Raised when a training upload is rejected or cannot be delivered."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        super().__init__(message, ctx)
        self.status_code = status_code


class SyncFailure(UploadFailure):
    """Raised when a mistake sync batch is rejected or cannot be delivered."""


class MalformedEvent(RecitationError):
    """Raised when a protocol payload cannot be interpreted."""

    def __init__(self, message: str, payload: Any = None) -> None:
        ctx: dict[str, Any] = {}
        if payload is not None:
            text = repr(payload)
            ctx["payload"] = text if len(text) <= 120 else text[:117] + "..."
        super().__init__(message, ctx)
        self.payload = payload
