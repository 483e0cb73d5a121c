from __future__ import annotations


class RbxSyncError(RuntimeError):
    """Base class for every failure rbxsync reports to the operator."""


class ConfigError(RbxSyncError):
    """Invalid or incomplete configuration, detected before any network call."""


class GatewayError(RbxSyncError):
    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        detail = f"{base}: {self.status_code}"
        if self.body:
            detail += f" {self.body[:200]}"
        return detail


class ResourceNotFound(GatewayError):
    pass


class AssetReadError(RbxSyncError):
    """A local binary (icon or place file) is missing or unreadable."""


class AssetProcessingTimeout(RbxSyncError):
    pass


class AssetProcessingFailed(RbxSyncError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Asset processing failed: {reason}")
        self.reason = reason


class CorruptLockFile(RbxSyncError):
    pass


class StateInconsistency(RbxSyncError):
    """The lock file and the remote service disagree about a resource."""
