"""Error types shared across commasync."""

from __future__ import annotations

from pathlib import Path


class CommaSyncError(RuntimeError):
    """Base class for all commasync failures."""


class VaultUnavailable(CommaSyncError):
    """Raised when the device key file used for credential encryption is missing."""


class DecryptionFailed(CommaSyncError):
    """Raised when a credential blob cannot be decrypted with the current key."""


class ConfigCorrupt(CommaSyncError):
    """Raised when a JSON document on disk cannot be parsed.

    The file is left untouched; callers decide whether to reinitialize it.
    """

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Corrupt JSON document {path}: {reason}")
        self.path = path
        self.reason = reason


class LocationNotFound(CommaSyncError):
    """Raised when no network location matches a role or location id."""


class DuplicateRoleConflict(CommaSyncError):
    """Raised when adding a location for a role that is already configured."""

    def __init__(self, role: str, existing_label: str) -> None:
        super().__init__(
            f"A {role} location is already configured (label={existing_label}). "
            "Replacement must be confirmed explicitly."
        )
        self.role = role
        self.existing_label = existing_label


class ConfirmationRequired(CommaSyncError):
    """Raised when a destructive operation is attempted without confirmation."""


class RouteNotFound(CommaSyncError):
    """Raised when no segment directories exist for a route."""


class ConcatenationFailed(CommaSyncError):
    """Raised when segments of one kind cannot be merged into an artifact."""

    def __init__(self, kind: str, camera: str | None = None, reason: str = "") -> None:
        target = f"{kind}/{camera}" if camera else kind
        message = f"Concatenation failed for {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.kind = kind
        self.camera = camera


class InsufficientLocalSpace(CommaSyncError):
    """Raised when the output filesystem cannot hold the concatenated artifacts."""


class DeviceOnroad(CommaSyncError):
    """Raised when a transfer is requested while the vehicle is driving."""


class TransferFailed(CommaSyncError):
    """A transfer stopped at ``stage``; ``state_preserved`` tells whether it can resume."""

    def __init__(self, message: str, stage: str = "init", state_preserved: bool = True) -> None:
        super().__init__(message)
        self.stage = stage
        self.state_preserved = state_preserved


class Unreachable(TransferFailed):
    """Raised when a network location cannot be reached."""


class AuthFailed(TransferFailed):
    """Raised when a network location rejects the stored credentials."""


class UploadFailed(TransferFailed):
    """Raised when an artifact cannot be uploaded or fails remote verification."""

    def __init__(self, artifact: str, reason: str, stage: str = "uploading") -> None:
        super().__init__(f"Upload failed for {artifact}: {reason}", stage=stage)
        self.artifact = artifact


class RemoteError(CommaSyncError):
    """Base exception for SMB/SSH protocol client errors."""


class RemoteConnectionError(RemoteError):
    """Raised when a remote host cannot be contacted."""


class RemoteAuthError(RemoteError):
    """Raised when a remote host rejects authentication."""


class RemoteCommandError(RemoteError):
    """Raised when a remote operation runs but does not succeed."""


class CommandError(CommaSyncError):
    """Raised when an external program cannot be started."""


class CommandTimeout(CommandError):
    """Raised when an external program exceeds its timeout and is killed."""
