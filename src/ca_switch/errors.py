"""Error taxonomy for ca-switch.

Every error carries an exit code for its category so the CLI can map
failures without inspecting the concrete type.
"""

from __future__ import annotations

from pathlib import Path

EXIT_USER = 2
EXIT_LOCAL = 3
EXIT_REMOTE = 4


class CaSwitchError(Exception):
    """Base class for all ca-switch errors."""

    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UserError(CaSwitchError):
    exit_code = EXIT_USER


class LocalError(CaSwitchError):
    exit_code = EXIT_LOCAL


class RemoteError(CaSwitchError):
    exit_code = EXIT_REMOTE


class NotFound(UserError):
    """A profile, archive or remote record does not exist."""


class Conflict(UserError):
    """A name is already taken and overwrite was not requested."""


class ProfileActive(UserError):
    """The profile is currently active and cannot be removed."""


class ConfigError(UserError):
    """Invalid input or missing configuration."""


class StoreIOError(LocalError):
    """Local disk failure."""

    def __init__(self, message: str, path: Path | None = None):
        super().__init__(message)
        self.path = path


class Corrupt(LocalError):
    """Serialized data could not be parsed."""


class ChecksumMismatch(LocalError):
    """Archive bytes do not match their recorded checksum."""


class RemoteUnavailable(RemoteError):
    """Connection or authentication failure talking to the remote."""


class RemoteWriteError(RemoteError):
    """The remote rejected a write."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
