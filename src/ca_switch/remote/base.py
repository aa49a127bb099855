"""Abstract base class for remote object stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass
class RemoteObject:
    """An object as reported by the remote listing."""

    name: str
    path: str
    size: int = 0
    last_modified: datetime | None = None


class RemoteStore(ABC):
    """A flat get/put/list/delete store for archive objects.

    Implementations raise RemoteUnavailable for connection or auth
    failures, RemoteWriteError when a write is rejected, NotFound for
    missing objects and Conflict when ``put`` would replace an object
    without ``overwrite``. They never retry.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the remote is reachable and accepts our credentials."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Return True if an object with this name exists."""

    @abstractmethod
    def get(self, name: str) -> bytes:
        """Download an object."""

    @abstractmethod
    def put(self, name: str, data: bytes, overwrite: bool = False) -> RemoteObject:
        """Upload an object."""

    @abstractmethod
    def list(self) -> list[RemoteObject]:
        """List objects in the store (unordered)."""

    @abstractmethod
    def delete(self, name: str) -> None:
        """Remove an object."""

    def close(self) -> None:
        """Release any held connections."""

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for status messages."""
