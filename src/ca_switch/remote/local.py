"""Plain directory remote, e.g. a mounted or cloud-synced folder."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from ca_switch.errors import (
    Conflict,
    NotFound,
    RemoteUnavailable,
    RemoteWriteError,
    StoreIOError,
)
from ca_switch.remote.base import RemoteObject, RemoteStore
from ca_switch.store import atomic_write


class LocalDirRemote(RemoteStore):
    """Remote store backed by a directory on the local filesystem."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def _object(self, p: Path) -> RemoteObject:
        stat = p.stat()
        return RemoteObject(
            name=p.name,
            path=str(p),
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def is_available(self) -> bool:
        return self.path.is_dir() or self.path.parent.is_dir()

    def exists(self, name: str) -> bool:
        return (self.path / name).is_file()

    def get(self, name: str) -> bytes:
        p = self.path / name
        if not p.is_file():
            raise NotFound(f"Remote backup '{name}' not found in {self.path}.")
        try:
            return p.read_bytes()
        except OSError as e:
            raise RemoteUnavailable(f"Cannot read {p}: {e}") from e

    def put(self, name: str, data: bytes, overwrite: bool = False) -> RemoteObject:
        p = self.path / name
        if p.exists() and not overwrite:
            raise Conflict(f"Remote backup '{name}' already exists in {self.path}.")
        try:
            atomic_write(p, data)
            return self._object(p)
        except (StoreIOError, OSError) as e:
            raise RemoteWriteError(f"Cannot write {p}: {e}") from e

    def list(self) -> list[RemoteObject]:
        if not self.path.is_dir():
            return []
        try:
            return [self._object(p) for p in sorted(self.path.iterdir()) if p.is_file()]
        except OSError as e:
            raise RemoteUnavailable(f"Cannot list {self.path}: {e}") from e

    def delete(self, name: str) -> None:
        p = self.path / name
        if not p.is_file():
            raise NotFound(f"Remote backup '{name}' not found in {self.path}.")
        try:
            p.unlink()
        except OSError as e:
            raise RemoteWriteError(f"Cannot delete {p}: {e}") from e

    @property
    def display_name(self) -> str:
        return f"local {self.path}"
