"""Backup archives: snapshot, verify and restore the whole profile store.

An archive on disk (and on the remote) is the canonical JSON payload
followed by a footer line ``sha256:<hex>`` computed over the payload bytes.
The footer is checked before the payload is parsed, so a single altered
byte anywhere in the file is reported as a checksum mismatch.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
import shutil
import socket
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ca_switch import __version__
from ca_switch.assistants import AssistantKind
from ca_switch.errors import (
    ChecksumMismatch,
    ConfigError,
    Conflict,
    Corrupt,
    NotFound,
    StoreIOError,
)
from ca_switch.store import ProfileStore, atomic_write, utcnow

logger = logging.getLogger(__name__)

ARCHIVE_FORMAT = 1
ARCHIVE_PREFIX = "ca-switch_"
ARCHIVE_SUFFIX = ".json"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
ARCHIVE_NAME_RE = re.compile(r"^ca-switch_(\d{8}_\d{6})\.json$")
CHECKSUM_PREFIX = b"sha256:"


def archive_name(created_at: datetime) -> str:
    return f"{ARCHIVE_PREFIX}{created_at.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def parse_archive_name(name: str) -> datetime | None:
    """Return the UTC creation time encoded in an archive name, or None."""
    match = ARCHIVE_NAME_RE.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def normalize_archive_name(name: str) -> str:
    if not name.endswith(ARCHIVE_SUFFIX):
        name += ARCHIVE_SUFFIX
    if parse_archive_name(name) is None:
        raise ConfigError(f"Not a backup archive name: '{name}'")
    return name


def _canonical(data: Any) -> bytes:
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def split_archive(data: bytes) -> tuple[bytes, bytes]:
    """Split raw archive bytes into (payload, footer) without verifying."""
    if data.endswith(b"\n"):
        data = data[:-1]
    payload, sep, footer = data.rpartition(b"\n")
    if not sep:
        raise Corrupt("Archive has no checksum footer.")
    return payload, footer


def read_checksum(data: bytes) -> str | None:
    """Best-effort checksum from the footer, for listings."""
    try:
        _, footer = split_archive(data)
    except Corrupt:
        return None
    if not footer.startswith(CHECKSUM_PREFIX):
        return None
    return footer[len(CHECKSUM_PREFIX):].decode("ascii", errors="replace")


@dataclass(frozen=True)
class BackupArchive:
    """Immutable snapshot of every profile and the active selection."""

    created_at: datetime
    profiles: dict[str, dict[str, dict[str, Any]]]
    active: dict[str, str | None]
    hostname: str = ""
    version: str = __version__
    checksum: str = field(default="", compare=False)
    # Exact payload bytes an archive was read from; empty for in-memory archives.
    raw_payload: bytes = field(default=b"", init=False, compare=False, repr=False)

    @classmethod
    def create(
        cls,
        profiles: dict[str, dict[str, dict[str, Any]]],
        active: dict[str, str | None],
        created_at: datetime | None = None,
        hostname: str | None = None,
    ) -> BackupArchive:
        archive = cls(
            created_at=(created_at or utcnow()).astimezone(timezone.utc).replace(microsecond=0),
            profiles=copy.deepcopy(profiles),
            active=dict(active),
            hostname=hostname if hostname is not None else socket.gethostname(),
        )
        object.__setattr__(archive, "checksum", archive.compute_checksum())
        return archive

    @property
    def name(self) -> str:
        return archive_name(self.created_at)

    def payload(self) -> dict[str, Any]:
        return {
            "format": ARCHIVE_FORMAT,
            "created_at": self.created_at.isoformat(),
            "hostname": self.hostname,
            "version": self.version,
            "profiles": self.profiles,
            "active": self.active,
        }

    def payload_bytes(self) -> bytes:
        """The bytes the checksum covers.

        Archives read from disk or the remote keep their original bytes, so
        one written by another version (other indentation, escaping) still
        verifies and is saved back unchanged.
        """
        return self.raw_payload or _canonical(self.payload())

    def compute_checksum(self) -> str:
        return _digest(self.payload_bytes())

    def verify(self) -> None:
        actual = self.compute_checksum()
        if actual != self.checksum:
            raise ChecksumMismatch(
                f"Archive {self.name} checksum mismatch: recorded {self.checksum or '(none)'}, "
                f"computed {actual}"
            )

    def to_bytes(self) -> bytes:
        payload = self.payload_bytes()
        return payload + b"\n" + CHECKSUM_PREFIX + _digest(payload).encode("ascii") + b"\n"

    @classmethod
    def from_bytes(cls, data: bytes) -> BackupArchive:
        payload, footer = split_archive(data)
        expected = CHECKSUM_PREFIX + _digest(payload).encode("ascii")
        if footer != expected:
            raise ChecksumMismatch(
                f"Archive checksum mismatch: recorded {footer.decode('ascii', errors='replace')!r}"
            )

        try:
            doc = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise Corrupt(f"Archive payload is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise Corrupt("Archive payload is not an object.")
        if doc.get("format") != ARCHIVE_FORMAT:
            raise Corrupt(f"Unsupported archive format: {doc.get('format')!r}")

        try:
            created_at = datetime.fromisoformat(doc["created_at"])
            profiles = doc["profiles"]
            active = doc["active"]
        except (KeyError, TypeError, ValueError) as e:
            raise Corrupt(f"Archive payload is missing fields: {e}") from e
        _validate_contents(profiles, active)

        archive = cls(
            created_at=created_at,
            profiles=profiles,
            active=active,
            hostname=doc.get("hostname", ""),
            version=doc.get("version", ""),
        )
        object.__setattr__(archive, "checksum", _digest(payload))
        object.__setattr__(archive, "raw_payload", payload)
        return archive

    def kind_digest(self, kind: AssistantKind) -> str:
        """Digest of one assistant's profiles and selection.

        Independent of when or where the archive was taken, so a fresh
        local snapshot can be compared with a remote archive.
        """
        return _digest(
            _canonical(
                {
                    "profiles": self.profiles.get(kind.value, {}),
                    "active": self.active.get(kind.value),
                }
            )
        )

    def profile_count(self) -> int:
        return sum(len(names) for names in self.profiles.values())


def _validate_contents(profiles: Any, active: Any) -> None:
    known = {kind.value for kind in AssistantKind}
    if not isinstance(profiles, dict) or not isinstance(active, dict):
        raise Corrupt("Archive profiles/active must be objects.")
    for kind, names in profiles.items():
        if kind not in known or not isinstance(names, dict):
            raise Corrupt(f"Archive has unknown assistant '{kind}'.")
        for name, entry in names.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("settings"), dict):
                raise Corrupt(f"Archive profile {kind}/{name} is malformed.")
    for kind, name in active.items():
        if kind not in known:
            raise Corrupt(f"Archive has unknown assistant '{kind}'.")
        if name is not None and name not in profiles.get(kind, {}):
            raise Corrupt(f"Archive selects missing profile {kind}/{name}.")


@dataclass
class ArchiveInfo:
    name: str
    created_at: datetime
    checksum: str | None
    size: int


class BackupManager:
    """Takes snapshots of a ProfileStore and restores them atomically."""

    def __init__(self, store: ProfileStore, backup_dir: Path):
        self.store = store
        self.backup_dir = Path(backup_dir)

    def snapshot(self) -> BackupArchive:
        profiles: dict[str, dict[str, dict[str, Any]]] = {}
        for kind in AssistantKind:
            names = self.store.list(kind)
            if not names:
                continue
            entries = {}
            for name in names:
                profile = self.store.read(kind, name)
                entries[name] = {
                    "settings": profile.settings,
                    "updated_at": profile.updated_at.isoformat(),
                }
            profiles[kind.value] = entries

        active = {kind.value: name for kind, name in self.store.selection().items()}
        archive = BackupArchive.create(profiles, active)
        logger.info("Snapshot %s: %d profile(s)", archive.name, archive.profile_count())
        return archive

    def restore(self, archive: BackupArchive) -> None:
        """Replace the store with the archive's contents, all or nothing."""
        archive.verify()
        _validate_contents(archive.profiles, archive.active)

        root = self.store.root
        root.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{root.name}.staging-", dir=root.parent))
        try:
            self._stage(archive, staging)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        captured = self.store.capture_live()
        old = root.parent / f"{staging.name}.old"
        had_old = root.exists()
        try:
            if had_old:
                os.rename(root, old)
            try:
                os.rename(staging, root)
            except BaseException:
                if had_old:
                    os.rename(old, root)
                raise
        except BaseException as e:
            shutil.rmtree(staging, ignore_errors=True)
            if isinstance(e, OSError):
                raise StoreIOError(f"Failed to swap in restored store at {root}: {e}", root) from e
            raise

        try:
            for kind, name in self.store.selection().items():
                if name is not None:
                    self.store.activate(kind, name)
        except BaseException:
            logger.warning("Re-activation after restore failed, rolling back")
            self._roll_back(root, old if had_old else None, captured)
            raise

        if had_old:
            shutil.rmtree(old, ignore_errors=True)
        logger.info("Restored archive %s", archive.name)

    def _stage(self, archive: BackupArchive, staging: Path) -> None:
        staged = ProfileStore(staging, self.store.home)
        for kind_value, entries in archive.profiles.items():
            kind = AssistantKind(kind_value)
            for name, entry in entries.items():
                updated_at = entry.get("updated_at")
                staged.write(
                    kind,
                    name,
                    entry["settings"],
                    updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
                )
        staged.save_selection(
            {AssistantKind(k): v for k, v in archive.active.items()}
        )

    def _roll_back(self, root: Path, old: Path | None, captured: dict) -> None:
        failed = root.parent / f".{root.name}.failed"
        try:
            shutil.rmtree(failed, ignore_errors=True)
            os.rename(root, failed)
            if old is not None:
                os.rename(old, root)
        except OSError as e:
            logger.error("Could not roll back store directory %s: %s", root, e)
        self.store.restore_live(captured)
        shutil.rmtree(failed, ignore_errors=True)

    # -- local archive directory -------------------------------------------

    def save(self, archive: BackupArchive, overwrite: bool = False) -> Path:
        path = self.backup_dir / archive.name
        data = archive.to_bytes()
        if path.exists():
            try:
                same = path.read_bytes() == data
            except OSError as e:
                raise StoreIOError(f"Failed to read {path}: {e}", path) from e
            if same:
                return path
            if not overwrite:
                raise Conflict(f"Local backup {archive.name} already exists.")
        atomic_write(path, data)
        logger.info("Saved backup %s", path)
        return path

    def _path_for(self, name: str) -> Path:
        path = self.backup_dir / normalize_archive_name(name)
        if not path.is_file():
            raise NotFound(f"Local backup '{name}' not found.")
        return path

    def load(self, name: str) -> BackupArchive:
        path = self._path_for(name)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}", path) from e
        return BackupArchive.from_bytes(data)

    def list_local(self) -> list[ArchiveInfo]:
        if not self.backup_dir.is_dir():
            return []
        infos = []
        for path in self.backup_dir.iterdir():
            created_at = parse_archive_name(path.name)
            if created_at is None or not path.is_file():
                continue
            try:
                data = path.read_bytes()
            except OSError as e:
                logger.warning("Skipping unreadable backup %s: %s", path, e)
                continue
            infos.append(
                ArchiveInfo(
                    name=path.name,
                    created_at=created_at,
                    checksum=read_checksum(data),
                    size=len(data),
                )
            )
        infos.sort(key=lambda i: (i.created_at, i.name), reverse=True)
        return infos

    def latest_local(self) -> ArchiveInfo | None:
        infos = self.list_local()
        return infos[0] if infos else None

    def delete_local(self, name: str) -> None:
        path = self._path_for(name)
        try:
            path.unlink()
        except OSError as e:
            raise StoreIOError(f"Failed to delete {path}: {e}", path) from e
