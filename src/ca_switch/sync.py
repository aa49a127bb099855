"""Sync client: push and pull backup archives to a remote store, and diff them."""

from __future__ import annotations

import difflib
import json
import logging
from dataclasses import dataclass
from datetime import datetime

from ca_switch.backup import BackupArchive, normalize_archive_name, parse_archive_name
from ca_switch.errors import Conflict
from ca_switch.remote.base import RemoteObject, RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class RemoteRecord:
    """A backup archive stored at the remote."""

    name: str
    path: str
    created_at: datetime
    size: int = 0
    last_modified: datetime | None = None

    @classmethod
    def from_object(cls, obj: RemoteObject) -> RemoteRecord | None:
        created_at = parse_archive_name(obj.name)
        if created_at is None:
            return None
        return cls(
            name=obj.name,
            path=obj.path,
            created_at=created_at,
            size=obj.size,
            last_modified=obj.last_modified,
        )


class SyncClient:
    """Moves archives between the local machine and a RemoteStore.

    Never retries: a transient failure surfaces as RemoteUnavailable and the
    caller decides what to do.
    """

    def __init__(self, remote: RemoteStore):
        self.remote = remote

    @property
    def display_name(self) -> str:
        return self.remote.display_name

    def push(self, archive: BackupArchive, overwrite: bool = False) -> RemoteRecord:
        name = archive.name
        if not overwrite and self.remote.exists(name):
            raise Conflict(
                f"Remote backup '{name}' already exists; use overwrite to replace it."
            )
        obj = self.remote.put(name, archive.to_bytes(), overwrite=overwrite)
        logger.info("Pushed %s to %s", name, self.remote.display_name)
        return RemoteRecord(
            name=name,
            path=obj.path,
            created_at=archive.created_at,
            size=obj.size,
            last_modified=obj.last_modified,
        )

    def pull(self, record: RemoteRecord | str) -> BackupArchive:
        name = record.name if isinstance(record, RemoteRecord) else normalize_archive_name(record)
        data = self.remote.get(name)
        logger.info("Pulled %s (%d bytes) from %s", name, len(data), self.remote.display_name)
        return BackupArchive.from_bytes(data)

    def list_remote(self) -> list[RemoteRecord]:
        records = []
        for obj in self.remote.list():
            record = RemoteRecord.from_object(obj)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: (r.created_at, r.name), reverse=True)
        return records

    def latest(self) -> RemoteRecord | None:
        records = self.list_remote()
        return records[0] if records else None

    def delete(self, record: RemoteRecord | str) -> None:
        name = record.name if isinstance(record, RemoteRecord) else normalize_archive_name(record)
        self.remote.delete(name)
        logger.info("Deleted %s from %s", name, self.remote.display_name)


def _archive_files(archive: BackupArchive) -> dict[str, str]:
    """Flatten an archive to {kind/name: pretty settings} plus selections."""
    files = {}
    for kind, entries in archive.profiles.items():
        for name, entry in entries.items():
            files[f"{kind}/{name}"] = (
                json.dumps(entry["settings"], indent=2, sort_keys=True, ensure_ascii=False) + "\n"
            )
    for kind, name in archive.active.items():
        files[f"{kind}/(active)"] = f"{name}\n" if name else "(none)\n"
    return files


def diff_archives(
    local: BackupArchive,
    other: BackupArchive,
    other_label: str = "remote",
) -> list[str]:
    """Generate unified diffs between two archives.

    Returns a list of diff strings (one per changed profile or selection).
    """
    local_files = _archive_files(local)
    other_files = _archive_files(other)
    all_paths = sorted(set(local_files) | set(other_files))
    diffs = []

    for path in all_paths:
        local_content = local_files.get(path, "")
        other_content = other_files.get(path, "")

        if local_content == other_content:
            continue

        if path not in other_files:
            diffs.append(f"  + {path} (local only)")
            continue

        if path not in local_files:
            diffs.append(f"  - {path} ({other_label} only)")
            continue

        diff_lines = difflib.unified_diff(
            other_content.splitlines(keepends=True),
            local_content.splitlines(keepends=True),
            fromfile=f"{other_label}/{path}",
            tofile=f"local/{path}",
        )
        diff_text = "".join(diff_lines)
        if diff_text:
            diffs.append(diff_text)

    return diffs
