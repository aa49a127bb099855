"""Switch controller: user-facing operations composed from store, backups and sync."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, TypeVar

from ca_switch.assistants import AssistantKind
from ca_switch.backup import BackupArchive, BackupManager
from ca_switch.config import RetryConfig
from ca_switch.errors import (
    CaSwitchError,
    ChecksumMismatch,
    ConfigError,
    Corrupt,
    NotFound,
    RemoteError,
    RemoteUnavailable,
)
from ca_switch.store import ProfileStore, atomic_write
from ca_switch.sync import RemoteRecord, SyncClient, diff_archives

logger = logging.getLogger(__name__)

T = TypeVar("T")

LATEST = "latest"


class Phase(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncState(str, Enum):
    IN_SYNC = "in-sync"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass
class Outcome:
    """Result of one controller invocation."""

    operation: str
    phase: Phase = Phase.IDLE
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.phase is Phase.SUCCEEDED


@dataclass
class KindStatus:
    kind: AssistantKind
    active: str | None
    profile_count: int
    state: SyncState


@dataclass
class StatusReport:
    kinds: list[KindStatus]
    remote_name: str | None = None
    remote_latest: RemoteRecord | None = None
    local_latest: datetime | None = None
    reason: str | None = None

    @property
    def diverged(self) -> bool:
        return any(k.state is SyncState.STALE for k in self.kinds)


class SwitchController:
    """Runs switch/backup/restore/status, each as an independent invocation."""

    def __init__(
        self,
        store: ProfileStore,
        backups: BackupManager,
        sync: SyncClient | None = None,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.backups = backups
        self.sync = sync
        self.retry = retry or RetryConfig()
        self._sleep = sleep
        self.last_outcome: Outcome | None = None

    def _run(self, operation: str, fn: Callable[[Outcome], None]) -> Outcome:
        outcome = Outcome(operation=operation)
        self.last_outcome = outcome
        outcome.phase = Phase.IN_PROGRESS
        logger.debug("%s: %s", operation, outcome.phase.value)
        try:
            fn(outcome)
        except CaSwitchError as e:
            outcome.phase = Phase.FAILED
            outcome.reason = e.message
            logger.debug("%s: failed: %s", operation, e.message)
            raise
        outcome.phase = Phase.SUCCEEDED
        logger.debug("%s: %s", operation, outcome.phase.value)
        return outcome

    def remote_call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call fn, retrying RemoteUnavailable with exponential backoff if configured."""
        delays = self.retry.delays()
        for attempt in range(len(delays) + 1):
            try:
                return fn(*args, **kwargs)
            except RemoteUnavailable as e:
                if attempt >= len(delays):
                    raise
                logger.warning(
                    "Remote unavailable (%s); retrying in %.1fs (%d/%d)",
                    e.message,
                    delays[attempt],
                    attempt + 1,
                    len(delays),
                )
                self._sleep(delays[attempt])
        raise AssertionError("unreachable")

    def _require_sync(self) -> SyncClient:
        if self.sync is None:
            raise ConfigError("No remote configured. Run: ca-switch webdav setup")
        return self.sync

    # -- operations ---------------------------------------------------------

    def switch(self, kind: AssistantKind, name: str) -> Outcome:
        def run(outcome: Outcome) -> None:
            outcome.details["previous"] = self.store.current(kind)
            self.store.activate(kind, name)
            outcome.details["active"] = name

        return self._run(f"switch {kind.value}", run)

    def backup(self, remote: bool = False, overwrite: bool = False) -> Outcome:
        def run(outcome: Outcome) -> None:
            sync = self._require_sync() if remote else None
            archive = self.backups.snapshot()
            outcome.details["archive"] = archive
            outcome.details["path"] = self.backups.save(archive, overwrite=overwrite)
            if sync is not None:
                outcome.details["record"] = self.remote_call(
                    sync.push, archive, overwrite=overwrite
                )

        return self._run("backup", run)

    def resolve(self, source: str, remote: bool = False) -> BackupArchive:
        """Turn an archive name (or ``latest``) into a verified archive."""
        if remote:
            sync = self._require_sync()
            if source == LATEST:
                record = self.remote_call(sync.latest)
                if record is None:
                    raise NotFound("No remote backups found.")
                return self.remote_call(sync.pull, record)
            return self.remote_call(sync.pull, source)

        if source == LATEST:
            info = self.backups.latest_local()
            if info is None:
                raise NotFound("No local backups found.")
            source = info.name
        return self.backups.load(source)

    def restore(self, source: str = LATEST, remote: bool = False) -> Outcome:
        def run(outcome: Outcome) -> None:
            archive = self.resolve(source, remote=remote)
            outcome.details["archive"] = archive
            self.backups.restore(archive)
            if remote:
                # Keep a local copy of what was restored.
                self.backups.save(archive, overwrite=True)

        return self._run("restore", run)

    def status(self) -> StatusReport:
        local = self.backups.snapshot()
        latest_local = self.backups.latest_local()
        selection = self.store.selection()

        remote_archive: BackupArchive | None = None
        report = StatusReport(
            kinds=[],
            local_latest=latest_local.created_at if latest_local else None,
        )

        if self.sync is None:
            report.reason = "no remote configured"
        else:
            report.remote_name = self.sync.display_name
            try:
                record = self.remote_call(self.sync.latest)
                if record is None:
                    report.reason = "no remote backups"
                else:
                    report.remote_latest = record
                    remote_archive = self.remote_call(self.sync.pull, record)
            except (RemoteError, NotFound, Corrupt, ChecksumMismatch) as e:
                report.reason = e.message
                remote_archive = None

        for kind in AssistantKind:
            if remote_archive is None:
                state = SyncState.UNKNOWN
            elif local.kind_digest(kind) == remote_archive.kind_digest(kind):
                state = SyncState.IN_SYNC
            else:
                state = SyncState.STALE
            report.kinds.append(
                KindStatus(
                    kind=kind,
                    active=selection[kind],
                    profile_count=len(self.store.list(kind)),
                    state=state,
                )
            )
        return report

    def diff(self, source: str = LATEST, remote: bool = False) -> list[str]:
        """Diff current local state against an archive; divergence is shown, not resolved."""
        other = self.resolve(source, remote=remote)
        return diff_archives(
            self.backups.snapshot(), other, other_label="remote" if remote else "backup"
        )

    def export_opencode(self, directory: Path) -> Outcome:
        """Write the active OpenCode profile into ``<directory>/.opencode/``."""

        def run(outcome: Outcome) -> None:
            name = self.store.current(AssistantKind.OPENCODE)
            if name is None:
                raise NotFound("No OpenCode profile is active.")
            written = []
            for path, data in self.store.render(AssistantKind.OPENCODE, name).items():
                target = Path(directory) / path.relative_to(self.store.home)
                atomic_write(target, data)
                written.append(target)
            outcome.details["written"] = written

        return self._run("export opencode", run)
