"""Profile store: named profiles on disk plus the active selection."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ca_switch.assistants import AssistantKind, get_assistant
from ca_switch.errors import (
    CaSwitchError,
    ConfigError,
    Corrupt,
    NotFound,
    ProfileActive,
    StoreIOError,
)

logger = logging.getLogger(__name__)

PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,63}$")

ACTIVE_FILE = "active.json"
PROFILES_DIR = "profiles"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def atomic_write(path: Path, data: bytes) -> None:
    """Write data to path via a temp file in the same directory and rename.

    A crash at any point leaves either the old file or the new one.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
    except OSError as e:
        raise StoreIOError(f"Failed to write {path}: {e}", path) from e


def validate_name(name: str) -> str:
    if not PROFILE_NAME_RE.match(name or ""):
        raise ConfigError(
            f"Invalid profile name '{name}': use letters, digits, '.', '_' or '-' "
            "(max 64 chars, not starting with '.')"
        )
    return name


@dataclass
class Profile:
    """A saved, named set of settings for one assistant."""

    kind: AssistantKind
    name: str
    settings: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "updated_at": self.updated_at.isoformat(),
            "settings": self.settings,
        }


class ProfileStore:
    """Profiles under ``root/profiles/<kind>/<name>.json``.

    ``home`` is where the assistants' live config files are rendered; tests
    inject a temp directory for both.
    """

    def __init__(self, root: Path, home: Path | None = None):
        self.root = Path(root)
        self.home = Path(home) if home is not None else Path.home()

    @property
    def active_file(self) -> Path:
        return self.root / ACTIVE_FILE

    def _kind_dir(self, kind: AssistantKind) -> Path:
        return self.root / PROFILES_DIR / kind.value

    def _profile_path(self, kind: AssistantKind, name: str) -> Path:
        return self._kind_dir(kind) / f"{validate_name(name)}.json"

    # -- profiles ---------------------------------------------------------

    def list(self, kind: AssistantKind) -> list[str]:
        kind_dir = self._kind_dir(kind)
        if not kind_dir.is_dir():
            return []
        return sorted(p.stem for p in kind_dir.glob("*.json") if p.is_file())

    def exists(self, kind: AssistantKind, name: str) -> bool:
        return self._profile_path(kind, name).is_file()

    def read(self, kind: AssistantKind, name: str) -> Profile:
        path = self._profile_path(kind, name)
        if not path.is_file():
            raise NotFound(f"Profile '{name}' not found for {get_assistant(kind).display_name}.")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Profile(
                kind=kind,
                name=name,
                settings=dict(data["settings"]),
                updated_at=datetime.fromisoformat(data["updated_at"]),
            )
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}", path) from e
        except (ValueError, KeyError, TypeError) as e:
            raise Corrupt(f"Profile file {path} is malformed: {e}") from e

    def write(
        self,
        kind: AssistantKind,
        name: str,
        payload: dict[str, Any],
        updated_at: datetime | None = None,
    ) -> Profile:
        """Create or overwrite a profile."""
        if not isinstance(payload, dict):
            raise ConfigError("Profile settings must be a JSON object.")
        profile = Profile(
            kind=kind,
            name=validate_name(name),
            settings=dict(payload),
            updated_at=updated_at or utcnow(),
        )
        data = json.dumps(profile.to_dict(), indent=2, sort_keys=True) + "\n"
        atomic_write(self._profile_path(kind, name), data.encode("utf-8"))
        logger.debug("Wrote profile %s/%s", kind.value, name)
        return profile

    def delete(self, kind: AssistantKind, name: str) -> None:
        path = self._profile_path(kind, name)
        if not path.is_file():
            raise NotFound(f"Profile '{name}' not found for {get_assistant(kind).display_name}.")
        if self.current(kind) == name:
            raise ProfileActive(
                f"Profile '{name}' is active for {get_assistant(kind).display_name}; "
                "switch to another profile first."
            )
        try:
            path.unlink()
        except OSError as e:
            raise StoreIOError(f"Failed to delete {path}: {e}", path) from e

    # -- active selection -------------------------------------------------

    def selection(self) -> dict[AssistantKind, str | None]:
        selection: dict[AssistantKind, str | None] = {kind: None for kind in AssistantKind}
        if not self.active_file.exists():
            return selection
        try:
            data = json.loads(self.active_file.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreIOError(f"Failed to read {self.active_file}: {e}", self.active_file) from e
        except ValueError as e:
            raise Corrupt(f"Active selection file {self.active_file} is malformed: {e}") from e
        for kind in AssistantKind:
            value = data.get(kind.value)
            selection[kind] = value if isinstance(value, str) else None
        return selection

    def current(self, kind: AssistantKind) -> str | None:
        return self.selection()[kind]

    def save_selection(self, selection: dict[AssistantKind, str | None]) -> None:
        data = {kind.value: selection.get(kind) for kind in AssistantKind}
        atomic_write(
            self.active_file,
            (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8"),
        )

    # -- live config ------------------------------------------------------

    def render(self, kind: AssistantKind, name: str) -> dict[Path, bytes]:
        """Return the live files that activating ``name`` would write."""
        profile = self.read(kind, name)
        spec = get_assistant(kind)
        rendered = spec.render(profile.name, profile.settings, self.home)
        return {self.home / rel: data for rel, data in rendered.items()}

    def capture_live(self, kinds: list[AssistantKind] | None = None) -> dict[Path, bytes | None]:
        """Snapshot the current bytes of live files (None if absent)."""
        captured: dict[Path, bytes | None] = {}
        for kind in kinds or list(AssistantKind):
            for path in get_assistant(kind).live_paths(self.home):
                try:
                    captured[path] = path.read_bytes() if path.exists() else None
                except OSError as e:
                    raise StoreIOError(f"Failed to read {path}: {e}", path) from e
        return captured

    def restore_live(self, captured: dict[Path, bytes | None]) -> None:
        """Put live files back to a snapshot taken by capture_live."""
        for path, data in captured.items():
            try:
                if data is None:
                    if path.exists():
                        path.unlink()
                else:
                    atomic_write(path, data)
            except (OSError, CaSwitchError) as e:
                logger.error("Could not roll back %s: %s", path, e)

    def activate(self, kind: AssistantKind, name: str) -> None:
        """Render ``name`` into the live config files and mark it active.

        On any failure, including an interrupt, the live files are rolled
        back and the selection is left untouched.
        """
        files = self.render(kind, name)
        selection = self.selection()
        previous = self.capture_live([kind])

        try:
            for path, data in files.items():
                atomic_write(path, data)
            selection[kind] = name
            self.save_selection(selection)
        except BaseException:
            logger.warning("Activation of %s/%s failed, rolling back live files", kind.value, name)
            self.restore_live(previous)
            raise

        logger.info("Activated %s profile '%s'", kind.value, name)
