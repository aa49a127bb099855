"""Shared test fixtures."""

import pytest

from ca_switch.assistants import AssistantKind
from ca_switch.backup import BackupManager
from ca_switch.config import AppConfig, RemoteConfig, RetryConfig
from ca_switch.controller import SwitchController
from ca_switch.remote.local import LocalDirRemote
from ca_switch.store import ProfileStore
from ca_switch.sync import SyncClient


@pytest.fixture
def live_home(tmp_path):
    """A fake user home where live assistant configs get rendered."""
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def store(tmp_path, live_home):
    return ProfileStore(tmp_path / "state" / "store", live_home)


@pytest.fixture
def backups(tmp_path, store):
    return BackupManager(store, tmp_path / "state" / "backups")


@pytest.fixture
def populated_store(store):
    """A store with a few profiles across assistants, some active."""
    store.write(AssistantKind.CODEX, "work", {"model": "gpt", "api_key": "sk-work"})
    store.write(AssistantKind.CODEX, "home", {"model": "o3", "base_url": "https://x.test/v1"})
    store.write(
        AssistantKind.CLAUDE_CODE,
        "relay",
        {"ANTHROPIC_AUTH_TOKEN": "tok-1", "ANTHROPIC_BASE_URL": "https://relay.test"},
    )
    store.write(AssistantKind.GEMINI_CLI, "default", {"api_key": "g-key", "model": "gemini-pro"})
    store.activate(AssistantKind.CODEX, "work")
    store.activate(AssistantKind.CLAUDE_CODE, "relay")
    return store


@pytest.fixture
def remote(tmp_path):
    return LocalDirRemote(tmp_path / "remote")


@pytest.fixture
def sync_client(remote):
    return SyncClient(remote)


@pytest.fixture
def controller(populated_store, backups, sync_client):
    return SwitchController(populated_store, backups, sync=sync_client)


@pytest.fixture
def sample_config():
    """Return a sample AppConfig object."""
    return AppConfig(
        remote=RemoteConfig(
            type="webdav",
            url="https://dav.example.com/dav/",
            username="alice",
            password="s3cret",
        ),
        retry=RetryConfig(attempts=3, base_delay=0.5, max_delay=4.0),
    )
