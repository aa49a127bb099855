"""Tests for the CLI interface."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from click.testing import CliRunner

from ca_switch.cli import cli, mask, parse_assignments
from ca_switch.detect import Detector
from ca_switch.errors import RemoteUnavailable


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def dirs(tmp_path):
    state = tmp_path / "state"
    home = tmp_path / "home"
    home.mkdir()
    return state, home


@pytest.fixture
def invoke(runner, dirs):
    """Run the CLI against temp state and live-home directories."""
    state, home = dirs

    def run(*args, input=None):
        return runner.invoke(
            cli,
            ["--home", str(state), "--live-home", str(home), *args],
            input=input,
        )

    return run


@pytest.fixture
def local_remote(dirs, tmp_path):
    """Configure a plain-directory remote."""
    state, _ = dirs
    state.mkdir(parents=True, exist_ok=True)
    remote_dir = tmp_path / "remote"
    (state / "config.json").write_text(
        json.dumps({"version": 1, "remote": {"type": "local", "path": str(remote_dir)}})
    )
    return remote_dir


def status_row(output, display_name):
    """The status line for one assistant; output also mentions temp paths."""
    rows = [line for line in output.splitlines() if line.strip().startswith(display_name + " ")]
    assert len(rows) == 1, output
    return rows[0]


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestHelpers:
    def test_parse_assignments_keeps_json_types(self):
        assert parse_assignments(("model=gpt", "n=3", "flag=true", "url=https://x/v1")) == {
            "model": "gpt",
            "n": 3,
            "flag": True,
            "url": "https://x/v1",
        }

    def test_mask_secrets_only(self):
        assert mask("api_key", "sk-123456") == "sk-******56"
        assert mask("model", "gpt-5") == "gpt-5"


class TestProfiles:
    def test_add_and_use(self, invoke, dirs):
        _, home = dirs
        result = invoke("codex", "add", "work", "-s", "model=gpt", "-s", "api_key=sk-123456", "--use")
        assert result.exit_code == 0, result.output
        assert "Switched Codex to 'work'" in result.output
        assert (home / ".codex" / "config.toml").exists()
        assert json.loads((home / ".codex" / "auth.json").read_text()) == {"OPENAI_API_KEY": "sk-123456"}

        result = invoke("codex", "current")
        assert result.output.strip() == "work"

    def test_list_marks_active(self, invoke):
        invoke("gemini", "add", "a", "-s", "api_key=k1")
        invoke("gemini", "add", "b", "-s", "api_key=k2", "--use")
        result = invoke("gemini", "list")
        assert result.exit_code == 0
        assert "a\n" in result.output
        assert "b *" in result.output

    def test_show_masks_secrets(self, invoke):
        invoke("codex", "add", "work", "-s", "api_key=sk-123456")
        result = invoke("codex", "show", "work")
        assert "api_key = sk-******56" in result.output
        result = invoke("codex", "show", "work", "--reveal")
        assert "api_key = sk-123456" in result.output

    def test_add_from_file(self, invoke, tmp_path):
        source = tmp_path / "profile.json"
        source.write_text(json.dumps({"model": "opus", "ANTHROPIC_AUTH_TOKEN": "t"}))
        result = invoke("api", "add", "relay", "--from-file", str(source), "-s", "model=sonnet")
        assert result.exit_code == 0, result.output
        result = invoke("api", "show", "relay", "--reveal")
        assert "model = sonnet" in result.output

    def test_add_existing_conflicts(self, invoke):
        invoke("codex", "add", "work")
        result = invoke("codex", "add", "work", "-s", "model=x")
        assert result.exit_code == 2
        assert "already exists" in result.output
        assert invoke("codex", "add", "work", "-s", "model=x", "--force").exit_code == 0

    def test_bad_assignment(self, invoke):
        result = invoke("codex", "add", "work", "-s", "novalue")
        assert result.exit_code == 2
        assert "KEY=VALUE" in result.output

    def test_invalid_name(self, invoke):
        result = invoke("codex", "add", "../evil")
        assert result.exit_code == 2
        assert "Invalid profile name" in result.output

    def test_use_missing_profile(self, invoke):
        invoke("codex", "add", "work", "--use")
        result = invoke("codex", "use", "ghost")
        assert result.exit_code == 2
        assert "not found" in result.output
        assert invoke("codex", "current").output.strip() == "work"

    def test_current_without_active(self, invoke):
        result = invoke("opencode", "current")
        assert result.exit_code == 2

    def test_edit_active_profile_rewrites_live_config(self, invoke, dirs):
        _, home = dirs
        invoke("codex", "add", "work", "-s", "model=gpt", "-s", "api_key=k", "--use")
        result = invoke("codex", "edit", "work", "-s", "model=o3", "--unset", "api_key")
        assert result.exit_code == 0, result.output
        assert 'model = "o3"' in (home / ".codex" / "config.toml").read_text()
        assert json.loads((home / ".codex" / "auth.json").read_text()) == {"OPENAI_API_KEY": None}

    def test_remove(self, invoke):
        invoke("codex", "add", "a", "--use")
        invoke("codex", "add", "b")
        assert invoke("codex", "remove", "a").exit_code == 2
        result = invoke("codex", "remove", "b")
        assert result.exit_code == 0
        assert "b" not in invoke("codex", "list").output.split()

    def test_add_from_file_must_be_object(self, invoke, tmp_path):
        source = tmp_path / "profile.json"
        source.write_text("[1, 2]")
        result = invoke("codex", "add", "work", "--from-file", str(source))
        assert result.exit_code == 2
        assert "must contain a JSON object" in result.output
        assert "work" not in invoke("codex", "list").output.split()

    def test_assistant_menu_switches(self, invoke):
        invoke("codex", "add", "home")
        invoke("codex", "add", "work", "--use")
        result = invoke("codex", input="1\n1\n")
        assert result.exit_code == 0, result.output
        assert invoke("codex", "current").output.strip() == "home"

    def test_assistant_menu_adds(self, invoke):
        result = invoke("codex", input="2\nwork\nmodel=gpt-5\nbroken\napi_key=sk-1\n\ny\n")
        assert result.exit_code == 0, result.output
        assert "Expected KEY=VALUE" in result.output
        assert invoke("codex", "current").output.strip() == "work"
        shown = invoke("codex", "show", "work", "--reveal").output
        assert "model = gpt-5" in shown
        assert "api_key = sk-1" in shown

    def test_assistant_menu_edits(self, invoke):
        invoke("codex", "add", "work", "-s", "model=a", "-s", "api_key=k")
        result = invoke("codex", input="3\n1\nmodel=b\n-api_key\n\n")
        assert result.exit_code == 0, result.output
        shown = invoke("codex", "show", "work", "--reveal").output
        assert "model = b" in shown
        assert "api_key" not in shown

    def test_assistant_menu_deletes_after_confirm(self, invoke):
        invoke("codex", "add", "home")
        invoke("codex", "add", "work", "--use")
        invoke("codex", input="4\n1\nn\n")
        assert "home" in invoke("codex", "list").output.split()
        result = invoke("codex", input="4\n1\ny\n")
        assert result.exit_code == 0, result.output
        assert "home" not in invoke("codex", "list").output.split()

    def test_assistant_menu_without_profiles(self, invoke):
        result = invoke("gemini", input="1\n")
        assert result.exit_code == 0
        assert "No profiles yet" in result.output

    def test_main_menu_back(self, invoke):
        result = invoke(input="0\n")
        assert result.exit_code == 0
        assert "Backup & restore" in result.output


class TestOpenCodeExport:
    def test_export(self, invoke, tmp_path):
        invoke("opencode", "add", "oc", "-s", "model=anthropic/claude", "--use")
        project = tmp_path / "project"
        result = invoke("opencode", "export", str(project))
        assert result.exit_code == 0, result.output
        data = json.loads((project / ".opencode" / "opencode.json").read_text())
        assert data["model"] == "anthropic/claude"

    def test_export_without_active(self, invoke, tmp_path):
        assert invoke("opencode", "export", str(tmp_path)).exit_code == 2


def openai_api(request):
    if request.headers.get("Authorization") != "Bearer sk-test":
        return httpx.Response(401)
    if request.url.path == "/v1/models":
        return httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "o3"}]})
    return httpx.Response(200, json={"usage": {"completion_tokens": 5}})


@pytest.fixture
def fake_api():
    with patch(
        "ca_switch.cli.create_detector",
        side_effect=lambda: Detector(transport=httpx.MockTransport(openai_api)),
    ) as factory:
        yield factory


class TestOpenCodeDetect:
    def test_site_of_active_profile(self, invoke, fake_api):
        invoke("opencode", "add", "oc", "-s", "base_url=https://api.test", "-s", "api_key=sk-test", "--use")
        result = invoke("opencode", "detect")
        assert result.exit_code == 0, result.output
        assert "Base URL: https://api.test" in result.output
        assert "1. gpt-4o" in result.output
        assert "2. o3" in result.output

    def test_model_from_provider_options(self, invoke, fake_api, tmp_path):
        source = tmp_path / "oc.json"
        source.write_text(
            json.dumps(
                {"provider": {"relay": {"options": {"baseURL": "https://relay.test/v1", "apiKey": "sk-test"}}}}
            )
        )
        invoke("opencode", "add", "oc", "--from-file", str(source))
        result = invoke("opencode", "detect", "oc", "--model", "o3", "--stream")
        assert result.exit_code == 0, result.output
        assert "OpenCode: oc (relay)" in result.output
        assert "Model: o3" in result.output
        assert "Streaming: yes" in result.output

    def test_rejected_key_is_remote_error(self, invoke, fake_api):
        invoke("opencode", "add", "oc", "-s", "base_url=https://api.test", "-s", "api_key=bad")
        result = invoke("opencode", "detect", "oc")
        assert result.exit_code == 4
        assert "API key rejected" in result.output

    def test_without_active_profile(self, invoke, fake_api):
        result = invoke("opencode", "detect")
        assert result.exit_code == 2
        fake_api.assert_not_called()

    def test_profile_without_endpoint(self, invoke, fake_api):
        invoke("opencode", "add", "oc", "-s", "model=anthropic/claude")
        result = invoke("opencode", "detect", "oc")
        assert result.exit_code == 2
        assert "base_url" in result.output

    def test_menu_detects_site(self, invoke, fake_api):
        invoke("opencode", "add", "oc", "-s", "base_url=https://api.test", "-s", "api_key=sk-test")
        result = invoke("opencode", input="5\n1\n")
        assert result.exit_code == 0, result.output
        assert "Models: 2" in result.output


class TestBackup:
    def test_create_list_restore(self, invoke, dirs):
        state, _ = dirs
        invoke("codex", "add", "work", "--use")
        result = invoke("backup", "create")
        assert result.exit_code == 0, result.output
        assert "Backed up 1 profile(s)" in result.output
        name = next((state / "backups").iterdir()).name

        result = invoke("backup", "list")
        assert name in result.output

        invoke("codex", "add", "extra")
        result = invoke("backup", "restore", "latest", "-y")
        assert result.exit_code == 0, result.output
        assert f"Restored {name}" in result.output
        assert "extra" not in invoke("codex", "list").output

    def test_restore_asks_first(self, invoke):
        invoke("codex", "add", "work")
        invoke("backup", "create")
        invoke("codex", "add", "extra")
        result = invoke("backup", "restore", input="n\n")
        assert result.exit_code == 1
        assert "extra" in invoke("codex", "list").output

    def test_restore_corrupt_backup(self, invoke, dirs):
        state, _ = dirs
        invoke("codex", "add", "work")
        invoke("backup", "create")
        path = next((state / "backups").iterdir())
        path.write_bytes(path.read_bytes().replace(b"work", b"wark"))
        result = invoke("backup", "restore", path.name, "-y")
        assert result.exit_code == 3
        assert "checksum mismatch" in result.output

    def test_restore_missing(self, invoke):
        result = invoke("backup", "restore", "ca-switch_20200101_000000", "-y")
        assert result.exit_code == 2

    def test_delete(self, invoke, dirs):
        state, _ = dirs
        invoke("backup", "create")
        name = next((state / "backups").iterdir()).name
        assert invoke("backup", "delete", name).exit_code == 0
        assert list((state / "backups").iterdir()) == []

    def test_remote_without_config(self, invoke):
        result = invoke("backup", "create", "--remote")
        assert result.exit_code == 2
        assert "No remote configured" in result.output

    def test_push_and_list_remote(self, invoke, local_remote):
        invoke("codex", "add", "work", "--use")
        result = invoke("backup", "create", "--remote")
        assert result.exit_code == 0, result.output
        assert "Pushed" in result.output
        name = next(local_remote.iterdir()).name

        result = invoke("backup", "list", "--remote")
        assert name in result.output

    def test_diff(self, invoke):
        invoke("codex", "add", "work")
        invoke("backup", "create")
        assert "match the backup" in invoke("backup", "diff").output
        invoke("gemini", "add", "g")
        result = invoke("backup", "diff")
        assert "gemini/g (local only)" in result.output

    def test_remote_unavailable_exit_code(self, invoke, local_remote):
        remote = MagicMock()
        remote.display_name = "webdav dav.example.com/ca-switch-backups"
        remote.exists.side_effect = RemoteUnavailable("down")
        with patch("ca_switch.cli.create_remote", return_value=remote):
            result = invoke("backup", "create", "--remote")
        assert result.exit_code == 4
        assert "down" in result.output


class TestStatus:
    def test_without_remote(self, invoke):
        invoke("codex", "add", "work", "--use")
        result = invoke("status")
        assert result.exit_code == 0
        assert "work" in result.output
        assert "no remote configured" in result.output

    def test_in_sync_and_stale(self, invoke, local_remote):
        invoke("codex", "add", "a", "--use")
        invoke("codex", "add", "b")
        invoke("backup", "create", "--remote")
        result = invoke("status")
        assert "in-sync]" in status_row(result.output, "Codex")
        assert "stale]" not in result.output

        invoke("codex", "use", "b")
        result = invoke("status")
        assert "stale]" in status_row(result.output, "Codex")
        assert "ca-switch backup diff latest --remote" in result.output


class TestWebDAV:
    def test_show_without_remote(self, invoke):
        result = invoke("webdav", "show")
        assert result.exit_code == 0
        assert "No remote configured" in result.output

    def test_setup_without_test(self, invoke, dirs):
        state, _ = dirs
        result = invoke(
            "webdav", "setup",
            "--url", "https://dav.example.com/dav/",
            "--username", "alice",
            "--password", "secret123",
            "--no-test",
        )
        assert result.exit_code == 0, result.output
        saved = json.loads((state / "config.json").read_text())
        assert saved["remote"]["url"] == "https://dav.example.com/dav/"
        assert saved["remote"]["password"] == "secret123"

        result = invoke("webdav", "show")
        assert "Password: sec******23" in result.output
        assert "secret123" not in result.output

    def test_setup_without_storing_password(self, invoke, dirs):
        state, _ = dirs
        invoke(
            "webdav", "setup",
            "--url", "https://dav.example.com/dav/",
            "--username", "alice",
            "--password", "secret123",
            "--no-store-password",
            "--no-test",
        )
        saved = json.loads((state / "config.json").read_text())
        assert "password" not in saved["remote"]

    def test_setup_rejects_bad_url(self, invoke):
        result = invoke("webdav", "setup", "--url", "ftp://x", "--username", "a", "--password", "b")
        assert result.exit_code == 2

    def test_setup_failed_connection_saves_nothing(self, invoke, dirs):
        state, _ = dirs
        remote = MagicMock()
        remote.is_available.return_value = False
        with patch("ca_switch.cli.create_remote", return_value=remote):
            result = invoke(
                "webdav", "setup",
                "--url", "https://dav.example.com/dav/",
                "--username", "alice",
                "--password", "wrong",
            )
        assert result.exit_code == 4
        assert not (state / "config.json").exists()
        remote.close.assert_called_once()

    def test_test_command(self, invoke, local_remote):
        result = invoke("webdav", "test")
        assert result.exit_code == 0, result.output
        assert "Connection OK" in result.output
