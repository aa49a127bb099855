"""Built-in table of supported AI coding assistants and their live config files."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ca_switch.errors import ConfigError


class AssistantKind(str, Enum):
    CLAUDE_CODE = "claude"
    CODEX = "codex"
    GEMINI_CLI = "gemini"
    OPENCODE = "opencode"


# Keys the Claude renderer owns; cleared before merging a profile so nothing
# from the previous profile survives a switch.
CLAUDE_MANAGED_KEYS = (
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_MODEL",
    "ANTHROPIC_SMALL_FAST_MODEL",
    "ANTHROPIC_VERTEX_BASE_URL",
    "ANTHROPIC_VERTEX_PROJECT_ID",
    "CLAUDE_CODE_USE_VERTEX",
    "CLAUDE_CODE_SKIP_VERTEX_AUTH",
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC",
)

GEMINI_ENV_VARS = (
    ("base_url", "GOOGLE_GEMINI_BASE_URL"),
    ("api_key", "GEMINI_API_KEY"),
    ("model", "GEMINI_MODEL"),
)

OPENCODE_SCHEMA = "https://opencode.ai/config.json"

_BARE_TOML_KEY = re.compile(r"^[A-Za-z0-9_-]+$")

Renderer = Callable[[str, dict, Path], dict[str, bytes]]


@dataclass(frozen=True)
class AssistantSpec:
    """One row of the assistant table."""

    kind: AssistantKind
    command: str
    display_name: str
    live_files: tuple[str, ...]
    render: Renderer

    def live_paths(self, home: Path) -> list[Path]:
        return [home / rel for rel in self.live_files]


def _dump_json(data: Any) -> bytes:
    return (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _render_claude(name: str, settings: dict, home: Path) -> dict[str, bytes]:
    """Merge the profile into the ``env`` block of ~/.claude/settings.json.

    Unrelated user settings are preserved; an unreadable file starts over
    from an empty object.
    """
    rel = ".claude/settings.json"
    existing: dict[str, Any] = {}
    path = home / rel
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                existing = loaded
        except (UnicodeDecodeError, ValueError):
            existing = {}

    for key in CLAUDE_MANAGED_KEYS:
        existing.pop(key, None)

    env = existing.get("env")
    if not isinstance(env, dict):
        env = {}
    for key in CLAUDE_MANAGED_KEYS:
        env.pop(key, None)
    for key, value in settings.items():
        env[key] = value if isinstance(value, str) else json.dumps(value)
    existing["env"] = env

    return {rel: _dump_json(existing)}


def _toml_key(key: str) -> str:
    return key if _BARE_TOML_KEY.match(key) else json.dumps(key)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        value = str(value)
    return json.dumps(value, ensure_ascii=False)


def _render_codex(name: str, settings: dict, home: Path) -> dict[str, bytes]:
    provider = settings.get("model_provider") or name

    lines = [f"model_provider = {_toml_value(provider)}"]
    for key in (
        "model",
        "model_reasoning_effort",
        "network_access",
        "disable_response_storage",
    ):
        if settings.get(key) is not None:
            lines.append(f"{key} = {_toml_value(settings[key])}")
    lines.append("")

    lines.append(f"[model_providers.{_toml_key(provider)}]")
    lines.append(f"name = {_toml_value(provider)}")
    for key in ("base_url", "wire_api"):
        if settings.get(key) is not None:
            lines.append(f"{key} = {_toml_value(settings[key])}")
    lines.append("requires_openai_auth = true")

    return {
        ".codex/config.toml": ("\n".join(lines) + "\n").encode("utf-8"),
        ".codex/auth.json": _dump_json({"OPENAI_API_KEY": settings.get("api_key")}),
    }


def _render_gemini(name: str, settings: dict, home: Path) -> dict[str, bytes]:
    lines = []
    for key, var in GEMINI_ENV_VARS:
        value = settings.get(key)
        if not value:
            continue
        value = str(value)
        # .env has one assignment per line
        if "\n" in value or "\r" in value:
            raise ConfigError(f"Gemini setting '{key}' of profile '{name}' must be a single line.")
        lines.append(f"{var}={value}")
    return {".gemini/.env": ("\n".join(lines) + "\n").encode("utf-8")}


def _render_opencode(name: str, settings: dict, home: Path) -> dict[str, bytes]:
    data = {"$schema": OPENCODE_SCHEMA}
    data.update(settings)
    return {".opencode/opencode.json": _dump_json(data)}


ASSISTANTS: dict[AssistantKind, AssistantSpec] = {
    AssistantKind.CLAUDE_CODE: AssistantSpec(
        kind=AssistantKind.CLAUDE_CODE,
        command="api",
        display_name="Claude Code",
        live_files=(".claude/settings.json",),
        render=_render_claude,
    ),
    AssistantKind.CODEX: AssistantSpec(
        kind=AssistantKind.CODEX,
        command="codex",
        display_name="Codex",
        live_files=(".codex/config.toml", ".codex/auth.json"),
        render=_render_codex,
    ),
    AssistantKind.GEMINI_CLI: AssistantSpec(
        kind=AssistantKind.GEMINI_CLI,
        command="gemini",
        display_name="Gemini CLI",
        live_files=(".gemini/.env",),
        render=_render_gemini,
    ),
    AssistantKind.OPENCODE: AssistantSpec(
        kind=AssistantKind.OPENCODE,
        command="opencode",
        display_name="OpenCode",
        live_files=(".opencode/opencode.json",),
        render=_render_opencode,
    ),
}


def get_assistant(kind: AssistantKind) -> AssistantSpec:
    return ASSISTANTS[kind]


def kind_for_command(command: str) -> AssistantKind | None:
    """Map a CLI command name (``api``, ``codex``...) to its kind, or None."""
    for spec in ASSISTANTS.values():
        if spec.command == command:
            return spec.kind
    return None
