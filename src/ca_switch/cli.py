"""CLI interface for ca-switch."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from ca_switch import __version__
from ca_switch.assistants import ASSISTANTS, AssistantKind, get_assistant
from ca_switch.backup import BackupManager
from ca_switch.config import (
    DEFAULT_REMOTE_DIR,
    ENV_HOME,
    AppConfig,
    AppPaths,
    RemoteConfig,
    default_paths,
    load_config,
    save_config,
)
from ca_switch.controller import LATEST, SwitchController, SyncState
from ca_switch.detect import Detector, default_model, endpoint_for, format_report
from ca_switch.errors import CaSwitchError, ConfigError, Conflict, NotFound, RemoteUnavailable
from ca_switch.remote import RemoteStore, create_remote
from ca_switch.store import ProfileStore
from ca_switch.sync import SyncClient

logger = logging.getLogger(__name__)

SECRET_HINTS = ("key", "token", "secret", "password")

STATE_COLORS = {
    SyncState.IN_SYNC: "green",
    SyncState.STALE: "yellow",
    SyncState.UNKNOWN: "bright_black",
}


def styled(text: str, **kwargs) -> str:
    return click.style(text, **kwargs)


def info(msg: str) -> None:
    click.echo(f"  {msg}")


def success(msg: str) -> None:
    click.echo(f"  {styled(msg, fg='green')}")


def warn(msg: str) -> None:
    click.echo(f"  {styled(msg, fg='yellow')}")


def heading(msg: str) -> None:
    click.echo(f"\n  {styled(msg, bold=True)}")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )


class CommandError(click.ClickException):
    """Carries a CaSwitchError out of click with its category exit code."""

    def __init__(self, err: CaSwitchError):
        super().__init__(err.message)
        self.exit_code = err.exit_code


class CaSwitchGroup(click.Group):
    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except CaSwitchError as e:
            logger.debug("Command failed", exc_info=True)
            raise CommandError(e) from e


class App:
    """Lazily wires paths, config and the core components for one invocation."""

    def __init__(self, paths: AppPaths, verbose: bool = False):
        self.paths = paths
        self.verbose = verbose
        self._config: AppConfig | None = None
        self._remote: RemoteStore | None = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = load_config(self.paths.config_file)
        return self._config

    @property
    def store(self) -> ProfileStore:
        return ProfileStore(self.paths.store_dir, self.paths.home)

    @property
    def backups(self) -> BackupManager:
        return BackupManager(self.store, self.paths.backup_dir)

    def remote(self) -> RemoteStore | None:
        if self._remote is None and self.config.remote is not None:
            self._remote = create_remote(self.config.remote.to_adapter_dict())
        return self._remote

    @property
    def controller(self) -> SwitchController:
        remote = self.remote()
        return SwitchController(
            self.store,
            self.backups,
            sync=SyncClient(remote) if remote is not None else None,
            retry=self.config.retry,
        )

    def close(self) -> None:
        if self._remote is not None:
            self._remote.close()


def parse_assignments(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Parse KEY=VALUE pairs; values that are valid JSON keep their type."""
    settings: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--set")
        try:
            settings[key] = json.loads(raw)
        except ValueError:
            settings[key] = raw
    return settings


def create_detector() -> Detector:
    return Detector()


def mask(key: str, value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value)
    if any(hint in key.lower() for hint in SECRET_HINTS) and len(text) > 4:
        return f"{text[:3]}{'*' * 6}{text[-2:]}"
    return text


@click.group(cls=CaSwitchGroup, invoke_without_command=True)
@click.version_option(version=__version__, prog_name="ca-switch")
@click.option(
    "--home",
    "root",
    envvar=ENV_HOME,
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (default ~/.ca-switch).",
)
@click.option(
    "--live-home",
    envvar="CA_SWITCH_LIVE_HOME",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    hidden=True,
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.pass_context
def cli(ctx: click.Context, root: Path | None, live_home: Path | None, verbose: bool) -> None:
    """Switch AI coding assistant profiles, back them up and sync them over WebDAV."""
    configure_logging(verbose)
    app = App(default_paths(root=root, home=live_home), verbose=verbose)
    ctx.obj = app
    ctx.call_on_close(app.close)

    if ctx.invoked_subcommand is None:
        main_menu(app)


# -- interactive menus --------------------------------------------------------


def _choose(options: list[str], prompt: str = "Choice") -> int | None:
    """Show a numbered list; return the 0-based pick or None for 'back'."""
    for i, label in enumerate(options, 1):
        info(f"  {i}. {label}")
    info("  0. Back")
    choice = click.prompt(f"  {prompt}", type=click.IntRange(0, len(options)), default=0)
    return None if choice == 0 else choice - 1


def main_menu(app: App) -> None:
    click.echo()
    info(styled(f"ca-switch {__version__}", bold=True))
    kinds = list(AssistantKind)
    options = [f"{get_assistant(k).display_name} profiles" for k in kinds]
    options += ["Backup & restore", "Status"]
    choice = _choose(options)
    if choice is None:
        return
    if choice < len(kinds):
        assistant_menu(app, kinds[choice])
    elif choice == len(kinds):
        backup_menu(app)
    else:
        show_status(app)


def assistant_menu(app: App, kind: AssistantKind) -> None:
    spec = get_assistant(kind)
    heading(f"{spec.display_name} profiles")
    options = ["Switch profile", "Add profile", "Edit profile", "Delete profile"]
    if kind is AssistantKind.OPENCODE:
        options += ["Detect site", "Detect model"]
    choice = _choose(options)
    if choice is None:
        return

    if choice == 1:
        name = click.prompt("  Profile name")
        settings = prompt_settings({})
        use_now = click.confirm("  Switch to it now?", default=False)
        do_add(app, kind, name, settings, use_now=use_now)
        return

    name = _pick_profile(app, kind)
    if name is None:
        return
    if choice == 0:
        do_switch(app, kind, name)
    elif choice == 2:
        do_edit(app, kind, name, prompt_settings(app.store.read(kind, name).settings))
    elif choice == 3:
        if click.confirm(f"  Delete profile '{name}'?", default=False):
            do_remove(app, kind, name)
    elif choice == 4:
        do_detect(app, name)
    else:
        settings = app.store.read(kind, name).settings
        model = click.prompt("  Model", default=default_model(settings, endpoint_for(settings)))
        do_detect(app, name, model=model, stream=click.confirm("  Also check streaming?", default=False))


def _pick_profile(app: App, kind: AssistantKind) -> str | None:
    spec = get_assistant(kind)
    store = app.store
    names = store.list(kind)
    if not names:
        warn(f"No profiles yet. Try: ca-switch {spec.command} add NAME -s KEY=VALUE")
        return None
    current = store.current(kind)
    labels = [f"{n} {styled('(active)', fg='green')}" if n == current else n for n in names]
    choice = _choose(labels, prompt="Profile")
    return None if choice is None else names[choice]


def prompt_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Edit settings line by line: KEY=VALUE sets, -KEY removes, empty line ends."""
    settings = dict(settings)
    for key, value in sorted(settings.items()):
        info(f"  {key} = {mask(key, value)}")
    info("Enter KEY=VALUE to set, -KEY to remove, an empty line to finish.")
    while True:
        line = click.prompt("  Setting", default="", show_default=False).strip()
        if not line:
            return settings
        if line.startswith("-"):
            settings.pop(line[1:], None)
            continue
        try:
            settings.update(parse_assignments((line,)))
        except click.BadParameter as e:
            warn(e.format_message())


def backup_menu(app: App) -> None:
    heading("Backup & restore")
    options = [
        "Create local backup",
        "Create backup and push to remote",
        "Restore latest local backup",
        "Restore latest remote backup",
        "List backups",
    ]
    choice = _choose(options)
    if choice is None:
        return
    if choice in (0, 1):
        do_backup(app, remote=choice == 1, overwrite=False)
    elif choice in (2, 3):
        remote = choice == 3
        click.confirm("  Replace ALL profiles with the backup?", abort=True)
        do_restore(app, LATEST, remote=remote)
    else:
        show_backups(app, remote=False)
        if app.config.remote is not None:
            show_backups(app, remote=True)


# -- shared actions -------------------------------------------------------------


def do_switch(app: App, kind: AssistantKind, name: str) -> None:
    spec = get_assistant(kind)
    outcome = app.controller.switch(kind, name)
    previous = outcome.details.get("previous")
    if previous == name:
        info(f"{spec.display_name} already on '{name}'; live config refreshed.")
    else:
        success(f"Switched {spec.display_name} to '{name}'.")
    for path in spec.live_paths(app.paths.home):
        info(f"  Wrote {styled(str(path), fg='cyan')}")


def do_add(
    app: App,
    kind: AssistantKind,
    name: str,
    settings: dict[str, Any],
    force: bool = False,
    use_now: bool = False,
) -> None:
    spec = get_assistant(kind)
    store = app.store
    if store.exists(kind, name) and not force:
        raise Conflict(f"Profile '{name}' already exists; use --force to overwrite.")
    store.write(kind, name, settings)
    success(f"Saved {spec.display_name} profile '{name}'.")
    if use_now or store.current(kind) == name:
        do_switch(app, kind, name)


def do_edit(app: App, kind: AssistantKind, name: str, settings: dict[str, Any]) -> None:
    store = app.store
    store.write(kind, name, settings)
    success(f"Updated {get_assistant(kind).display_name} profile '{name}'.")
    if store.current(kind) == name:
        do_switch(app, kind, name)


def do_remove(app: App, kind: AssistantKind, name: str) -> None:
    app.store.delete(kind, name)
    success(f"Removed {get_assistant(kind).display_name} profile '{name}'.")


def do_detect(
    app: App,
    name: str | None,
    provider: str | None = None,
    model: str | None = None,
    stream: bool = False,
) -> None:
    store = app.store
    name = name or store.current(AssistantKind.OPENCODE)
    if name is None:
        raise NotFound("No OpenCode profile is active; name the profile to check.")
    endpoint = endpoint_for(store.read(AssistantKind.OPENCODE, name).settings, provider)
    heading(f"OpenCode: {name}" + (f" ({endpoint.provider})" if endpoint.provider else ""))
    info(f"Base URL: {endpoint.base_url}")

    detector = create_detector()
    try:
        if model:
            report = detector.detect_model(endpoint.base_url, endpoint.api_key, model, stream=stream)
        else:
            report = detector.detect_site(endpoint.base_url, endpoint.api_key)
    finally:
        detector.close()

    success("Endpoint is available.")
    for line in format_report(report):
        info(line)
    click.echo()


def do_backup(app: App, remote: bool, overwrite: bool) -> None:
    outcome = app.controller.backup(remote=remote, overwrite=overwrite)
    archive = outcome.details["archive"]
    success(f"Backed up {archive.profile_count()} profile(s) to {outcome.details['path']}")
    info(f"  Checksum: sha256:{archive.checksum}")
    record = outcome.details.get("record")
    if record is not None:
        success(f"Pushed {record.name} to {app.remote().display_name}")


def do_restore(app: App, source: str, remote: bool) -> None:
    outcome = app.controller.restore(source, remote=remote)
    archive = outcome.details["archive"]
    success(
        f"Restored {archive.name} ({archive.profile_count()} profile(s), "
        f"taken on {archive.hostname or 'unknown host'})."
    )
    for kind_value, name in sorted(archive.active.items()):
        if name:
            info(f"  {get_assistant(AssistantKind(kind_value)).display_name}: {name}")


def show_backups(app: App, remote: bool) -> None:
    if remote:
        sync = SyncClient(_require_remote(app))
        heading(f"Remote backups ({sync.display_name})")
        records = app.controller.remote_call(sync.list_remote)
        if not records:
            info("  (none)")
        for r in records:
            info(f"  {r.name}  {r.size} bytes")
    else:
        heading(f"Local backups ({app.paths.backup_dir})")
        infos = app.backups.list_local()
        if not infos:
            info("  (none)")
        for i in infos:
            checksum = (i.checksum or "?")[:12]
            info(f"  {i.name}  {i.size} bytes  sha256:{checksum}")


def show_status(app: App) -> None:
    report = app.controller.status()
    heading("Current status")
    for ks in report.kinds:
        spec = get_assistant(ks.kind)
        active = styled(ks.active, fg="cyan") if ks.active else styled("(none)", dim=True)
        state = styled(ks.state.value, fg=STATE_COLORS[ks.state])
        info(f"{spec.display_name:<12} {active}  [{ks.profile_count} profile(s), {state}]")

    click.echo()
    if report.remote_name:
        info(f"Remote: {report.remote_name}")
    if report.remote_latest is not None:
        info(f"Latest remote backup: {report.remote_latest.name}")
    if report.local_latest is not None:
        info(f"Latest local backup:  {report.local_latest.isoformat()}")
    if report.reason:
        info(f"Sync state unknown: {report.reason}")
    if report.diverged:
        warn("Local profiles differ from the latest remote backup.")
        warn("Inspect with: ca-switch backup diff latest --remote")
    click.echo()


def _require_remote(app: App) -> RemoteStore:
    remote = app.remote()
    if remote is None:
        raise ConfigError("No remote configured. Run: ca-switch webdav setup")
    return remote


# -- assistant profile commands ------------------------------------------------


def make_assistant_group(kind: AssistantKind) -> click.Group:
    spec = get_assistant(kind)

    @click.group(
        name=spec.command,
        invoke_without_command=True,
        help=f"Manage {spec.display_name} profiles.",
    )
    @click.pass_context
    def group(ctx: click.Context) -> None:
        if ctx.invoked_subcommand is None:
            assistant_menu(ctx.obj, kind)

    @group.command("list")
    @click.pass_obj
    def list_cmd(app: App) -> None:
        """List saved profiles."""
        store = app.store
        names = store.list(kind)
        heading(f"{spec.display_name} profiles")
        if not names:
            info("  (none)")
            return
        current = store.current(kind)
        for name in names:
            marker = styled(" *", fg="green") if name == current else ""
            info(f"  {name}{marker}")

    @group.command("show")
    @click.argument("name")
    @click.option("--reveal", is_flag=True, help="Show secrets unmasked.")
    @click.pass_obj
    def show_cmd(app: App, name: str, reveal: bool) -> None:
        """Show one profile's settings."""
        profile = app.store.read(kind, name)
        heading(f"{spec.display_name}: {profile.name}")
        info(f"  Updated: {profile.updated_at.isoformat()}")
        for key, value in sorted(profile.settings.items()):
            shown = (value if isinstance(value, str) else json.dumps(value)) if reveal else mask(key, value)
            info(f"  {key} = {shown}")

    @group.command("add")
    @click.argument("name")
    @click.option("--set", "-s", "pairs", multiple=True, help="Setting as KEY=VALUE.")
    @click.option(
        "--from-file",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Read settings from a JSON file.",
    )
    @click.option("--force", is_flag=True, help="Overwrite an existing profile.")
    @click.option("--use", "use_now", is_flag=True, help="Switch to it right away.")
    @click.pass_obj
    def add_cmd(
        app: App,
        name: str,
        pairs: tuple[str, ...],
        from_file: Path | None,
        force: bool,
        use_now: bool,
    ) -> None:
        """Create a profile."""
        settings: dict[str, Any] = {}
        if from_file is not None:
            try:
                settings = json.loads(from_file.read_text())
            except ValueError as e:
                raise ConfigError(f"{from_file} is not valid JSON: {e}") from e
            if not isinstance(settings, dict):
                raise ConfigError(f"{from_file} must contain a JSON object.")
        settings.update(parse_assignments(pairs))
        do_add(app, kind, name, settings, force=force, use_now=use_now)

    @group.command("edit")
    @click.argument("name")
    @click.option("--set", "-s", "pairs", multiple=True, help="Setting as KEY=VALUE.")
    @click.option("--unset", "unset_keys", multiple=True, help="Remove a setting.")
    @click.pass_obj
    def edit_cmd(app: App, name: str, pairs: tuple[str, ...], unset_keys: tuple[str, ...]) -> None:
        """Change settings of an existing profile."""
        settings = app.store.read(kind, name).settings
        settings.update(parse_assignments(pairs))
        for key in unset_keys:
            settings.pop(key, None)
        do_edit(app, kind, name, settings)

    @group.command("use")
    @click.argument("name")
    @click.pass_obj
    def use_cmd(app: App, name: str) -> None:
        """Activate a profile, rewriting the live config."""
        do_switch(app, kind, name)

    @group.command("remove")
    @click.argument("name")
    @click.pass_obj
    def remove_cmd(app: App, name: str) -> None:
        """Delete a profile (not allowed while active)."""
        do_remove(app, kind, name)

    @group.command("current")
    @click.pass_obj
    def current_cmd(app: App) -> None:
        """Print the active profile name."""
        name = app.store.current(kind)
        if name is None:
            raise ConfigError(f"No {spec.display_name} profile is active.")
        click.echo(name)

    return group


ASSISTANT_GROUPS = {kind: make_assistant_group(kind) for kind in ASSISTANTS}
for _group in ASSISTANT_GROUPS.values():
    cli.add_command(_group)


@ASSISTANT_GROUPS[AssistantKind.OPENCODE].command("export")
@click.argument(
    "directory",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
)
@click.pass_obj
def opencode_export(app: App, directory: Path) -> None:
    """Write the active OpenCode profile into DIRECTORY/.opencode/."""
    outcome = app.controller.export_opencode(directory)
    for path in outcome.details["written"]:
        success(f"Exported {path}")


@ASSISTANT_GROUPS[AssistantKind.OPENCODE].command("detect")
@click.argument("name", required=False)
@click.option("--provider", default=None, help="Provider id under 'provider' (default: the first).")
@click.option("--model", default=None, help="Time a completion with this model instead of listing models.")
@click.option("--stream", is_flag=True, help="With --model, also check streaming.")
@click.pass_obj
def opencode_detect(
    app: App, name: str | None, provider: str | None, model: str | None, stream: bool
) -> None:
    """Check the API endpoint of an OpenCode profile (default: the active one)."""
    do_detect(app, name, provider=provider, model=model, stream=stream)


# -- backup commands -------------------------------------------------------------


@cli.group(invoke_without_command=True)
@click.pass_context
def backup(ctx: click.Context) -> None:
    """Back up and restore all profiles, locally or via the remote."""
    if ctx.invoked_subcommand is None:
        backup_menu(ctx.obj)


@backup.command("create")
@click.option("--remote", is_flag=True, help="Also push to the remote.")
@click.option("--overwrite", is_flag=True, help="Replace a backup with the same name.")
@click.pass_obj
def backup_create(app: App, remote: bool, overwrite: bool) -> None:
    """Snapshot every profile and the active selections."""
    do_backup(app, remote=remote, overwrite=overwrite)


@backup.command("list")
@click.option("--remote", is_flag=True, help="List remote backups.")
@click.pass_obj
def backup_list(app: App, remote: bool) -> None:
    """List backups, newest first."""
    show_backups(app, remote=remote)
    click.echo()


@backup.command("restore")
@click.argument("source", default=LATEST)
@click.option("--remote", is_flag=True, help="Pull SOURCE from the remote.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
def backup_restore(app: App, source: str, remote: bool, yes: bool) -> None:
    """Replace all profiles with a backup (SOURCE is a name or 'latest')."""
    if not yes:
        click.confirm("  Replace ALL profiles with the backup?", abort=True)
    do_restore(app, source, remote=remote)


@backup.command("delete")
@click.argument("name")
@click.option("--remote", is_flag=True, help="Delete from the remote.")
@click.pass_obj
def backup_delete(app: App, name: str, remote: bool) -> None:
    """Delete one backup."""
    if remote:
        sync = SyncClient(_require_remote(app))
        app.controller.remote_call(sync.delete, name)
        success(f"Deleted {name} from {sync.display_name}")
    else:
        app.backups.delete_local(name)
        success(f"Deleted local backup {name}")


@backup.command("diff")
@click.argument("source", default=LATEST)
@click.option("--remote", is_flag=True, help="Compare against a remote backup.")
@click.pass_obj
def backup_diff(app: App, source: str, remote: bool) -> None:
    """Show how local profiles differ from a backup."""
    diffs = app.controller.diff(source, remote=remote)
    click.echo()
    if diffs:
        for d in diffs:
            click.echo(d)
    else:
        success("  Local profiles match the backup.")
    click.echo()


# -- webdav commands -------------------------------------------------------------


@cli.group()
def webdav() -> None:
    """Configure the WebDAV remote."""


@webdav.command("setup")
@click.option("--url", default=None, help="WebDAV server URL.")
@click.option("--username", default=None)
@click.option("--password", default=None)
@click.option("--remote-dir", default=None, help="Collection that holds the backups.")
@click.option(
    "--store-password/--no-store-password",
    default=True,
    help="Keep the password in config.json (otherwise use CA_SWITCH_WEBDAV_PASSWORD).",
)
@click.option("--no-test", is_flag=True, help="Save without testing the connection.")
@click.pass_obj
def webdav_setup(
    app: App,
    url: str | None,
    username: str | None,
    password: str | None,
    remote_dir: str | None,
    store_password: bool,
    no_test: bool,
) -> None:
    """Store WebDAV credentials and test the connection."""
    click.echo()
    info("Works with any WebDAV service, e.g. https://dav.jianguoyun.com/dav/")
    click.echo()

    config = app.config
    existing = config.remote if config.remote and config.remote.type == "webdav" else None

    url = url or click.prompt(
        "  WebDAV URL", default=existing.url if existing and existing.url else None
    )
    if not url.startswith(("http://", "https://")):
        raise ConfigError("WebDAV URL must start with http:// or https://")
    username = username or click.prompt(
        "  Username", default=existing.username if existing and existing.username else None
    )
    password = password or click.prompt("  Password (or app password)", hide_input=True)

    remote = RemoteConfig(
        type="webdav",
        url=url,
        username=username,
        password=password,
        remote_dir=remote_dir or (existing.remote_dir if existing else DEFAULT_REMOTE_DIR),
    )

    if not no_test:
        info("Testing connection...")
        store = create_remote(remote.to_adapter_dict())
        try:
            if not store.is_available():
                raise RemoteUnavailable(f"Could not connect to {url} with those credentials.")
        finally:
            store.close()
        success("Connection OK.")

    if not store_password:
        remote.password = ""
    config.remote = remote
    save_config(config, app.paths.config_file)
    success(f"Config saved to {app.paths.config_file}")
    click.echo()


@webdav.command("test")
@click.pass_obj
def webdav_test(app: App) -> None:
    """Check that the configured remote is reachable."""
    remote = _require_remote(app)
    info(f"Checking {remote.display_name}...")
    if not remote.is_available():
        raise RemoteUnavailable(f"{remote.display_name} is not reachable.")
    success("Connection OK.")


@webdav.command("show")
@click.pass_obj
def webdav_show(app: App) -> None:
    """Show the configured remote (password masked)."""
    remote = app.config.remote
    if remote is None:
        warn("No remote configured. Run: ca-switch webdav setup")
        return
    heading("Remote")
    info(f"  Type: {remote.type}")
    if remote.type == "webdav":
        info(f"  URL: {remote.url}")
        info(f"  Username: {remote.username}")
        info(f"  Password: {mask('password', remote.password) if remote.password else '(from environment)'}")
        info(f"  Directory: /{remote.remote_dir}")
    else:
        info(f"  Path: {remote.path}")


@cli.command()
@click.pass_obj
def status(app: App) -> None:
    """Show active profiles and whether they match the latest remote backup."""
    show_status(app)


def main() -> None:
    cli()
