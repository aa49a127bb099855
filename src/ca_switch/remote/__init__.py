"""Remote object stores that backup archives can be synced to."""

from ca_switch.remote.base import RemoteObject, RemoteStore
from ca_switch.remote.local import LocalDirRemote
from ca_switch.remote.webdav import WebDAVRemote


def create_remote(remote_config: dict) -> RemoteStore:
    """Factory: create the right remote store from a remote config block."""
    remote_type = remote_config["type"]
    if remote_type == "webdav":
        return WebDAVRemote(
            url=remote_config["url"],
            username=remote_config.get("username", ""),
            password=remote_config.get("password", ""),
            remote_dir=remote_config.get("remote_dir", WebDAVRemote.DEFAULT_DIR),
            timeout=remote_config.get("timeout", 30.0),
        )
    elif remote_type == "local":
        return LocalDirRemote(path=remote_config["path"])
    else:
        raise ValueError(f"Unknown remote type: {remote_type}")


__all__ = ["RemoteObject", "RemoteStore", "LocalDirRemote", "WebDAVRemote", "create_remote"]
