"""Type definitions and fixed layout for the OpenClaw sandbox."""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NamedTuple

GATEWAY_PORT = 18789
GATEWAY_MODE = "local"
GATEWAY_BIND = "lan"
TRUSTED_PROXIES = ["10.1.0.0"]

DEFAULT_BUCKET = "moltbot-data"
RCLONE_REMOTE = "r2"


class DmPolicy(str, Enum):
    """Which direct-message senders a channel integration accepts."""

    PAIRING = "pairing"
    OPEN = "open"


class RemotePrefix(str, Enum):
    """Top-level prefixes inside the backup bucket."""

    CONFIG = "openclaw/"
    LEGACY_CONFIG = "clawdbot/"
    WORKSPACE = "workspace/"
    SKILLS = "skills/"


class RestoreSource(str, Enum):
    """Where the config directory was restored from."""

    CURRENT = "current"
    LEGACY = "legacy"
    NONE = "none"
    SKIPPED = "skipped"


class RemoteEntry(NamedTuple):
    """One object reported by a remote listing."""

    size: int
    path: str


class TransferResult(NamedTuple):
    """Outcome of a copy or sync against the object store."""

    ok: bool
    exit_code: int
    output: str = ""


@dataclass(frozen=True)
class SandboxPaths:
    """Local filesystem layout. Defaults match the container image."""

    config_dir: Path = Path("/root/.openclaw")
    workspace_dir: Path = Path("/root/clawd")
    skills_dir: Path = Path("/root/clawd/skills")
    rclone_conf: Path = Path("/root/.config/rclone/rclone.conf")
    rclone_configured_marker: Path = Path("/tmp/.rclone-configured")
    sync_marker: Path = Path("/tmp/.last-sync-marker")
    changed_files: Path = Path("/tmp/.changed-files")
    last_sync_file: Path = Path("/tmp/.last-sync")
    sync_log: Path = Path("/tmp/r2-sync.log")
    gateway_lock: Path = Path("/tmp/openclaw-gateway.lock")

    config_name = "openclaw.json"
    legacy_config_name = "clawdbot.json"

    @property
    def config_file(self) -> Path:
        return self.config_dir / self.config_name

    @property
    def legacy_config_file(self) -> Path:
        return self.config_dir / self.legacy_config_name

    @property
    def lock_files(self) -> tuple[Path, Path]:
        """Lock files a previous unclean shutdown may have left behind."""
        return (self.gateway_lock, self.config_dir / "gateway.lock")

    @classmethod
    def under(cls, root: Path) -> "SandboxPaths":
        """Relocate the whole layout below ``root`` (used by tests and local runs)."""
        return cls(
            config_dir=root / "config",
            workspace_dir=root / "workspace",
            skills_dir=root / "workspace" / "skills",
            rclone_conf=root / "rclone" / "rclone.conf",
            rclone_configured_marker=root / "tmp" / ".rclone-configured",
            sync_marker=root / "tmp" / ".last-sync-marker",
            changed_files=root / "tmp" / ".changed-files",
            last_sync_file=root / "tmp" / ".last-sync",
            sync_log=root / "tmp" / "r2-sync.log",
            gateway_lock=root / "tmp" / "openclaw-gateway.lock",
        )


@dataclass(frozen=True)
class StorageSettings:
    """R2 credentials and bucket, resolved from the environment."""

    access_key_id: str
    secret_access_key: str
    account_id: str
    bucket: str = DEFAULT_BUCKET

    @property
    def endpoint(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "StorageSettings | None":
        """Return settings, or None when any of the three credentials is missing."""
        access_key_id = env.get("R2_ACCESS_KEY_ID", "")
        secret_access_key = env.get("R2_SECRET_ACCESS_KEY", "")
        account_id = env.get("CF_ACCOUNT_ID", "")
        if not (access_key_id and secret_access_key and account_id):
            return None
        return cls(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            account_id=account_id,
            bucket=env.get("R2_BUCKET_NAME") or DEFAULT_BUCKET,
        )
