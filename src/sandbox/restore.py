"""
Restore sandbox state from the R2 backup.

Runs once at boot, before config reconciliation. Every step is best effort:
a failed transfer is logged and boot continues with whatever landed on disk.
"""

from pathlib import Path

from .log_config import get_logger
from .storage import ObjectStore
from .types import RemotePrefix, RestoreSource, SandboxPaths


class RestoreCoordinator:
    """
    Pull config, workspace and skills from the object store.

    Config is restored from the current prefix when its config file exists
    remotely, otherwise from the legacy prefix (with a one-time rename of the
    legacy file), otherwise not at all. Workspace and skills are restored
    independently whenever their prefixes hold any objects.
    """

    def __init__(self, store: ObjectStore | None, paths: SandboxPaths):
        self.store = store
        self.paths = paths
        self.log = get_logger("restore", service="sandbox")

    async def restore(self) -> RestoreSource:
        if self.store is None:
            self.log.info("restore.skip", reason="storage_not_configured")
            return RestoreSource.SKIPPED

        source = await self.restore_config()
        await self._restore_prefix(RemotePrefix.WORKSPACE, self.paths.workspace_dir, "workspace")
        await self._restore_prefix(RemotePrefix.SKILLS, self.paths.skills_dir, "skills")
        return source

    async def _has_object(self, prefix: RemotePrefix, name: str) -> bool:
        entries = await self.store.list(f"{prefix.value}{name}")
        return any(entry.path.endswith(name) for entry in entries)

    async def restore_config(self) -> RestoreSource:
        """Restore the config directory, preferring the current layout over legacy."""
        config_dir = self.paths.config_dir

        if await self._has_object(RemotePrefix.CONFIG, self.paths.config_name):
            self.log.info("restore.config_start", source=RestoreSource.CURRENT.value)
            result = await self.store.copy(RemotePrefix.CONFIG.value, config_dir)
            if not result.ok:
                self.log.warn("restore.config_failed", exit_code=result.exit_code)
            else:
                self.log.info("restore.config_complete")
            return RestoreSource.CURRENT

        if await self._has_object(RemotePrefix.LEGACY_CONFIG, self.paths.legacy_config_name):
            self.log.info("restore.config_start", source=RestoreSource.LEGACY.value)
            result = await self.store.copy(RemotePrefix.LEGACY_CONFIG.value, config_dir)
            if not result.ok:
                self.log.warn("restore.legacy_config_failed", exit_code=result.exit_code)
            self.migrate_legacy_config()
            return RestoreSource.LEGACY

        self.log.info("restore.no_backup", reason="starting_fresh")
        return RestoreSource.NONE

    def migrate_legacy_config(self) -> bool:
        """Rename the legacy config file to the current name unless one already exists."""
        legacy = self.paths.legacy_config_file
        current = self.paths.config_file
        if not legacy.is_file() or current.exists():
            return False
        legacy.rename(current)
        self.log.info("restore.legacy_migrated", legacy=str(legacy), current=str(current))
        return True

    async def _restore_prefix(self, prefix: RemotePrefix, dest: Path, label: str) -> None:
        entries = await self.store.list(prefix.value)
        if not entries:
            self.log.debug("restore.prefix_empty", prefix=prefix.value)
            return

        self.log.info(f"restore.{label}_start", remote_files=len(entries))
        dest.mkdir(parents=True, exist_ok=True)
        result = await self.store.copy(prefix.value, dest)
        if not result.ok:
            self.log.warn(f"restore.{label}_failed", exit_code=result.exit_code)
            return
        self.log.info(f"restore.{label}_complete")
