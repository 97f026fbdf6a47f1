"""
Background mirror of local sandbox state to R2.

Every ``interval`` seconds the loop scans the config and workspace
directories for files modified after the checkpoint marker. When anything
changed it pushes config, workspace and skills to their prefixes and then
advances the checkpoint.

The checkpoint advances even when a push fails, so a file changed during a
failed cycle is only pushed again once it changes again.
"""

import asyncio
import contextlib
import os
from datetime import datetime, timezone
from pathlib import Path

from .log_config import get_logger
from .storage import ObjectStore
from .types import RemotePrefix, SandboxPaths

DEFAULT_INTERVAL = 30.0

SCAN_EXCLUDED_DIRS = frozenset({"node_modules", ".git"})
CONFIG_EXCLUDES = ("*.lock", "*.log", "*.tmp", ".git/**")
WORKSPACE_EXCLUDES = ("skills/**", ".git/**", "node_modules/**")


def changed_since(root: Path, checkpoint: float) -> list[str]:
    """
    Relative paths of regular files under ``root`` modified strictly after ``checkpoint``.

    Dependency and VCS subtrees are not descended into. A missing root yields
    no files.
    """
    changed = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SCAN_EXCLUDED_DIRS]
        for filename in filenames:
            path = Path(dirpath) / filename
            try:
                stat = path.stat()
            except OSError:
                continue
            if stat.st_mtime > checkpoint:
                changed.append(str(path.relative_to(root)))
    return sorted(changed)


class SyncLoop:
    """
    Detached push loop: WAIT -> SCAN -> (PUSH if anything changed) -> WAIT.

    Production starts it once and lets it die with the container; ``stop``
    exists so tests and graceful shutdowns can end it deterministically.
    """

    def __init__(
        self,
        store: ObjectStore,
        paths: SandboxPaths,
        interval: float = DEFAULT_INTERVAL,
    ):
        self.store = store
        self.paths = paths
        self.interval = interval
        self.stop_event = asyncio.Event()
        self.task: asyncio.Task | None = None
        self.cycles = 0
        self.log = get_logger("sync", service="sandbox")

    def init_checkpoint(self) -> None:
        marker = self.paths.sync_marker
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    def checkpoint(self) -> float:
        try:
            return self.paths.sync_marker.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def advance_checkpoint(self, timestamp: float) -> None:
        marker = self.paths.sync_marker
        marker.touch()
        os.utime(marker, (timestamp, timestamp))

    def scan(self) -> list[str]:
        """Changed files in config and workspace since the checkpoint. Skills are not scanned."""
        checkpoint = self.checkpoint()
        changed = changed_since(self.paths.config_dir, checkpoint)
        changed += changed_since(self.paths.workspace_dir, checkpoint)
        self.paths.changed_files.parent.mkdir(parents=True, exist_ok=True)
        self.paths.changed_files.write_text("".join(f"{name}\n" for name in changed))
        return changed

    def _append_sync_log(self, message: str) -> None:
        try:
            with self.paths.sync_log.open("a") as f:
                f.write(f"[sync] {message} at {datetime.now(timezone.utc).isoformat()}\n")
        except OSError as e:
            self.log.debug("sync.log_write_error", exc=e)

    async def push(self) -> bool:
        """Push all three directories. Returns True only if every push succeeded."""
        results = [
            await self.store.sync(self.paths.config_dir, RemotePrefix.CONFIG.value, CONFIG_EXCLUDES)
        ]
        if self.paths.workspace_dir.is_dir():
            results.append(
                await self.store.sync(
                    self.paths.workspace_dir, RemotePrefix.WORKSPACE.value, WORKSPACE_EXCLUDES
                )
            )
        if self.paths.skills_dir.is_dir():
            results.append(await self.store.sync(self.paths.skills_dir, RemotePrefix.SKILLS.value))
        return all(result.ok for result in results)

    async def run_cycle(self) -> int:
        """Scan and, if needed, push once. Returns the number of changed files."""
        scan_started = datetime.now(timezone.utc).timestamp()
        changed = await asyncio.to_thread(self.scan)
        if not changed:
            return 0

        self.log.info("sync.push_start", changed_files=len(changed))
        self._append_sync_log(f"Uploading changes ({len(changed)} files)")
        ok = await self.push()
        if not ok:
            self.log.warn("sync.push_failed", changed_files=len(changed), checkpoint_advanced=True)

        self.paths.last_sync_file.write_text(
            datetime.now(timezone.utc).isoformat(timespec="seconds") + "\n"
        )
        # Files modified after the scan started are newer than this and get the next cycle.
        self.advance_checkpoint(scan_started)
        self._append_sync_log("Complete")
        self.log.info("sync.push_complete", changed_files=len(changed), ok=ok)
        return len(changed)

    async def run(self) -> None:
        self.init_checkpoint()
        self.log.info("sync.loop_start", interval_s=self.interval)
        while not self.stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval)
            if self.stop_event.is_set():
                break
            try:
                await self.run_cycle()
            except Exception as e:
                self.log.error("sync.cycle_error", exc=e)
            self.cycles += 1
        self.log.info("sync.loop_stop", cycles=self.cycles)

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run(), name="r2-sync-loop")
        return self.task

    async def stop(self) -> None:
        self.stop_event.set()
        if self.task is not None:
            await self.task
