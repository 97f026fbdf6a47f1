"""
Object store access for sandbox state backup.

The orchestrator only needs three capabilities from the store: list a
prefix, copy a prefix down to a local directory, and mirror a local
directory up to a prefix. ``RcloneStore`` provides them by shelling out
to rclone against an R2 remote. Failures never raise; callers get a
``TransferResult`` and decide how loudly to log it.
"""

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from .log_config import get_logger
from .types import RCLONE_REMOTE, RemoteEntry, StorageSettings, TransferResult

RCLONE_FLAGS = ("--transfers=16", "--fast-list", "--s3-no-check-bucket")

# Conventional "command not found" status.
EXIT_NOT_FOUND = 127


class ObjectStore(Protocol):
    """Minimal object store contract used by restore and sync."""

    async def list(self, prefix: str) -> list[RemoteEntry]: ...

    async def copy(self, prefix: str, dest: Path) -> TransferResult: ...

    async def sync(
        self, source: Path, prefix: str, excludes: Sequence[str] = ()
    ) -> TransferResult: ...


def write_rclone_config(
    settings: StorageSettings, conf_path: Path, marker: Path | None = None
) -> None:
    """Write the rclone remote definition for R2. Overwrites any previous file."""
    conf_path.parent.mkdir(parents=True, exist_ok=True)
    conf_path.write_text(
        f"[{RCLONE_REMOTE}]\n"
        "type = s3\n"
        "provider = Cloudflare\n"
        f"access_key_id = {settings.access_key_id}\n"
        f"secret_access_key = {settings.secret_access_key}\n"
        f"endpoint = {settings.endpoint}\n"
        "acl = private\n"
        "no_check_bucket = true\n"
    )
    conf_path.chmod(0o600)
    if marker is not None:
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()


def parse_listing(output: str) -> list[RemoteEntry]:
    """Parse ``rclone ls`` output (``<size> <path>`` per line)."""
    entries = []
    for line in output.splitlines():
        size, _, path = line.strip().partition(" ")
        if not path:
            continue
        try:
            entries.append(RemoteEntry(size=int(size), path=path.strip()))
        except ValueError:
            continue
    return entries


class RcloneStore:
    """
    ``ObjectStore`` backed by the rclone CLI.

    Each call is a blocking subprocess with no timeout; a hung transfer stalls
    only the caller that awaited it.
    """

    def __init__(self, settings: StorageSettings, conf_path: Path, binary: str = "rclone"):
        self.settings = settings
        self.conf_path = conf_path
        self.binary = binary
        self.log = get_logger("storage", service="sandbox", bucket=settings.bucket)

    def remote(self, prefix: str) -> str:
        """Full rclone path for a prefix in the configured bucket."""
        return f"{RCLONE_REMOTE}:{self.settings.bucket}/{prefix}"

    async def _run(self, *args: str) -> TransferResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                "--config",
                str(self.conf_path),
                *RCLONE_FLAGS,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            self.log.error("storage.binary_missing", binary=self.binary, exc=e)
            return TransferResult(ok=False, exit_code=EXIT_NOT_FOUND, output=str(e))

        stdout, stderr = await process.communicate()
        returncode = process.returncode if process.returncode is not None else -1
        output = (stdout if returncode == 0 else stderr).decode(errors="replace")
        return TransferResult(ok=returncode == 0, exit_code=returncode, output=output)

    async def list(self, prefix: str) -> list[RemoteEntry]:
        """List objects under a prefix. Errors yield an empty list."""
        result = await self._run("ls", self.remote(prefix))
        if not result.ok:
            self.log.debug("storage.list_failed", prefix=prefix, exit_code=result.exit_code)
            return []
        return parse_listing(result.output)

    async def copy(self, prefix: str, dest: Path) -> TransferResult:
        """Copy every object under ``prefix`` into ``dest``."""
        result = await self._run("copy", self.remote(prefix), f"{dest}/", "-v")
        if not result.ok:
            self.log.warn(
                "storage.copy_failed",
                prefix=prefix,
                dest=str(dest),
                exit_code=result.exit_code,
                stderr=result.output[-2000:],
            )
        return result

    async def sync(
        self, source: Path, prefix: str, excludes: Sequence[str] = ()
    ) -> TransferResult:
        """Mirror ``source`` to ``prefix``, deleting remote objects missing locally."""
        exclude_args = [f"--exclude={pattern}" for pattern in excludes]
        result = await self._run("sync", f"{source}/", self.remote(prefix), *exclude_args)
        if not result.ok:
            self.log.warn(
                "storage.sync_failed",
                source=str(source),
                prefix=prefix,
                exit_code=result.exit_code,
                stderr=result.output[-2000:],
            )
        return result
