#!/usr/bin/env python3
"""
Sandbox entrypoint - brings the OpenClaw gateway up inside an ephemeral container.

Runs as the container's main process. Responsibilities:
1. Exit early if a gateway is already running
2. Restore config/workspace/skills from R2 (if configured)
3. Provision a first config with ``openclaw onboard`` (fresh sandboxes only)
4. Reconcile the config with the environment (gateway, providers, channels)
5. Start the background R2 sync loop
6. Run the gateway in the foreground and exit with its exit code
"""

import asyncio
import contextlib
import os
import signal
import sys
import time
from collections.abc import Mapping

import httpx

from .log_config import configure_logging, get_logger
from .onboard import provision
from .reconcile import reconcile_file
from .restore import RestoreCoordinator
from .storage import RcloneStore, write_rclone_config
from .sync import DEFAULT_INTERVAL, SyncLoop
from .types import GATEWAY_BIND, GATEWAY_PORT, RestoreSource, SandboxPaths, StorageSettings

configure_logging()


class SandboxSupervisor:
    """
    Bootstrap sequencer for the OpenClaw sandbox.

    Ordering is strict: restore finishes before reconciliation, and
    reconciliation finishes before the gateway starts, so environment
    settings always win over restored ones. The sync loop and the gateway
    then run side by side and only share the filesystem.
    """

    # Configuration
    GATEWAY_BINARY = "openclaw"
    GATEWAY_PROCESS_PATTERN = "openclaw gateway"
    READY_TIMEOUT = 60.0
    READY_POLL_INTERVAL = 1.0

    def __init__(self, env: Mapping[str, str] | None = None, paths: SandboxPaths | None = None):
        self.env = dict(os.environ if env is None else env)
        self.paths = paths or SandboxPaths()
        self.storage = StorageSettings.from_env(self.env)
        self.gateway_token = self.env.get("OPENCLAW_GATEWAY_TOKEN", "")
        self.dev_mode = self.env.get("OPENCLAW_DEV_MODE") == "true"

        try:
            self.sync_interval = float(
                self.env.get("SYNC_INTERVAL_SECONDS", str(DEFAULT_INTERVAL))
            )
        except ValueError:
            self.sync_interval = DEFAULT_INTERVAL

        self.store: RcloneStore | None = None
        self.sync_loop: SyncLoop | None = None
        self.gateway_process: asyncio.subprocess.Process | None = None

        self.log = get_logger(
            "supervisor",
            service="sandbox",
            bucket=self.storage.bucket if self.storage else None,
        )

    async def gateway_running(self) -> bool:
        """True if a gateway process is already running in this container."""
        try:
            process = await asyncio.create_subprocess_exec(
                "pgrep",
                "-f",
                self.GATEWAY_PROCESS_PATTERN,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            self.log.debug("supervisor.pgrep_missing")
            return False
        return await process.wait() == 0

    def setup_storage(self) -> RcloneStore | None:
        if self.storage is None:
            self.log.info("storage.not_configured")
            return None
        write_rclone_config(
            self.storage, self.paths.rclone_conf, self.paths.rclone_configured_marker
        )
        self.log.info("storage.configured", bucket=self.storage.bucket)
        return RcloneStore(self.storage, self.paths.rclone_conf)

    def remove_stale_locks(self) -> None:
        for lock in self.paths.lock_files:
            try:
                lock.unlink()
                self.log.info("gateway.stale_lock_removed", path=str(lock))
            except FileNotFoundError:
                pass
            except OSError as e:
                self.log.warn("gateway.stale_lock_error", path=str(lock), exc=e)

    def start_sync_loop(self) -> SyncLoop | None:
        if self.store is None:
            return None
        self.sync_loop = SyncLoop(self.store, self.paths, interval=self.sync_interval)
        task = self.sync_loop.start()
        self.log.info("sync.started", task=task.get_name(), interval_s=self.sync_interval)
        return self.sync_loop

    def gateway_command(self) -> list[str]:
        command = [
            self.GATEWAY_BINARY,
            "gateway",
            "--port",
            str(GATEWAY_PORT),
            "--verbose",
            "--allow-unconfigured",
            "--bind",
            GATEWAY_BIND,
        ]
        if self.gateway_token:
            command += ["--token", self.gateway_token]
        return command

    async def _wait_for_gateway(self) -> bool:
        """Poll the gateway port until it answers HTTP. Only logs; never fails the run."""
        url = f"http://localhost:{GATEWAY_PORT}/"
        start_time = time.time()

        async with httpx.AsyncClient() as client:
            while time.time() - start_time < self.READY_TIMEOUT:
                if self.gateway_process is None or self.gateway_process.returncode is not None:
                    return False
                try:
                    await client.get(url, timeout=2.0)
                    self.log.info(
                        "gateway.ready",
                        port=GATEWAY_PORT,
                        duration_ms=int((time.time() - start_time) * 1000),
                    )
                    return True
                except httpx.TransportError:
                    pass
                await asyncio.sleep(self.READY_POLL_INTERVAL)

        self.log.warn("gateway.not_ready", port=GATEWAY_PORT, timeout_s=self.READY_TIMEOUT)
        return False

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Forward termination signals to the gateway."""
        self.log.info("supervisor.signal", signal_name=sig.name)
        if self.gateway_process and self.gateway_process.returncode is None:
            self.gateway_process.send_signal(sig)

    async def run_gateway(self) -> int:
        """Start the gateway in the foreground and wait for it to exit."""
        auth_mode = "token" if self.gateway_token else "device_pairing"
        self.log.info(
            "gateway.start", port=GATEWAY_PORT, auth_mode=auth_mode, dev_mode=self.dev_mode
        )

        try:
            self.gateway_process = await asyncio.create_subprocess_exec(*self.gateway_command())
        except FileNotFoundError as e:
            self.log.error("gateway.binary_missing", binary=self.GATEWAY_BINARY, exc=e)
            return 127

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        ready_task = asyncio.create_task(self._wait_for_gateway())
        try:
            exit_code = await self.gateway_process.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            ready_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ready_task

        if exit_code < 0:
            # Killed by a signal; report it the way a shell would (SIGTERM -> 143).
            exit_code = 128 - exit_code
        self.log.info("gateway.exit", exit_code=exit_code)
        return exit_code

    async def bootstrap(self) -> None:
        """Everything before the gateway starts."""
        self.paths.config_dir.mkdir(parents=True, exist_ok=True)
        self.log.info("supervisor.config_dir", path=str(self.paths.config_dir))

        self.store = self.setup_storage()
        restore_source = await RestoreCoordinator(self.store, self.paths).restore()

        provisioned = None
        if not self.paths.config_file.exists():
            provisioned = await provision(self.paths.config_file, self.env, self.GATEWAY_BINARY)
        else:
            self.log.info("supervisor.existing_config", restored_from=restore_source.value)

        reconcile_file(self.paths.config_file, self.env)
        self.remove_stale_locks()
        self.start_sync_loop()

        self.log.info(
            "sandbox.bootstrap",
            restored_from=restore_source.value,
            fresh=restore_source in (RestoreSource.NONE, RestoreSource.SKIPPED),
            onboarded=provisioned,
            sync_enabled=self.sync_loop is not None,
        )

    async def run(self) -> int:
        """Main entrypoint flow. Returns the process exit code."""
        startup_start = time.time()

        if await self.gateway_running():
            self.log.info("supervisor.already_running")
            return 0

        self.log.info("supervisor.start", storage_configured=self.storage is not None)
        await self.bootstrap()
        self.log.info(
            "supervisor.bootstrap_complete",
            duration_ms=int((time.time() - startup_start) * 1000),
        )

        # The sync loop is not stopped here; it lives as long as the process.
        return await self.run_gateway()


async def main() -> int:
    """Entry point for the sandbox supervisor."""
    supervisor = SandboxSupervisor()
    return await supervisor.run()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
