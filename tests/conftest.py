"""Shared fixtures: an in-memory object store and a relocated sandbox layout."""

import fnmatch
from collections.abc import Sequence
from pathlib import Path

import pytest

from src.sandbox.types import RemoteEntry, SandboxPaths, TransferResult


class FakeObjectStore:
    """
    In-memory ObjectStore.

    ``objects`` maps full keys (``"workspace/notes.md"``) to bytes. Prefixes
    listed in ``fail_copy``/``fail_sync`` return a failed TransferResult.
    """

    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects: dict[str, bytes] = dict(objects or {})
        self.fail_copy: set[str] = set()
        self.fail_sync: set[str] = set()
        self.calls: list[tuple] = []

    async def list(self, prefix: str) -> list[RemoteEntry]:
        self.calls.append(("list", prefix))
        return [
            RemoteEntry(size=len(data), path=key[len(prefix) :] or key.rsplit("/", 1)[-1])
            for key, data in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    async def copy(self, prefix: str, dest: Path) -> TransferResult:
        self.calls.append(("copy", prefix, dest))
        if prefix in self.fail_copy:
            return TransferResult(ok=False, exit_code=1, output="copy failed")
        for key, data in self.objects.items():
            if key.startswith(prefix):
                target = dest / key[len(prefix) :]
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
        return TransferResult(ok=True, exit_code=0)

    async def sync(
        self, source: Path, prefix: str, excludes: Sequence[str] = ()
    ) -> TransferResult:
        self.calls.append(("sync", source, prefix, tuple(excludes)))
        if prefix in self.fail_sync:
            return TransferResult(ok=False, exit_code=3, output="sync failed")
        for key in [k for k in self.objects if k.startswith(prefix)]:
            del self.objects[key]
        for path in source.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(source).as_posix()
            if any(_excluded(relative, pattern) for pattern in excludes):
                continue
            self.objects[prefix + relative] = path.read_bytes()
        return TransferResult(ok=True, exit_code=0)

    def synced_prefixes(self):
        return [call[2] for call in self.calls if call[0] == "sync"]


def _excluded(relative: str, pattern: str) -> bool:
    if pattern.endswith("/**"):
        directory = pattern[:-3]
        return relative.startswith(f"{directory}/") or f"/{directory}/" in f"/{relative}"
    return fnmatch.fnmatch(relative.rsplit("/", 1)[-1], pattern)


@pytest.fixture
def paths(tmp_path: Path) -> SandboxPaths:
    layout = SandboxPaths.under(tmp_path)
    layout.config_dir.mkdir(parents=True)
    layout.sync_marker.parent.mkdir(parents=True)
    return layout


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()
