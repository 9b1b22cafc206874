"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from padctl.locking import LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_discard_removes_lock_file(tmp_path: Path) -> None:
    """Discarding while held removes the file; the name can be locked again."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        manager.discard("alpha")
        assert not manager.lock_path("alpha").exists()
    manager.discard("alpha")

    with manager.instance_lock("alpha", timeout=0.2):
        assert manager.lock_path("alpha").exists()


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["beta", "alpha", "alpha"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "padctl.lock",
            "alpha.lock",
            "beta.lock",
        ]


def test_instance_lock_serialises_threads(tmp_path: Path) -> None:
    """A lock held by one thread blocks another until released."""
    manager = LockManager(tmp_path / "run", default_timeout=2.0)
    acquired = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with manager.instance_lock("alpha"):
            acquired.set()
            release.wait(2.0)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert acquired.wait(2.0)
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass
    finally:
        release.set()
        thread.join()

    with manager.instance_lock("alpha", timeout=0.5) as handle:
        assert handle.path == tmp_path / "run" / "alpha.lock"
