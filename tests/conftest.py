"""
Pytest fixtures for nix-cleanup tests.

FakeStore implements every store collaborator on top of a temporary
directory, so existence checks in the deletion strategies see real files.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from nix_cleanup.reclaim_engine import (
    DeleteAttempt,
    OracleError,
    ReclaimConfig,
    ReclaimContext,
)


class FakeStore:
    """In-process store: liveness from explicit roots plus referrer edges."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.rooted: set[str] = set()
        self.referrers: dict[str, set[str]] = {}
        self.undeletable: set[str] = set()
        self.packages: dict[str, str] = {}
        self.fail_query = False
        self.fail_gc = False
        self.before_delete: Callable[[list[str]], None] | None = None
        self.events: list[tuple[str, Any]] = []
        self.query_dead_calls = 0
        self.gc_calls = 0
        self._lock = threading.RLock()

    # -- setup helpers ----------------------------------------------------- #

    def add(self, name: str, *, alive: bool = False, referrers: Sequence[str] = (), age_days: int = 0) -> str:
        path = self.root / name
        path.write_text(name, encoding="utf-8")
        if age_days:
            ts = time.time() - age_days * 86400 - 3600
            os.utime(path, (ts, ts))
        p = str(path)
        if alive:
            self.rooted.add(p)
        self.referrers[p] = set(referrers)
        return p

    def exists(self, path: str) -> bool:
        return os.path.lexists(path)

    def is_alive(self, path: str) -> bool:
        if path in self.rooted:
            return True
        return any(self.exists(r) and self.is_alive(r) for r in self.referrers.get(path, ()))

    def snapshots(self) -> list[set[str]]:
        return [payload for kind, payload in self.events if kind == "snapshot"]

    def delete_batches(self) -> list[list[str]]:
        return [payload for kind, payload in self.events if kind == "delete"]

    # -- collaborator protocols ------------------------------------------- #

    def query_dead(self) -> list[str]:
        with self._lock:
            self.query_dead_calls += 1
            if self.fail_query:
                raise OracleError("failed to query dead store paths")
            dead = [p for p in sorted(self.referrers) if self.exists(p) and not self.is_alive(p)]
            self.events.append(("snapshot", set(dead)))
            return dead

    def referrers_closure(self, path: str) -> list[str] | None:
        if not self.exists(path):
            return None
        seen: list[str] = []
        stack = list(self.referrers.get(path, ()))
        while stack:
            r = stack.pop()
            if r in seen or not self.exists(r):
                continue
            seen.append(r)
            stack.extend(self.referrers.get(r, ()))
        return sorted(seen)

    def delete(self, paths: Sequence[str]) -> DeleteAttempt:
        with self._lock:
            batch = list(paths)
            if self.before_delete:
                self.before_delete(batch)
            self.events.append(("delete", batch))
            errors = []
            for p in batch:
                if not self.exists(p):
                    errors.append(f"error: path '{p}' is not valid")
                elif p in self.undeletable:
                    errors.append(f"error: cannot delete path '{p}': permission denied")
                elif self.is_alive(p):
                    errors.append(f"error: cannot delete path '{p}' since it is still alive.")
                elif any(self.exists(r) and r not in batch for r in self.referrers.get(p, ())):
                    errors.append(f"error: cannot delete path '{p}' since it is still alive.")
            if errors:
                return DeleteAttempt(returncode=1, output="\n".join(errors) + "\n")
            for p in batch:
                os.unlink(p)
            return DeleteAttempt(returncode=0, output=f"{len(batch)} store paths deleted\n")

    def resolve_package(self, name: str) -> str | None:
        return self.packages.get(name)

    def collect_garbage(self) -> None:
        self.gc_calls += 1
        if self.fail_gc:
            raise OracleError("garbage collection failed (exit 1)")


def assert_deletes_within_snapshots(store: FakeStore) -> None:
    """Every delete batch only names paths from the most recent snapshot."""
    latest: set[str] | None = None
    for kind, payload in store.events:
        if kind == "snapshot":
            latest = payload
        elif kind == "delete":
            assert latest is not None, "delete issued before any liveness snapshot"
            assert set(payload) <= latest, f"batch {payload} not in latest snapshot"


@pytest.fixture
def store(tmp_path: Path) -> FakeStore:
    return FakeStore(tmp_path / "store")


@pytest.fixture
def make_context(store: FakeStore) -> Callable[..., ReclaimContext]:
    def factory(**overrides: Any) -> ReclaimContext:
        options: dict[str, Any] = {"store_root": str(store.root), "jobs": 4}
        options.update(overrides)
        return ReclaimContext.for_store(ReclaimConfig(**options), store, logging.getLogger("nix_cleanup.tests"))

    return factory
