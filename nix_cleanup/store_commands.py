#!/usr/bin/env python3
"""Store collaborators: liveness oracle, deleter, resolver, compaction, cron.

The reclamation engine only talks to these protocols. NixStore is the real
implementation and shells out to nix, nix-store and nix-collect-garbage,
elevating through a cached sudo session when not running as root.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

from nix_cleanup.reclaim_engine import (
    DEFAULT_STORE_ROOT,
    CleanupError,
    DeleteAttempt,
    OracleError,
    SessionError,
    UsageError,
)

REQUIRED_COMMANDS = ("nix", "nix-store", "nix-collect-garbage")

_CRON_KEYWORD_RE = re.compile(r"^@[A-Za-z0-9_-]+\s+.+$")


# ------------------------------- Protocols ---------------------------------- #


@runtime_checkable
class LivenessOracle(Protocol):
    def query_dead(self) -> list[str]:
        """Paths that are unreachable from every root right now. Raises OracleError on failure."""
        ...

    def referrers_closure(self, path: str) -> list[str] | None:
        """Transitive referrers of path, or None when the path is unknown to the store."""
        ...


@runtime_checkable
class Deleter(Protocol):
    def delete(self, paths: Sequence[str]) -> DeleteAttempt:
        """Attempt to delete a batch; the outcome is re-verified by the caller."""
        ...


@runtime_checkable
class PackageResolver(Protocol):
    def resolve_package(self, name: str) -> str | None:
        ...


@runtime_checkable
class Compactor(Protocol):
    def collect_garbage(self) -> None:
        ...


@runtime_checkable
class ScheduleRegistrar(Protocol):
    def register(self, entry: str) -> bool:
        """Install entry; False when it was already present."""
        ...


# ------------------------------- Processes ---------------------------------- #


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def with_sudo(cmd: list[str], sudo: bool) -> list[str]:
    if sudo and os.geteuid() != 0:
        return ["sudo", "-H", *cmd]
    return cmd


def run_cmd(
    cmd: list[str],
    *,
    sudo: bool = False,
    capture: bool = True,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            with_sudo(cmd, sudo),
            check=False,
            text=True,
            capture_output=capture,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(cmd, 127, "", f"command not found: {cmd[0]}")
    except OSError as exc:
        return subprocess.CompletedProcess(cmd, 1, "", str(exc))


class PrivilegedSession:
    """Lazily acquired, cached sudo credentials for one invocation."""

    def __init__(self) -> None:
        self._ready = os.geteuid() == 0
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    def ensure(self) -> None:
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            # `sudo -H` is valid for command execution, but not for `-v` on all sudo versions.
            cp = run_cmd(["sudo", "-v"], capture=False)
            if cp.returncode != 0:
                raise SessionError("sudo authentication failed")
            self._ready = True


# ------------------------------- Nix Store ---------------------------------- #


class NixStore:
    """Real-process implementation of every store collaborator."""

    def __init__(
        self,
        nix_bin: str = "nix",
        nix_store_bin: str = "nix-store",
        collect_garbage_bin: str = "nix-collect-garbage",
        session: PrivilegedSession | None = None,
        store_root: str = DEFAULT_STORE_ROOT,
    ):
        self.nix_bin = nix_bin
        self.nix_store_bin = nix_store_bin
        self.collect_garbage_bin = collect_garbage_bin
        self.session = session or PrivilegedSession()
        self.store_root = store_root

    @classmethod
    def from_environment(cls, store_root: str = DEFAULT_STORE_ROOT, session: PrivilegedSession | None = None) -> NixStore:
        resolved: dict[str, str] = {}
        for name in REQUIRED_COMMANDS:
            path = shutil.which(name)
            if not path:
                raise CleanupError(f"package required: {name}")
            resolved[name] = path
        return cls(
            nix_bin=resolved["nix"],
            nix_store_bin=resolved["nix-store"],
            collect_garbage_bin=resolved["nix-collect-garbage"],
            session=session,
            store_root=store_root,
        )

    def query_dead(self) -> list[str]:
        self.session.ensure()
        cp = run_cmd([self.nix_store_bin, "--gc", "--print-dead"], sudo=True)
        if cp.returncode != 0:
            raise OracleError(f"failed to query dead store paths: {(cp.stderr or '').strip()}")
        return [line.strip() for line in (cp.stdout or "").splitlines() if line.strip()]

    def referrers_closure(self, path: str) -> list[str] | None:
        cp = run_cmd([self.nix_store_bin, "--query", "--referrers-closure", path])
        if cp.returncode != 0:
            return None
        return [line.strip() for line in (cp.stdout or "").splitlines() if line.strip()]

    def delete(self, paths: Sequence[str]) -> DeleteAttempt:
        self.session.ensure()
        cp = run_cmd([self.nix_store_bin, "--delete", *paths], sudo=True)
        return DeleteAttempt(returncode=cp.returncode, output=(cp.stdout or "") + (cp.stderr or ""))

    def resolve_package(self, name: str) -> str | None:
        cp = run_cmd([self.nix_bin, "path-info", f".#{name}"])
        if cp.returncode != 0:
            return None
        lines = [line.strip() for line in (cp.stdout or "").splitlines() if line.strip()]
        return lines[0] if lines else None

    def collect_garbage(self) -> None:
        self.session.ensure()
        cp = run_cmd([self.collect_garbage_bin, "-d"], sudo=True, capture=False)
        if cp.returncode != 0:
            raise OracleError(f"garbage collection failed (exit {cp.returncode})")


# --------------------------------- Cron ------------------------------------- #


def valid_cron_entry(entry: str) -> bool:
    if _CRON_KEYWORD_RE.match(entry):
        return True
    # five schedule fields followed by a command
    return len(entry.split(None, 5)) == 6


def normalize_cron_entry(value: str) -> str:
    text = (value or "").strip()
    if not text:
        raise UsageError("--add-cron requires a command or cron entry")
    if valid_cron_entry(text):
        return text
    return f"@daily {text}"


class CrontabRegistrar:
    """Append entries to root's crontab, skipping exact duplicates."""

    def __init__(self, session: PrivilegedSession | None = None, crontab_bin: str = "crontab"):
        self.session = session or PrivilegedSession()
        self.crontab_bin = crontab_bin

    def register(self, entry: str) -> bool:
        if not command_exists(self.crontab_bin):
            raise CleanupError(f"package required for --add-cron: {self.crontab_bin}")
        self.session.ensure()

        listing = run_cmd([self.crontab_bin, "-l"], sudo=True)
        # no crontab yet for root
        existing = (listing.stdout or "") if listing.returncode == 0 else ""
        lines = existing.splitlines()
        if entry in lines:
            return False

        merged = "\n".join([*lines, entry]) + "\n"
        with tempfile.TemporaryDirectory(prefix="nix-cleanup-cron-") as td:
            cron_file = Path(td) / "crontab"
            cron_file.write_text(merged, encoding="utf-8")
            os.chmod(td, 0o755)
            os.chmod(cron_file, 0o644)
            cp = run_cmd([self.crontab_bin, str(cron_file)], sudo=True)
        if cp.returncode != 0:
            raise CleanupError(f"failed to install cron entry: {(cp.stderr or '').strip()}")
        return True


__all__ = [
    "Compactor",
    "CrontabRegistrar",
    "Deleter",
    "LivenessOracle",
    "NixStore",
    "PackageResolver",
    "PrivilegedSession",
    "ScheduleRegistrar",
    "normalize_cron_entry",
    "run_cmd",
    "valid_cron_entry",
    "with_sudo",
]
