#!/usr/bin/env python3
"""Nix store reclamation engine.

Safety-first pipeline that removes dead store paths:
- Candidate discovery (whole store, age-filtered dead paths, explicit paths,
  package referrer closure)
- Dead/alive classification against a fresh liveness snapshot
- Concurrent deletion with quick (single pass) or iterative (multi-wave,
  adaptive batch size) strategies
- Optional compaction and a stable, parsable summary

Liveness and deletion are delegated to the store collaborators in
store_commands; this module never unlinks anything itself.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import datetime as dt
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Sequence

if TYPE_CHECKING:
    from nix_cleanup.store_commands import Compactor, Deleter, LivenessOracle, PackageResolver

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "nix_cleanup"
APP_VERSION = "0.1.0"
DEFAULT_STORE_ROOT = "/nix/store"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "actions.log"

DEFAULT_CHUNK_SIZE = 200
DEFAULT_MAX_WAVES = 5
DEFAULT_PREVIEW_LIMIT = 20
MIN_JOBS = 4
MAX_JOBS = 32

STRATEGY_QUICK = "quick"
STRATEGY_ITERATIVE = "iterative"
STRATEGIES = (STRATEGY_QUICK, STRATEGY_ITERATIVE)

SELECTOR_WHOLE_STORE = "whole-store"
SELECTOR_OLDER_THAN = "older-than"
SELECTOR_PATHS = "paths"
SELECTOR_PACKAGE = "package"

OUTCOME_NO_CANDIDATES = "no-candidates"
OUTCOME_NOTHING_DELETABLE = "nothing-deletable"
OUTCOME_COMPLETED = "completed"

_DURATION_RE = re.compile(r"([0-9]+)d")


# -------------------------------- Errors ------------------------------------ #


class CleanupError(Exception):
    """Base class for fatal pipeline errors."""


class UsageError(CleanupError):
    """Bad selector combination, duration format or configuration value."""


class ResolutionError(CleanupError):
    """A package or store path could not be resolved."""


class OracleError(CleanupError):
    """The liveness query or compaction failed."""


class SessionError(CleanupError):
    """The privileged session could not be acquired."""


class AbortedError(CleanupError):
    """The operator declined the deletion prompt."""


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def days_since(epoch: float, now_ts: float | None = None) -> int:
    ref = now_ts if now_ts is not None else time.time()
    return max(0, int((ref - epoch) // 86400))


def default_jobs() -> int:
    return min(MAX_JOBS, max(MIN_JOBS, os.cpu_count() or MIN_JOBS))


def parse_duration_days(value: str) -> int:
    """Parse ``<number>d`` into a day count."""
    match = _DURATION_RE.fullmatch(value or "")
    if not match:
        raise UsageError("--older-than expects the format <number>d (example: 30d)")
    return int(match.group(1))


def preview_lines(paths: Iterable[str], limit: int = DEFAULT_PREVIEW_LIMIT) -> list[str]:
    items = list(paths)
    lines = items[:limit]
    if len(items) > limit:
        lines.append(f"... and {len(items) - limit} more")
    return lines


def ask_yes_no(question: str, *, default_yes: bool = False, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    prompt = "[Y/n]" if default_yes else "[y/N]"
    try:
        raw = input(f"{question} {prompt}: ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        # closed stdin (cron, pipes) or Ctrl-C counts as an empty reply
        print()
        return default_yes
    if not raw:
        return default_yes
    return raw in {"y", "yes"}


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def setup_logger(log_file: Path = DEFAULT_LOG_FILE, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path("/tmp") / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if verbose:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


# ------------------------------ Data Models --------------------------------- #


class PathSet:
    """Ordered set of store paths; first occurrence wins."""

    __slots__ = ("_items",)

    def __init__(self, paths: Iterable[str] = ()):
        self._items: dict[str, None] = dict.fromkeys(paths)

    @classmethod
    def from_lines(cls, lines: str | Iterable[str]) -> PathSet:
        if isinstance(lines, str):
            lines = lines.splitlines()
        return cls(line.strip() for line in lines if line.strip())

    def add(self, path: str) -> None:
        self._items.setdefault(path, None)

    def extend(self, paths: Iterable[str]) -> None:
        for p in paths:
            self._items.setdefault(p, None)

    def to_list(self) -> list[str]:
        return list(self._items)

    def chunks(self, size: int) -> Iterator[list[str]]:
        if size <= 0:
            raise ValueError("chunk size must be positive")
        items = self.to_list()
        for start in range(0, len(items), size):
            yield items[start:start + size]

    def __contains__(self, path: object) -> bool:
        return path in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PathSet):
            return list(self._items) == list(other._items)
        return NotImplemented

    def __repr__(self) -> str:
        return f"PathSet({self.to_list()!r})"


@dataclasses.dataclass(slots=True)
class Selector:
    kind: str
    older_than_days: int | None = None
    paths: list[str] = dataclasses.field(default_factory=list)
    package: str | None = None

    @classmethod
    def from_options(
        cls,
        whole_store: bool = False,
        older_than: str | None = None,
        paths: Sequence[str] | None = None,
        package: str | None = None,
    ) -> Selector:
        chosen = [
            name
            for name, on in (
                ("--system", whole_store),
                ("--older-than", older_than is not None),
                ("store paths", bool(paths)),
                ("package", bool(package)),
            )
            if on
        ]
        if not chosen:
            raise UsageError("no cleanup selector given (use --system, --older-than, a package or store paths)")
        if len(chosen) > 1:
            raise UsageError(f"cleanup selectors cannot be combined: {', '.join(chosen)}")

        if whole_store:
            return cls(kind=SELECTOR_WHOLE_STORE)
        if older_than is not None:
            return cls(kind=SELECTOR_OLDER_THAN, older_than_days=parse_duration_days(older_than))
        if paths:
            return cls(kind=SELECTOR_PATHS, paths=list(paths))
        return cls(kind=SELECTOR_PACKAGE, package=package)

    def describe(self) -> str:
        if self.kind == SELECTOR_OLDER_THAN:
            return f"{self.kind}:{self.older_than_days}d"
        if self.kind == SELECTOR_PACKAGE:
            return f"{self.kind}:{self.package}"
        if self.kind == SELECTOR_PATHS:
            return f"{self.kind}:{len(self.paths)}"
        return self.kind


@dataclasses.dataclass(slots=True)
class ReclaimConfig:
    store_root: str = DEFAULT_STORE_ROOT
    jobs: int = dataclasses.field(default_factory=default_jobs)
    assume_yes: bool = False
    strategy: str = STRATEGY_ITERATIVE
    run_compaction: bool = True
    max_waves: int = DEFAULT_MAX_WAVES
    chunk_size: int = DEFAULT_CHUNK_SIZE
    skip_confirm_for_whole_store: bool = True
    preview_limit: int = DEFAULT_PREVIEW_LIMIT

    def validate(self) -> ReclaimConfig:
        for name in ("jobs", "max_waves", "chunk_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise UsageError(f"{name.replace('_', '-')} must be a positive integer (got {value!r})")
        if self.strategy not in STRATEGIES:
            raise UsageError(f"unknown deletion strategy: {self.strategy} (expected one of: {', '.join(STRATEGIES)})")
        return self


@dataclasses.dataclass
class ReclaimContext:
    """Configuration and collaborators handed to every pipeline stage."""

    config: ReclaimConfig
    oracle: LivenessOracle
    deleter: Deleter
    resolver: PackageResolver
    compactor: Compactor
    logger: logging.Logger = dataclasses.field(default_factory=lambda: logging.getLogger(APP_NAME))

    @classmethod
    def for_store(cls, config: ReclaimConfig, store: Any, logger: logging.Logger | None = None) -> ReclaimContext:
        """Bind one object that implements every collaborator protocol."""
        return cls(
            config=config.validate(),
            oracle=store,
            deleter=store,
            resolver=store,
            compactor=store,
            logger=logger or logging.getLogger(APP_NAME),
        )


@dataclasses.dataclass(slots=True)
class DeleteAttempt:
    """Exit status and combined output of one delete command."""

    returncode: int
    output: str = ""


@dataclasses.dataclass(slots=True)
class WaveRecord:
    number: int
    chunk_size: int
    submitted: int
    deleted: int
    remaining: int
    requeued: int = 0
    turned_alive: int = 0


@dataclasses.dataclass
class DeletionOutcome:
    deleted_count: int
    unresolved: PathSet
    waves: list[WaveRecord] = dataclasses.field(default_factory=list)
    errors: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ReclaimPlan:
    candidates: PathSet
    deletable: PathSet
    alive: PathSet
    discovery_seconds: float
    classify_seconds: float

    def to_dict(self, preview_limit: int = DEFAULT_PREVIEW_LIMIT) -> dict[str, Any]:
        return {
            "candidates": len(self.candidates),
            "deletable": len(self.deletable),
            "alive": len(self.alive),
            "deletable_preview": preview_lines(self.deletable, preview_limit),
            "alive_preview": preview_lines(self.alive, preview_limit),
            "discovery_seconds": round(self.discovery_seconds, 3),
            "classify_seconds": round(self.classify_seconds, 3),
        }


@dataclasses.dataclass
class PipelineResult:
    outcome: str
    selector: str
    strategy: str
    candidates: int = 0
    alive_skipped: int = 0
    deleted: int = 0
    unresolved: int = 0
    unresolved_paths: list[str] = dataclasses.field(default_factory=list)
    waves: list[WaveRecord] = dataclasses.field(default_factory=list)
    compacted: bool = False
    discovery_seconds: float = 0.0
    classify_seconds: float = 0.0
    delete_seconds: float = 0.0
    compaction_seconds: float = 0.0
    total_seconds: float = 0.0
    finished_at: str = dataclasses.field(default_factory=now_utc_iso)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def summary_line(self) -> str:
        return (
            f"summary outcome={self.outcome} candidates={self.candidates} "
            f"alive_skipped={self.alive_skipped} deleted={self.deleted} unresolved={self.unresolved} "
            f"discovery_s={self.discovery_seconds:.2f} classify_s={self.classify_seconds:.2f} "
            f"delete_s={self.delete_seconds:.2f} compaction_s={self.compaction_seconds:.2f} "
            f"total_s={self.total_seconds:.2f}"
        )


# -------------------------- Liveness Snapshots ------------------------------ #


class LivenessSnapshotProvider:
    """Query the store for the paths that are dead right now."""

    def __init__(self, oracle: LivenessOracle, logger: logging.Logger):
        self.oracle = oracle
        self.logger = logger

    def snapshot(self) -> PathSet:
        # OracleError propagates; a failed query is never an empty snapshot.
        dead = PathSet.from_lines(self.oracle.query_dead())
        self.logger.info("liveness_snapshot dead=%s", len(dead))
        return dead


def classify(candidates: Iterable[str], snapshot: PathSet) -> tuple[PathSet, PathSet]:
    """Split candidates into (deletable, alive) by membership in the dead snapshot."""
    deletable = PathSet()
    alive = PathSet()
    for path in PathSet(candidates):
        if path in snapshot:
            deletable.add(path)
        else:
            alive.add(path)
    return deletable, alive


# ---------------------------- Candidate Sets -------------------------------- #


class CandidateSetBuilder:
    """Produce the initial universe of paths for one selector."""

    def __init__(self, context: ReclaimContext, provider: LivenessSnapshotProvider):
        self.context = context
        self.provider = provider

    def build(self, selector: Selector) -> PathSet:
        if selector.kind == SELECTOR_WHOLE_STORE:
            return self.whole_store()
        if selector.kind == SELECTOR_OLDER_THAN:
            return self.older_than(int(selector.older_than_days or 0))
        if selector.kind == SELECTOR_PATHS:
            return PathSet(selector.paths)
        if selector.kind == SELECTOR_PACKAGE:
            return self.package_closure(str(selector.package))
        raise UsageError(f"Unknown selector: {selector.kind}")

    def whole_store(self) -> PathSet:
        root = self.context.config.store_root
        try:
            with os.scandir(root) as it:
                names = sorted(entry.name for entry in it)
        except OSError as exc:
            raise CleanupError(f"cannot list store root {root}: {exc}") from exc
        return PathSet(os.path.join(root, name) for name in names)

    def older_than(self, days: int) -> PathSet:
        dead = self.provider.snapshot()
        now_ts = time.time()
        selected = PathSet()
        for path in dead:
            try:
                mtime = os.lstat(path).st_mtime
            except OSError:
                continue
            if days_since(mtime, now_ts) > days:
                selected.add(path)
        self.context.logger.info("older_than_filter days=%s dead=%s selected=%s", days, len(dead), len(selected))
        return selected

    def package_closure(self, package: str) -> PathSet:
        store_path = self.context.resolver.resolve_package(package)
        if not store_path:
            raise ResolutionError(f"Package {package} not found.")
        closure = self.context.oracle.referrers_closure(store_path)
        if closure is None:
            raise ResolutionError(f"store path not found: {store_path}")
        self.context.logger.info("package_closure package=%s path=%s referrers=%s", package, store_path, len(closure))
        return PathSet([store_path, *PathSet.from_lines(closure)])


# ---------------------------- Deletion Engine ------------------------------- #


def delete_error_lines(attempts: Iterable[DeleteAttempt]) -> list[str]:
    lines: PathSet = PathSet()
    for attempt in attempts:
        if attempt.returncode == 0:
            continue
        lines.extend(line.strip() for line in attempt.output.splitlines() if line.strip().startswith("error:"))
    return lines.to_list()


class DeletionStrategy:
    """Shared worker-pool plumbing for the deletion strategies."""

    name = "base"

    def __init__(
        self,
        context: ReclaimContext,
        provider: LivenessSnapshotProvider,
        echo: Callable[[str], None] = print,
        exists: Callable[[str], bool] = os.path.lexists,
    ):
        self.context = context
        self.provider = provider
        self.echo = echo
        self.exists = exists
        self.logger = context.logger

    def execute(self, deletable: PathSet, alive: PathSet) -> DeletionOutcome:
        raise NotImplementedError

    def _delete_chunk(self, chunk: list[str]) -> DeleteAttempt:
        try:
            attempt = self.context.deleter.delete(chunk)
        except SessionError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.warning("delete_batch_error paths=%s err=%s", len(chunk), exc)
            return DeleteAttempt(returncode=1, output=f"error: {exc}")
        if attempt.returncode != 0:
            self.logger.warning("delete_batch_failed rc=%s paths=%s first=%s", attempt.returncode, len(chunk), chunk[0])
        return attempt

    def _submit(self, pending: PathSet, chunk_size: int) -> list[DeleteAttempt]:
        chunks = list(pending.chunks(chunk_size))
        if not chunks:
            return []
        workers = min(self.context.config.jobs, len(chunks))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [ex.submit(self._delete_chunk, chunk) for chunk in chunks]
            return [f.result() for f in futures]

    def _still_existing(self, paths: PathSet) -> PathSet:
        items = paths.to_list()
        if not items:
            return PathSet()
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.context.config.jobs) as ex:
            flags = list(ex.map(self.exists, items, chunksize=64))
        return PathSet(p for p, present in zip(items, flags) if present)


class QuickDeletion(DeletionStrategy):
    """One submission pass, one reclassification, no retries."""

    name = STRATEGY_QUICK

    def execute(self, deletable: PathSet, alive: PathSet) -> DeletionOutcome:
        chunk_size = self.context.config.chunk_size
        attempts = self._submit(deletable, chunk_size)
        remaining = self._still_existing(deletable)
        deleted = len(deletable) - len(remaining)

        unresolved = PathSet()
        turned_alive = PathSet()
        if remaining:
            unresolved, turned_alive = classify(remaining, self.provider.snapshot())
            alive.extend(turned_alive)

        wave = WaveRecord(
            number=1,
            chunk_size=chunk_size,
            submitted=len(deletable),
            deleted=deleted,
            remaining=len(remaining),
            requeued=0,
            turned_alive=len(turned_alive),
        )
        self.logger.info(
            "delete_wave strategy=quick wave=1 chunk=%s submitted=%s deleted=%s unresolved=%s turned_alive=%s",
            chunk_size,
            wave.submitted,
            deleted,
            len(unresolved),
            len(turned_alive),
        )
        return DeletionOutcome(
            deleted_count=deleted,
            unresolved=unresolved,
            waves=[wave],
            errors=delete_error_lines(attempts) if unresolved else [],
        )


class IterativeDeletion(DeletionStrategy):
    """Multi-wave deletion with batch-size fallback and no-progress detection."""

    name = STRATEGY_ITERATIVE

    def execute(self, deletable: PathSet, alive: PathSet) -> DeletionOutcome:
        config = self.context.config
        pending = PathSet(deletable)
        chunk_size = config.chunk_size
        deleted_total = 0
        waves: list[WaveRecord] = []
        last_attempts: list[DeleteAttempt] = []

        for number in range(1, config.max_waves + 1):
            if not pending:
                break

            last_attempts = self._submit(pending, chunk_size)
            remaining = self._still_existing(pending)
            deleted_this_wave = len(pending) - len(remaining)
            deleted_total += deleted_this_wave
            wave = WaveRecord(
                number=number,
                chunk_size=chunk_size,
                submitted=len(pending),
                deleted=deleted_this_wave,
                remaining=len(remaining),
            )
            waves.append(wave)

            if not remaining:
                pending = PathSet()
                self._log_wave(wave)
                break

            retry_dead, turned_alive = classify(remaining, self.provider.snapshot())
            alive.extend(turned_alive)
            wave.requeued = len(retry_dead)
            wave.turned_alive = len(turned_alive)
            self._log_wave(wave)
            pending = retry_dead

            if not pending:
                break

            if deleted_this_wave == 0:
                if chunk_size == 1:
                    self.echo(f"No progress deleting remaining dead paths; giving up after wave {number}.")
                    break
                if number < config.max_waves:
                    self.echo("Retrying remaining dead paths one-by-one to resolve referrer ordering...")
                    chunk_size = 1
        else:
            if pending:
                self.echo(f"Reached the wave limit ({config.max_waves}) with {len(pending)} dead path(s) left.")

        return DeletionOutcome(
            deleted_count=deleted_total,
            unresolved=pending,
            waves=waves,
            errors=delete_error_lines(last_attempts) if pending else [],
        )

    def _log_wave(self, wave: WaveRecord) -> None:
        self.logger.info(
            "delete_wave strategy=iterative wave=%s chunk=%s submitted=%s deleted=%s remaining=%s requeued=%s turned_alive=%s",
            wave.number,
            wave.chunk_size,
            wave.submitted,
            wave.deleted,
            wave.remaining,
            wave.requeued,
            wave.turned_alive,
        )


def build_strategy(
    context: ReclaimContext,
    provider: LivenessSnapshotProvider,
    echo: Callable[[str], None] = print,
) -> DeletionStrategy:
    name = context.config.strategy
    if name == STRATEGY_QUICK:
        return QuickDeletion(context, provider, echo=echo)
    if name == STRATEGY_ITERATIVE:
        return IterativeDeletion(context, provider, echo=echo)
    raise UsageError(f"unknown deletion strategy: {name}")


# ------------------------------ Orchestrator -------------------------------- #


class ReclaimPipeline:
    """Discovery -> classification -> deletion -> optional compaction."""

    def __init__(
        self,
        context: ReclaimContext,
        echo: Callable[[str], None] = print,
        confirm: Callable[[str], bool] = ask_yes_no,
        progress: Callable[[dict[str, Any]], None] | None = None,
    ):
        self.context = context
        self.config = context.config
        self.logger = context.logger
        self.echo = echo
        self.confirm = confirm
        self.progress = progress or (lambda _payload: None)
        self.provider = LivenessSnapshotProvider(context.oracle, context.logger)
        self.builder = CandidateSetBuilder(context, self.provider)

    def plan(self, selector: Selector) -> ReclaimPlan:
        self.progress({"phase": "discovery", "pct": 5.0, "selector": selector.describe()})
        started = time.perf_counter()
        candidates = self.builder.build(selector)
        discovery_seconds = time.perf_counter() - started
        self.logger.info("discovery selector=%s candidates=%s", selector.describe(), len(candidates))

        if not candidates:
            return ReclaimPlan(candidates, PathSet(), PathSet(), discovery_seconds, 0.0)

        self.progress({"phase": "classify", "pct": 25.0, "candidates": len(candidates)})
        started = time.perf_counter()
        deletable, alive = classify(candidates, self.provider.snapshot())
        classify_seconds = time.perf_counter() - started
        self.logger.info("classify deletable=%s alive=%s", len(deletable), len(alive))
        return ReclaimPlan(candidates, deletable, alive, discovery_seconds, classify_seconds)

    def run(self, selector: Selector) -> PipelineResult:
        started = time.perf_counter()
        result = PipelineResult(
            outcome=OUTCOME_COMPLETED,
            selector=selector.describe(),
            strategy=self.config.strategy,
        )

        plan = self.plan(selector)
        result.candidates = len(plan.candidates)
        result.discovery_seconds = plan.discovery_seconds
        result.classify_seconds = plan.classify_seconds

        if not plan.candidates:
            self.echo("No matching nix-store paths found.")
            result.outcome = OUTCOME_NO_CANDIDATES
            return self._finish(result, started)

        alive = plan.alive
        if alive:
            self.echo(f"Skipping {len(alive)} path(s) that are still alive:")
            self._preview(alive)

        if not plan.deletable:
            self.echo("No deletable (dead) nix-store paths found.")
            result.alive_skipped = len(alive)
            result.outcome = OUTCOME_NOTHING_DELETABLE
            return self._finish(result, started)

        self.echo(f"The following dead paths will be deleted ({len(plan.deletable)}):")
        self._preview(plan.deletable)

        if self._needs_confirmation(selector):
            if not self.confirm("Are you sure you want to delete these paths?"):
                self.logger.info("pipeline_aborted selector=%s", selector.describe())
                raise AbortedError("Aborting.")

        self.progress({"phase": "delete", "pct": 40.0, "deletable": len(plan.deletable)})
        strategy = build_strategy(self.context, self.provider, echo=self.echo)
        delete_started = time.perf_counter()
        outcome = strategy.execute(plan.deletable, alive)
        result.delete_seconds = time.perf_counter() - delete_started

        result.deleted = outcome.deleted_count
        result.unresolved = len(outcome.unresolved)
        result.unresolved_paths = outcome.unresolved.to_list()
        result.waves = outcome.waves
        result.alive_skipped = len(alive)

        skipped_at_delete = len(plan.deletable) - outcome.deleted_count - len(outcome.unresolved)
        if skipped_at_delete > 0:
            self.echo(f"Skipped {skipped_at_delete} path(s) that became alive at delete time.")

        if outcome.unresolved:
            self.echo(f"Could not delete {len(outcome.unresolved)} dead path(s):")
            self._preview(outcome.unresolved)
            if outcome.errors:
                self.echo("Delete command errors (first lines):")
                self._preview(outcome.errors)

        self.echo(f"Deleted {outcome.deleted_count} path(s).")
        return self._finish(result, started)

    def _needs_confirmation(self, selector: Selector) -> bool:
        if self.config.assume_yes:
            return False
        if selector.kind == SELECTOR_WHOLE_STORE and self.config.skip_confirm_for_whole_store:
            return False
        return True

    def _preview(self, paths: Iterable[str]) -> None:
        for line in preview_lines(paths, self.config.preview_limit):
            self.echo(line)

    def _compact(self, result: PipelineResult) -> None:
        if not self.config.run_compaction:
            return
        self.progress({"phase": "compaction", "pct": 85.0})
        started = time.perf_counter()
        self.context.compactor.collect_garbage()
        result.compaction_seconds = time.perf_counter() - started
        result.compacted = True
        self.echo("Garbage collection complete. Nix store is cleaned up.")

    def _finish(self, result: PipelineResult, started: float) -> PipelineResult:
        self._compact(result)
        result.total_seconds = time.perf_counter() - started
        result.finished_at = now_utc_iso()
        self.logger.info(
            "pipeline_complete outcome=%s selector=%s strategy=%s candidates=%s alive_skipped=%s deleted=%s unresolved=%s total_s=%.2f",
            result.outcome,
            result.selector,
            result.strategy,
            result.candidates,
            result.alive_skipped,
            result.deleted,
            result.unresolved,
            result.total_seconds,
        )
        self.progress({"phase": "completed", "pct": 100.0})
        return result


__all__ = [
    "AbortedError",
    "CandidateSetBuilder",
    "CleanupError",
    "DeleteAttempt",
    "DeletionOutcome",
    "IterativeDeletion",
    "LivenessSnapshotProvider",
    "OracleError",
    "PathSet",
    "PipelineResult",
    "QuickDeletion",
    "ReclaimConfig",
    "ReclaimContext",
    "ReclaimPipeline",
    "ReclaimPlan",
    "ResolutionError",
    "Selector",
    "SessionError",
    "UsageError",
    "WaveRecord",
    "build_strategy",
    "classify",
    "parse_duration_days",
    "preview_lines",
    "setup_logger",
]
