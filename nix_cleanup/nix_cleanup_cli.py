#!/usr/bin/env python3
"""nix-cleanup - clean dead nix store paths safely.

Command-line front end for the reclamation pipeline in reclaim_engine.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from nix_cleanup.reclaim_engine import (
    APP_VERSION,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_LOG_FILE,
    DEFAULT_MAX_WAVES,
    DEFAULT_STORE_ROOT,
    STRATEGIES,
    STRATEGY_ITERATIVE,
    AbortedError,
    CleanupError,
    ReclaimConfig,
    ReclaimContext,
    ReclaimPipeline,
    Selector,
    UsageError,
    ask_yes_no,
    default_jobs,
    export_json,
    setup_logger,
)
from nix_cleanup.store_commands import CrontabRegistrar, NixStore, ScheduleRegistrar, normalize_cron_entry

EPILOG = """\
Notes:
  - --add-cron cannot be combined with cleanup options or arguments.
  - --older-than cannot be combined with package/store path arguments.
  - Non --system cleanup prompts for confirmation before deleting.

Examples:
  nix-cleanup --older-than 30d
  nix-cleanup hello
  nix-cleanup /nix/store/hash-a /nix/store/hash-b
  nix-cleanup --strategy quick --older-than 30d --yes
  nix-cleanup --add-cron "nix-cleanup --older-than 30d --yes"
  nix-cleanup --add-cron "0 3 * * * nix-cleanup --older-than 30d --yes"
"""


class CleanupArgumentParser(argparse.ArgumentParser):
    """Report parse failures as usage errors so they share the exit path."""

    def error(self, message: str):  # type: ignore[override]
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    p = CleanupArgumentParser(
        prog="nix-cleanup",
        description="nix-cleanup - clean dead nix store paths safely",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("targets", nargs="*", metavar="PACKAGE_OR_STORE_PATH",
                   help="One flake package name, or one or more store paths")
    p.add_argument("-y", "--yes", action="store_true", help="Skip deletion confirmation prompts")
    p.add_argument("--system", action="store_true", help="Clean the whole nix store state")
    p.add_argument("--older-than", default=None, metavar="DURATION",
                   help="Clean dead store paths older than DURATION, format <number>d (example: 30d)")
    p.add_argument("--add-cron", nargs=argparse.REMAINDER, default=None, metavar="COMMAND_OR_CRON_ENTRY",
                   help="Add an entry to root's crontab; plain commands are stored as '@daily <command>'")

    tuning = p.add_argument_group("pipeline")
    tuning.add_argument("--strategy", choices=STRATEGIES,
                        default=os.getenv("NIX_CLEANUP_STRATEGY", STRATEGY_ITERATIVE),
                        help="quick: one pass; iterative: multi-wave with adaptive batch size")
    tuning.add_argument("-j", "--jobs", type=int, default=None,
                        help="Worker count (default: clamp(cpu count, 4, 32) or NIX_CLEANUP_JOBS)")
    tuning.add_argument("--max-waves", type=int, default=DEFAULT_MAX_WAVES, help="Iterative strategy wave cap")
    tuning.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE, help="Paths per delete command")
    tuning.add_argument("--no-gc", action="store_true", help="Skip nix-collect-garbage after deletion")
    tuning.add_argument("--confirm-system", action="store_true", help="Prompt for confirmation with --system too")
    tuning.add_argument("--store-root", default=DEFAULT_STORE_ROOT, help="Store directory")

    out = p.add_argument_group("output")
    out.add_argument("--report", default=None, help="Write the pipeline summary as JSON to this file")
    out.add_argument("--log-file", default=os.getenv("NIX_CLEANUP_LOG", str(DEFAULT_LOG_FILE)), help="Action log file")
    out.add_argument("-v", "--verbose", action="store_true", help="Mirror the action log on stderr")
    out.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return p


def split_targets(targets: list[str], store_root: str) -> tuple[list[str], str | None]:
    """Return (store paths, package name) from the positional arguments."""
    if not targets:
        return [], None
    prefix = store_root.rstrip("/") + "/"
    if all(t.startswith(prefix) for t in targets):
        return list(targets), None
    if len(targets) > 1:
        raise UsageError(f"expected one flake package name or one/more {prefix}path values")
    return [], targets[0]


def build_selector(args: argparse.Namespace) -> Selector | None:
    if args.older_than is not None and args.targets:
        raise UsageError("--older-than cannot be combined with package/store path arguments")
    paths, package = split_targets(args.targets, args.store_root)
    if not (args.system or args.older_than is not None or paths or package):
        return None
    return Selector.from_options(
        whole_store=args.system,
        older_than=args.older_than,
        paths=paths,
        package=package,
    )


def _env_jobs() -> int:
    raw = os.getenv("NIX_CLEANUP_JOBS", "").strip()
    if not raw:
        return default_jobs()
    try:
        return int(raw)
    except ValueError as exc:
        raise UsageError(f"NIX_CLEANUP_JOBS must be a positive integer (got {raw!r})") from exc


def build_config(args: argparse.Namespace) -> ReclaimConfig:
    return ReclaimConfig(
        store_root=args.store_root,
        jobs=args.jobs if args.jobs is not None else _env_jobs(),
        assume_yes=args.yes,
        strategy=args.strategy,
        run_compaction=not args.no_gc,
        max_waves=args.max_waves,
        chunk_size=args.chunk_size,
        skip_confirm_for_whole_store=not args.confirm_system,
    ).validate()


def build_store(config: ReclaimConfig) -> NixStore:
    return NixStore.from_environment(store_root=config.store_root)


def build_registrar() -> ScheduleRegistrar:
    return CrontabRegistrar()


def command_add_cron(args: argparse.Namespace) -> int:
    if args.system or args.older_than is not None or args.targets:
        raise UsageError("--add-cron cannot be combined with cleanup options/arguments")
    entry = normalize_cron_entry(" ".join(args.add_cron))
    if not build_registrar().register(entry):
        print("Cron entry already exists in root crontab.")
        return 0
    print("Installed cron entry in root crontab:")
    print(entry)
    return 0


def command_cleanup(args: argparse.Namespace, selector: Selector) -> int:
    config = build_config(args)
    logger = setup_logger(Path(args.log_file), verbose=args.verbose)
    context = ReclaimContext.for_store(config, build_store(config), logger)

    if selector.kind == "whole-store":
        print("Indexing and deleting all nix-store paths...")
    elif selector.kind == "older-than":
        print(f"Indexing nix-store paths older than {selector.older_than_days}d...")

    pipeline = ReclaimPipeline(context, echo=print, confirm=lambda question: ask_yes_no(question))
    result = pipeline.run(selector)
    print(result.summary_line())
    if args.report:
        export_json(Path(args.report), result.to_dict())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if args.add_cron is not None:
            return command_add_cron(args)
        selector = build_selector(args)
        if selector is None:
            parser.print_help()
            return 1
        return command_cleanup(args, selector)
    except AbortedError as exc:
        print(str(exc))
        return 1
    except CleanupError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
