#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
ROM Curator - command line interface

Thin command surface over the curator operations. Every command prints its
report as JSON on stdout; logging goes to stderr.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .app.api import (
    CatalogStore,
    CheckStatus,
    JobStatus,
    check_library,
    convert,
    import_catalog,
    organize_library,
    plan_conversions,
    reconcile,
    record_bindings,
    record_conversions,
    select_one_game_one_rom,
    to_jsonable,
    trash_check_failures,
)
from .config import CuratorConfig, load_config
from .containers import ContainerKind
from .exceptions import BaseError
from .logging_config import cleanup_logging, setup_logging
from .version import load_version

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="romcurator",
        description="ROM Curator - reconcile ROM libraries against DAT catalogs and convert containers",
    )
    parser.add_argument("--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--log-level", help="Override the configured log level (DEBUG, INFO, ...)")
    parser.add_argument("--version", action="version", version=f"romcurator {load_version()}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import-dat", help="Import a DAT catalog into the store")
    p_import.add_argument("dat", help="Logiqx XML, ClrMamePro text or zipped DAT")
    p_import.add_argument("--header", help="ClrMamePro header detector XML for this system")
    p_import.add_argument("--prune", action="store_true", default=None, help="Delete stored roms the DAT no longer lists")
    p_import.add_argument("--system", help="Store under this system name instead of the DAT's own")

    p_reconcile = sub.add_parser("reconcile", help="Match files under ROOT against a system")
    p_reconcile.add_argument("system")
    p_reconcile.add_argument("root")
    p_reconcile.add_argument("--record", action="store_true", help="Persist EXACT matches as bindings")

    p_select = sub.add_parser("select", help="Pick one verified release per clone group")
    p_select.add_argument("system")
    p_select.add_argument("root")

    p_convert = sub.add_parser("convert", help="Convert the selected releases to another container")
    p_convert.add_argument("system")
    p_convert.add_argument("root")
    p_convert.add_argument("--to", dest="target", required=True, choices=[k.value for k in ContainerKind])
    p_convert.add_argument("--keep-source", action="store_true", help="Keep the source file after verification")

    p_organize = sub.add_parser("organize", help="Rename matched files after their roms")
    p_organize.add_argument("system")
    p_organize.add_argument("root")
    p_organize.add_argument("--trash-unmatched", action="store_true", default=None,
                            help="Move files matching no rom into the trash folder")
    p_organize.add_argument("--dry-run", action="store_true", help="Only report the planned moves")

    p_check = sub.add_parser("check", help="Re-verify recorded bindings of a system")
    p_check.add_argument("system")
    p_check.add_argument("--trash", metavar="ROOT", help="Move files that no longer verify into ROOT's trash folder")
    return parser


def _emit(payload: Dict[str, Any]) -> None:
    json.dump(to_jsonable(payload), sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")


def _with_root(config: CuratorConfig, root: str) -> CuratorConfig:
    if config.library_root:
        return config
    return config.model_copy(update={"library_root": str(Path(root).resolve())})


def _cmd_import(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    report = import_catalog(
        store,
        args.dat,
        config=config,
        header_path=args.header,
        prune=args.prune,
        system_name=args.system,
    )
    _emit({"command": "import-dat", "report": report})
    return 0


def _cmd_reconcile(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    report = reconcile(store, args.system, args.root, config=config)
    recorded = record_bindings(store, report) if args.record else None
    _emit({"command": "reconcile", "counts": report.counts, "recorded": recorded, "report": report})
    return 0


def _cmd_select(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    snapshot = store.load_snapshot(args.system)
    matches = reconcile(store, args.system, args.root, config=config)
    selection = select_one_game_one_rom(snapshot, matches.results, config.preferences)
    _emit({"command": "select", "report": selection})
    return 0


def _cmd_convert(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    config = _with_root(config, args.root)
    if args.keep_source:
        config = config.model_copy(
            update={"conversion": config.conversion.model_copy(update={"keep_source": True})}
        )
    snapshot = store.load_snapshot(args.system)
    matches = reconcile(store, args.system, args.root, config=config)
    selection = select_one_game_one_rom(snapshot, matches.results, config.preferences)
    jobs = plan_conversions(selection, matches, ContainerKind.parse(args.target))
    report = convert(jobs, config=config)
    rebound = record_conversions(store, report)
    _emit({"command": "convert", "counts": report.counts, "rebound": rebound, "report": report})
    return 1 if report.counts[JobStatus.FAILED.value] else 0


def _cmd_organize(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    matches = reconcile(store, args.system, args.root, config=config)
    report = organize_library(
        store, matches, config=config, trash_unmatched=args.trash_unmatched, dry_run=args.dry_run
    )
    _emit({"command": "organize", "counts": report.counts, "report": report})
    return 1 if report.counts["failed"] else 0


def _cmd_check(store: CatalogStore, config: CuratorConfig, args: argparse.Namespace) -> int:
    report = check_library(store, args.system, config=config)
    payload = {"command": "check", "counts": report.counts, "report": report}
    if args.trash:
        trashed = trash_check_failures(store, report, args.trash, config=config)
        payload["trash"] = {"counts": trashed.counts, "report": trashed}
    _emit(payload)
    return 0 if all(item.status is CheckStatus.OK for item in report.items) else 1


COMMANDS = {
    "import-dat": _cmd_import,
    "reconcile": _cmd_reconcile,
    "select": _cmd_select,
    "convert": _cmd_convert,
    "organize": _cmd_organize,
    "check": _cmd_check,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except BaseError as exc:
        _emit({"command": args.command, "error": exc.to_dict()})
        return 2

    log_settings = config.logging
    setup_logging(
        log_level=args.log_level or log_settings.level,
        log_dir=log_settings.log_dir,
        enable_file_logging=log_settings.file_logging,
        max_log_size=log_settings.max_log_size,
        backup_count=log_settings.backup_count,
        structured_json=log_settings.json_format,
    )
    try:
        with CatalogStore.from_config(config) as store:
            return COMMANDS[args.command](store, config, args)
    except BaseError as exc:
        logger.error("%s failed: %s", args.command, exc)
        _emit({"command": args.command, "error": exc.to_dict()})
        return 1
    except FileNotFoundError as exc:
        logger.error("%s failed: %s", args.command, exc)
        _emit({"command": args.command, "error": {"error_code": "FILE_NOT_FOUND", "message": str(exc)}})
        return 1
    finally:
        cleanup_logging()


if __name__ == "__main__":
    sys.exit(main())
