"""Command line entry point for the component library."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, NoReturn

from measure_library.core.config import LibraryConfig
from measure_library.core.constants import COMPONENT_STATUSES
from measure_library.core.exceptions import ConfigurationError, MeasureLibraryError
from measure_library.core.logging import setup_logging
from measure_library.core.version import __version__
from measure_library.library.service import ComponentLibraryService
from measure_library.measures.collection import MeasureCollection, load_measures, save_measures
from measure_library.output.inventory import EXPORT_FORMATS, export_inventory

# Attempt to load argcomplete for shell tab-completion (optional dependency)
_ARGCOMPLETE_AVAILABLE = False
try:
    import argcomplete

    _ARGCOMPLETE_AVAILABLE = True
except ImportError:
    pass  # argcomplete not installed

BANNER_WIDTH = 60


def _exit_error(msg: str) -> NoReturn:
    print(f"ERROR: {msg}", file=sys.stderr)
    sys.exit(1)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="measure-library",
        description="Measure Library - keep clinical quality measures and the component library consistent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show sync state and catalogue counts
  measure-library status

  # Pull the catalogue from the remote store
  measure-library load --api-url https://measures.example.org/api

  # Retry failed remote operations, ignoring backoff
  measure-library retry-sync --force

  # Link measures to the catalogue and recompute usage
  measure-library link --measures measures.json
  measure-library rebuild-usage --measures measures.json

  # Merge duplicates and re-point the measures that used them
  measure-library merge comp-a comp-b --name "Diabetes Diagnosis" --measures measures.json

  # Export the catalogue
  measure-library export --format csv --output catalogue.csv
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-url", help="Remote component store base URL")
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    parser.add_argument("--state-dir", help="Directory holding the local library state")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], help="Logging level"
    )
    parser.add_argument("--log-format", choices=["text", "json"], default="text", help="Log output format")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress progress bars")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    status = subparsers.add_parser("status", help="Show sync status and catalogue counts")
    status.add_argument("--format", choices=["table", "json"], default="table", dest="output_format")

    subparsers.add_parser("load", help="Load the catalogue from the remote store")

    retry = subparsers.add_parser("retry-sync", help="Retry pending remote operations")
    retry.add_argument("--force", action="store_true", help="Ignore the backoff window")

    link = subparsers.add_parser("link", help="Link measures to library components")
    link.add_argument("--measures", required=True, help="Measures JSON file (rewritten with the new links)")

    rebuild = subparsers.add_parser("rebuild-usage", help="Recompute usage from a measures file")
    rebuild.add_argument("--measures", required=True, help="Measures JSON file")
    rebuild.add_argument(
        "--recalculate", action="store_true", help="Also match elements that have no explicit library link"
    )

    merge = subparsers.add_parser("merge", help="Merge atomic components into a new one")
    merge.add_argument("component_ids", nargs="+", metavar="ID", help="Components to merge (at least two)")
    merge.add_argument("--name", required=True, help="Name of the merged component")
    merge.add_argument("--description", help="Description of the merged component")
    merge.add_argument("--merged-by", default="cli", help="Recorded as author of the merge")
    merge.add_argument("--measures", help="Measures JSON file whose links are re-pointed and rewritten")

    export = subparsers.add_parser("export", help="Export the catalogue inventory")
    export.add_argument("--format", choices=list(EXPORT_FORMATS), default="csv", dest="output_format")
    export.add_argument("--output", required=True, help="Output file path")

    # Enable shell tab-completion if argcomplete is installed
    if _ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    return parser


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments"""
    return build_parser().parse_args(argv)


# ==================== COMMANDS ====================


def _cmd_status(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    status = service.get_sync_status()
    counts = service.get_category_counts()
    by_status = {s: len(service.get_by_status(s)) for s in COMPONENT_STATUSES}
    if args.output_format == "json":
        _print_json({"sync": status, "categories": counts, "statuses": by_status, "total": len(service.store)})
        return 0

    print("=" * BANNER_WIDTH)
    print("COMPONENT LIBRARY STATUS")
    print("=" * BANNER_WIDTH)
    print(f"Components: {len(service.store)}")
    for status_name, count in by_status.items():
        print(f"  {status_name:<16} {count}")
    print("Categories (non-archived):")
    for category, count in sorted(counts.items()):
        print(f"  {category:<24} {count}")
    sync_line = "in sync" if status["is_synced"] else f"{status['pending_count']} pending"
    print(f"Remote sync: {sync_line}")
    if status["abandoned_ids"]:
        print(f"  Abandoned (needs attention): {', '.join(status['abandoned_ids'])}")
    if "circuit_state" in status:
        print(f"  Circuit: {status['circuit_state']}")
    return 0


def _cmd_load(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    result = service.load_from_api(show_progress=not args.quiet)
    if not result.success:
        print(f"Load failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Loaded {result.loaded} component(s)")
    if result.summary_fallbacks:
        print(f"  {len(result.summary_fallbacks)} loaded from summaries only: {', '.join(result.summary_fallbacks)}")
    return 0


def _cmd_retry_sync(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    summary = service.retry_pending_sync(force=args.force)
    _print_json(summary.to_dict())
    return 1 if summary.failed else 0


def _cmd_link(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    for measure in service.measures.all():
        result = service.link_measure(measure)
        print(
            f"{measure.id}: {result.linked_count} linked, {len(result.created_ids)} created, "
            f"{len(result.unlinkable_ids)} unlinkable"
        )
    save_measures(args.measures, service.measures.all())
    return 0


def _cmd_rebuild_usage(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    if args.recalculate:
        result = service.recalculate_usage()
    else:
        result = service.rebuild_usage_index()
    print(f"Usage updated for {len(result.updated_ids)} component(s)")
    if result.restored_ids:
        print(f"  Restored from archive: {', '.join(result.restored_ids)}")
    for measure_id, element_id, component_id in result.dangling:
        print(f"  Dangling link: {measure_id}/{element_id} -> {component_id}")
    return 0


def _cmd_merge(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    merge, batch = service.merge_and_relink(
        args.component_ids, name=args.name, description=args.description, merged_by=args.merged_by
    )
    if not merge.success:
        print(f"Merge failed: {merge.error}", file=sys.stderr)
        return 1
    print(f"Merged {', '.join(merge.archived_ids)} into {merge.component.id}")
    if args.measures and batch is not None:
        if not batch.success:
            print(f"Measure update failed: {batch.error}", file=sys.stderr)
            return 1
        save_measures(args.measures, service.measures.all())
        print(f"Re-pointed {len(batch.updated_ids)} measure(s)")
        for diagnostic in batch.diagnostics:
            print(f"  {diagnostic}")
    return 0


def _cmd_export(service: ComponentLibraryService, args: argparse.Namespace) -> int:
    path = export_inventory(service.components(), args.output_format, args.output, logger=service.logger)
    print(f"Exported {len(service.store)} component(s) to {path}")
    return 0


_COMMANDS = {
    "status": _cmd_status,
    "load": _cmd_load,
    "retry-sync": _cmd_retry_sync,
    "link": _cmd_link,
    "rebuild-usage": _cmd_rebuild_usage,
    "merge": _cmd_merge,
    "export": _cmd_export,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the script"""
    args = parse_arguments(argv)
    try:
        config = LibraryConfig.from_args(args)
    except ConfigurationError as e:
        _exit_error(str(e))
    logger = setup_logging(config.log.level, log_format=args.log_format)

    measures = MeasureCollection(logger=logger)
    measures_path = getattr(args, "measures", None)
    if measures_path:
        try:
            for measure in load_measures(measures_path):
                measures.upsert(measure)
        except FileNotFoundError:
            _exit_error(f"Measures file not found: {measures_path}")
        except MeasureLibraryError as e:
            _exit_error(str(e))

    service = ComponentLibraryService.from_config(config, measures=measures, logger=logger)
    try:
        return _COMMANDS[args.command](service, args)
    except MeasureLibraryError as e:
        logger.error(str(e))
        return 1
    finally:
        service.save_state()
        service.close()


if __name__ == "__main__":
    sys.exit(main())
