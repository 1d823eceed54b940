#!/usr/bin/env python3
"""
SpatialQC Command Line Interface
================================

Command-line interface for the SpatialQC data-quality engine.
Runs the validation pipeline on a vector dataset and writes the findings.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .configuration import ConfigurationManager
from .exceptions import ConfigurationError, SourceAccessError, SpatialQCError
from .orchestrator import StageOrchestrator
from .scheduler import CancellationToken
from .source import VectorFileSource

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(verbose: bool = False, settings: Optional[Dict[str, Any]] = None) -> None:
    """
    Setup logging configuration.

    Args:
        verbose: Log at DEBUG regardless of the configured level
        settings: The ``logging`` configuration section (``level`` and ``format``)
    """
    settings = settings or {}
    level = logging.DEBUG if verbose else getattr(logging, settings.get("level", "INFO"))
    log_format = settings.get("format", LOG_FORMAT)
    logging.basicConfig(level=level, format=log_format)
    logging.getLogger().setLevel(level)


def _overrides(args) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.strategy:
        overrides.setdefault("index", {})["strategy"] = args.strategy
    if args.max_workers:
        overrides.setdefault("performance", {})["max_workers"] = args.max_workers
    if args.history_file:
        overrides.setdefault("performance", {})["history_file"] = args.history_file
    return overrides


def check_command(args) -> None:
    """Execute the validation pipeline."""
    token = CancellationToken()
    try:
        manager = ConfigurationManager(
            config_dir=args.config_dir or DEFAULT_CONFIG_DIR,
            environment=args.environment,
            config_file=args.config,
        )
        run_config = manager.build_run_configuration(_overrides(args))
        setup_logging(args.verbose, run_config.logging)

        print(f"Checking dataset: {args.dataset}")
        with VectorFileSource(args.dataset) as source:
            orchestrator = StageOrchestrator(
                source,
                rules=run_config.rules,
                criteria=run_config.criteria,
                performance=run_config.performance,
                show_progress=not args.quiet,
            )
            summary = orchestrator.run(token)

            if args.output:
                orchestrator.sink.write(args.output)

        print(json.dumps(summary.to_dict(), indent=2))
        if summary.failed_units:
            print(f"\n{len(summary.failed_units)} work units failed", file=sys.stderr)

    except KeyboardInterrupt:
        token.cancel()
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(1)
    except (ConfigurationError, SourceAccessError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except SpatialQCError as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(1)


def tables_command(args) -> None:
    """List the tables of a dataset."""
    try:
        with VectorFileSource(args.dataset) as source:
            for table in source.list_tables():
                print(f"{table}\t{source.geometry_type(table) or '-'}\t{source.feature_count(table)}")
    except SourceAccessError as e:
        print(f"Error reading dataset: {e}", file=sys.stderr)
        sys.exit(1)


def info_command(args) -> None:
    """Display the schema of one table."""
    try:
        with VectorFileSource(args.dataset) as source:
            print(f"Table: {args.table}")
            print(f"  Geometry type: {source.geometry_type(args.table)}")
            print(f"  Features: {source.feature_count(args.table)}")
            print("  Fields:")
            for name, dtype in source.schema(args.table).items():
                print(f"    {name}: {dtype}")
    except SourceAccessError as e:
        print(f"Error reading dataset: {e}", file=sys.stderr)
        sys.exit(1)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="SpatialQC - Geospatial Data Quality Checks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run all checks and write located findings
  spatialqc check --dataset survey.gpkg --config rules.yaml --output findings.gpkg

  # Use the R-tree index with at most 4 workers
  spatialqc check --dataset survey.gpkg --strategy rtree --max-workers 4

  # List tables
  spatialqc tables --dataset survey.gpkg

  # Show a table schema
  spatialqc info --dataset survey.gpkg --table buildings
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    check_parser = subparsers.add_parser('check', help='Run the validation pipeline')
    check_parser.add_argument('--dataset', required=True, help='Path to the vector dataset')
    check_parser.add_argument('--config', help='Configuration file (YAML)')
    check_parser.add_argument('--config-dir', help='Directory with base.yaml and environments/')
    check_parser.add_argument('--environment', default='production', help='Configuration environment')
    check_parser.add_argument('--output', help='Findings output (.gpkg, .geojson, .shp or .csv)')
    check_parser.add_argument('--strategy', choices=['grid', 'rtree', 'quadtree'], help='Spatial index strategy')
    check_parser.add_argument('--max-workers', type=int, help='Maximum concurrent work units')
    check_parser.add_argument('--history-file', help='Stage duration history (YAML) used for time estimates')
    check_parser.add_argument('--quiet', '-q', action='store_true', help='Hide progress bars')
    check_parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')

    tables_parser = subparsers.add_parser('tables', help='List dataset tables')
    tables_parser.add_argument('--dataset', required=True, help='Path to the vector dataset')

    info_parser = subparsers.add_parser('info', help='Display table information')
    info_parser.add_argument('--dataset', required=True, help='Path to the vector dataset')
    info_parser.add_argument('--table', required=True, help='Table name')

    parser.add_argument('--version', action='version', version=f'SpatialQC {__version__}')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # check configures logging from the loaded configuration
    if args.command == 'check':
        check_command(args)
    elif args.command == 'tables':
        setup_logging()
        tables_command(args)
    elif args.command == 'info':
        setup_logging()
        info_command(args)
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
