#!/usr/bin/env python3
"""
Main entry point for the Experiment Engine.

Provides command line access to the engine: simulate traffic through a
test and analyze it, analyze a test persisted by the file backend, or list
persisted tests.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from experiment_engine.config.settings import Settings, get_settings
from experiment_engine.core.exceptions import ExperimentEngineError
from experiment_engine.engine.service import ExperimentationService
from experiment_engine.monitoring.logger import (
    LogCategory,
    LogFormat,
    get_logger,
    setup_logging,
)
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage import FileExperimentStorage, InMemoryExperimentStorage
from experiment_engine.storage.models import ExperimentType


logger = get_logger("main", LogCategory.SYSTEM)


def parse_rates(raw: str) -> dict[str, float]:
    """Parse ``control=0.10,treatment=0.12`` into a rate per variant."""
    rates: dict[str, float] = {}
    for part in raw.split(","):
        variant_id, _, rate = part.partition("=")
        if not variant_id or not rate:
            raise argparse.ArgumentTypeError(f"Malformed rate: {part!r}")
        rates[variant_id.strip()] = float(rate)
    return rates


def build_config(args: argparse.Namespace, rates: dict[str, float]) -> dict[str, Any]:
    """Test configuration from a YAML file, or a default one per simulated variant."""
    if args.test_config:
        with open(args.test_config, "r") as f:
            return yaml.safe_load(f) or {}

    variant_ids = list(rates)
    test_type = ExperimentType.MULTI_ARMED_BANDIT if args.bandit else (
        ExperimentType.SIMPLE_AB if len(variant_ids) == 2 else ExperimentType.MULTIVARIATE
    )
    return {
        "name": "Simulated test",
        "test_type": test_type.value,
        "variants": [
            {"variant_id": v, "name": v, "is_control": i == 0}
            for i, v in enumerate(variant_ids)
        ],
        "primary_goal": {"goal_id": "conversion", "name": "Conversion"},
        "statistics": {"method": args.method},
    }


def run_simulate(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    """Push simulated users through a test and analyze it.

    Args:
        args: Command line arguments.
        settings: Application settings.

    Returns:
        Serialized analysis result.
    """
    rates = parse_rates(args.rates)
    storage = (
        FileExperimentStorage(args.storage_path) if args.storage_path
        else InMemoryExperimentStorage(lock_stripes=settings.storage.lock_stripes)
    )
    service = ExperimentationService(storage=storage, settings=settings)

    test = service.create_test(build_config(args, rates))
    service.start_test(test.test_id)
    goal_id = test.primary_goal.goal_id

    logger.info(
        f"Simulating {args.users} users through {test.test_id}",
        extra={"test_id": test.test_id, "extra_data": {"rates": rates}},
    )

    rng = np.random.default_rng(args.seed)
    for i in range(args.users):
        user_id = f"sim_user_{i}"
        variant_id = service.assign_user_to_variant(test.test_id, user_id)
        if variant_id is None:
            continue
        service.track_exposure(test.test_id, user_id)
        if rng.random() < rates.get(variant_id, 0.0):
            service.track_conversion(test.test_id, user_id, goal_id)
        if args.bandit and (i + 1) % args.update_every == 0:
            service.update_weights(test.test_id)

    result = service.analyze_test(test.test_id)
    if args.stop:
        service.stop_test(test.test_id)
    return result.to_dict()


def run_analyze(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    """Analyze a test persisted by the file backend.

    Args:
        args: Command line arguments.
        settings: Application settings.
    """
    storage = FileExperimentStorage(args.storage_path, lock_stripes=settings.storage.lock_stripes)
    service = ExperimentationService(storage=storage, settings=settings)
    return service.analyze_test(args.test_id).to_dict()


def run_list(args: argparse.Namespace, settings: Settings) -> list[dict[str, Any]]:
    """Summarize tests persisted by the file backend."""
    storage = FileExperimentStorage(args.storage_path, lock_stripes=settings.storage.lock_stripes)
    service = ExperimentationService(storage=storage, settings=settings)
    return [
        {
            "test_id": t.test_id,
            "name": t.name,
            "test_type": t.test_type.value,
            "status": t.status.value,
            "variants": [v.variant_id for v in t.variants],
        }
        for t in service.get_tests(status=args.status)
    ]


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Experiment Engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Simulate command
    simulate_parser = subparsers.add_parser("simulate", help="Simulate traffic and analyze")
    simulate_parser.add_argument(
        "--users",
        type=int,
        default=10000,
        help="Number of simulated users",
    )
    simulate_parser.add_argument(
        "--rates",
        type=str,
        default="control=0.10,treatment=0.12",
        help="True conversion rate per variant; the first variant is control",
    )
    simulate_parser.add_argument(
        "--method",
        choices=["frequentist", "bayesian", "bootstrap"],
        default="frequentist",
        help="Inference method",
    )
    simulate_parser.add_argument(
        "--bandit",
        action="store_true",
        help="Run as a multi-armed bandit",
    )
    simulate_parser.add_argument(
        "--update-every",
        type=int,
        default=500,
        help="Users between bandit weight updates",
    )
    simulate_parser.add_argument(
        "--test-config",
        type=Path,
        help="YAML test configuration to use instead of the default",
    )
    simulate_parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for simulated conversions",
    )
    simulate_parser.add_argument(
        "--stop",
        action="store_true",
        help="Conclude the test after analysis",
    )
    simulate_parser.add_argument(
        "--storage-path",
        type=Path,
        help="Persist to this directory instead of memory",
    )

    # Analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Analyze a persisted test")
    analyze_parser.add_argument("test_id", type=str, help="Test to analyze")
    analyze_parser.add_argument(
        "--storage-path",
        type=Path,
        required=True,
        help="File backend directory",
    )

    # List command
    list_parser = subparsers.add_parser("list", help="List persisted tests")
    list_parser.add_argument(
        "--storage-path",
        type=Path,
        required=True,
        help="File backend directory",
    )
    list_parser.add_argument(
        "--status",
        choices=["draft", "running", "concluded", "archived"],
        help="Only tests in this status",
    )

    # Common arguments
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: settings.logging.level)",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Log format (default: settings.logging.format)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write logs to this file (default: settings.logging.file_path)",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        help="Write Prometheus metrics to this file after the command",
    )

    return parser.parse_args()


def resolve_logging(
    args: argparse.Namespace,
    settings: Settings,
) -> tuple[str, LogFormat, Path | None]:
    """Logging level, format and file from the CLI, falling back to settings."""
    level = args.log_level or settings.logging.level
    format_name = args.log_format or settings.logging.format
    log_format = LogFormat.JSON if format_name == "json" else LogFormat.TEXT
    log_file = args.log_file or settings.logging.file_path
    return level, log_format, log_file


def main() -> None:
    """Main entry point."""
    args = parse_args()

    # Load settings
    settings = get_settings()

    # Setup logging; command-line flags override the configured values
    level, log_format, log_file = resolve_logging(args, settings)
    setup_logging(level=level, log_format=log_format, log_file=log_file)

    get_metrics_collector().set_engine_info(
        version=settings.app_version,
        environment=settings.environment,
    )

    logger.info(
        f"Experiment Engine v{settings.app_version}",
        extra={"extra_data": {"command": args.command, "environment": settings.environment}},
    )

    try:
        if args.command == "simulate":
            output: Any = run_simulate(args, settings)
        elif args.command == "analyze":
            output = run_analyze(args, settings)
        else:
            output = run_list(args, settings)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except ExperimentEngineError as e:
        logger.error(f"Engine error: {e}", extra={"extra_data": e.to_dict()})
        sys.exit(1)

    if args.metrics_file is not None:
        args.metrics_file.write_bytes(get_metrics_collector().get_metrics())

    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
