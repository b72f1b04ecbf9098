"""
Batcher — CLI

Plan, profile and run pipelines against the simulation backend.

Usage:
    # Print the extraction template for a target as JSON
    python -m batcher.cli plan --target alpha --fraction 0.5

    # Print the 2-op prep template instead
    python -m batcher.cli plan --target alpha --multiplier 1.5

    # Rank every configured target by value per second
    python -m batcher.cli profile

    # Prep if needed, then run until 50 batches finished (Ctrl-C stops)
    python -m batcher.cli run --target alpha --batches 50

Config is read from config/batcher.yaml plus the config/{env}.yaml
overlay and BATCHER_* environment overrides.
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path

from batcher.config import BatcherConfig, parse_batcher_config
from batcher.controller import BatcherController
from batcher.dispatcher import CapacityDispatcher
from batcher.errors import BatcherError
from batcher.planner import build_extraction_template, build_reinforcement_template
from batcher.profiler import profile_targets
from batcher.simulation import Simulation, build_simulation
from infra.config_loader import load_config
from infra.health import HealthChecker, run_health_server
from infra.logging import StructuredLogger, configure_logging


def _dispatcher(sim: Simulation, config: BatcherConfig, log: StructuredLogger) -> CapacityDispatcher:
    return CapacityDispatcher(
        sim.inventory, sim.launcher,
        unit_costs=config.unit_costs,
        payload_paths=config.payloads,
        reserved_capacity=config.reserved_capacity,
        logger=log.child("dispatcher"),
    )


def cmd_plan(args, config: BatcherConfig, log: StructuredLogger) -> int:
    """Print one template as JSON."""
    sim = build_simulation(config)
    if args.multiplier is not None:
        template = build_reinforcement_template(
            sim.oracle, args.target, args.multiplier, config.spacer_ms,
            config.unit_costs, logger=log,
        )
    else:
        fraction = args.fraction if args.fraction is not None else config.extraction_fraction
        template = build_extraction_template(
            sim.oracle, args.target, fraction, config.spacer_ms,
            config.unit_costs, logger=log,
        )
    result = template.to_dict()
    result["max_concurrent_batches"] = template.max_concurrent_batches(config.depth_policy)
    print(json.dumps(result, indent=2))
    return 0


def cmd_profile(args, config: BatcherConfig, log: StructuredLogger) -> int:
    """Print targets ranked by value per second."""
    sim = build_simulation(config)
    dispatcher = _dispatcher(sim, config, log)
    profiles = profile_targets(
        sim.oracle, dispatcher, sim.targets, config, logger=log.child("profiler"),
    )

    print(f"{'target':<20} {'fraction':>10} {'batches':>8} {'value/s':>16}")
    print("─" * 57)
    for p in profiles:
        print(f"{p.target:<20} {p.fraction:>10.2f} {p.batches:>8} {p.value_per_second:>16.2f}")
    return 0


async def _run(args, config: BatcherConfig, log: StructuredLogger) -> None:
    sim = build_simulation(config)
    dispatcher = _dispatcher(sim, config, log)

    health = None
    server = None
    if config.status_port is not None:
        health = HealthChecker()
        server = run_health_server(health, port=config.status_port)

    controller = BatcherController(
        args.target, sim.oracle, dispatcher, sim.channels, config,
        logger=log.child("controller", target=args.target), health=health,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await controller.run(max_batches=args.batches)
    finally:
        if server is not None:
            server.shutdown()
    print(json.dumps(controller.status(), indent=2))


def cmd_run(args, config: BatcherConfig, log: StructuredLogger) -> int:
    """Run the controller until the batch limit or a signal."""
    asyncio.run(_run(args, config, log))
    return 0


def main(argv: list[str] | None = None) -> int:
    _project_root = Path(__file__).resolve().parent.parent

    parser = argparse.ArgumentParser(
        description="Batcher — batch scheduling against a simulated fleet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env", default=os.environ.get("BATCHER_ENV", "dev"),
        help="Config environment overlay (default: $BATCHER_ENV or dev)",
    )
    parser.add_argument(
        "--project-root", default=os.environ.get("BATCHER_PROJECT_ROOT", str(_project_root)),
        help="Directory containing config/ (default: repository root)",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING")

    subs = parser.add_subparsers(dest="command", help="Command")

    # plan
    plan_p = subs.add_parser("plan", help="Print a batch template as JSON")
    plan_p.add_argument("--target", "-t", required=True)
    group = plan_p.add_mutually_exclusive_group()
    group.add_argument("--fraction", "-f", type=float, help="Extraction fraction (0, 1]")
    group.add_argument("--multiplier", "-m", type=float, help="Prep growth multiplier > 1")

    # profile
    subs.add_parser("profile", help="Rank targets by value per second")

    # run
    run_p = subs.add_parser("run", help="Prep and pipeline one target")
    run_p.add_argument("--target", "-t", required=True)
    run_p.add_argument("--batches", "-n", type=int, default=None,
                       help="Stop after this many batches (default: until signalled)")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    loader = load_config(env=args.env, project_root=args.project_root)
    configure_logging(level=args.log_level or loader.get("logging.level", "INFO"))
    log = StructuredLogger(component="cli")

    try:
        config = parse_batcher_config(loader.get("batcher", {}))
        if args.command == "plan":
            return cmd_plan(args, config, log)
        elif args.command == "profile":
            return cmd_profile(args, config, log)
        elif args.command == "run":
            return cmd_run(args, config, log)
    except BatcherError as e:
        log.error("command_failed", command=args.command,
                  error_type=type(e).__name__, error=str(e), detail=e.detail)
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
