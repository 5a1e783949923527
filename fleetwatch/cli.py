"""
FleetWatch command line interface.

    fleetwatch serve  --config fleet.yaml [--host 0.0.0.0] [--port 8000]
    fleetwatch probe  --config fleet.yaml
    fleetwatch config --config fleet.yaml
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from fleetwatch.config.settings import FleetSettings, load_settings
from fleetwatch.core.error_handling import ConfigurationError
from fleetwatch.logging_config import setup_json_logging


def _load(args: argparse.Namespace) -> FleetSettings:
    try:
        return load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(2)


def run_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from fleetwatch.app import create_app

    settings = _load(args)
    setup_json_logging(settings.log_level, environment=settings.environment)
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())


async def _probe_once(settings: FleetSettings) -> dict:
    from fleetwatch.backend.orchestration.coordinator import FleetCoordinator

    coordinator = FleetCoordinator.from_settings(settings)
    await coordinator.probe_once()
    return coordinator.get_health_report()


def run_probe(args: argparse.Namespace) -> None:
    """Run a single probe cycle and print the health report."""
    settings = _load(args)
    setup_json_logging("WARNING", environment=settings.environment)
    report = asyncio.run(_probe_once(settings))
    print(json.dumps(report, indent=2, default=str))
    if report["summary"]["offline_nodes"]:
        sys.exit(1)


def run_config(args: argparse.Namespace) -> None:
    """Validate configuration and print the effective settings."""
    settings = _load(args)
    data = settings.model_dump()
    if data["relay"]["secret"]:
        data["relay"]["secret"] = "***"
    print(json.dumps(data, indent=2))


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fleetwatch",
        description="FleetWatch: fleet health and adaptive failover",
    )
    sub = parser.add_subparsers(dest="command")

    sp = sub.add_parser("serve", help="Run the coordinator and HTTP surface")
    sp.add_argument("--config", "-c", help="YAML/JSON config file")
    sp.add_argument("--host", default="0.0.0.0")
    sp.add_argument("--port", type=int, default=8000)

    pp = sub.add_parser("probe", help="Probe every configured node once and print the report")
    pp.add_argument("--config", "-c", help="YAML/JSON config file")

    cp = sub.add_parser("config", help="Validate and print the effective configuration")
    cp.add_argument("--config", "-c", help="YAML/JSON config file")

    args = parser.parse_args(argv)

    if args.command == "serve":
        run_serve(args)
    elif args.command == "probe":
        run_probe(args)
    elif args.command == "config":
        run_config(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
