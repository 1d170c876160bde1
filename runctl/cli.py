"""Command-line entry point.

    runctl demo
    runctl exists NAME
    runctl status NAME
    runctl wait NAME --condition Ready --condition RoutesReady --timeout 120
    runctl delete NAME --wait
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

from runctl.client import RunClient
from runctl.config import DemoConfig, RunConfig, load_config, resolve_config, resolve_project
from runctl.demo import run_demo
from runctl.errors import RunError
from runctl.logging import LogConfig, setup_logging, teardown_logging
from runctl.model import conditions, service_url, traffic_split
from runctl.ops import delete_service, service_exists
from runctl.wait import wait_for_conditions

type Command = Callable[[argparse.Namespace, RunConfig, DemoConfig, RunClient], Awaitable[int]]

console = Console()


async def _demo(args: argparse.Namespace, run: RunConfig, demo: DemoConfig, client: RunClient) -> int:
    result = await run_demo(run, demo, client)
    console.print(f"url: {result.url}")
    console.print(f"split: {result.split}")
    return 0


async def _exists(args: argparse.Namespace, run: RunConfig, demo: DemoConfig, client: RunClient) -> int:
    exists = await service_exists(client, args.name or run.service)
    console.print("true" if exists else "false")
    return 0


async def _status(args: argparse.Namespace, run: RunConfig, demo: DemoConfig, client: RunClient) -> int:
    service = await client.get_service(args.name or run.service)

    table = Table(title=f"{client.project}/{service.get('metadata', {}).get('name', '')}")
    table.add_column("Condition")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Message")
    for c in conditions(service):
        style = {"True": "green", "False": "red"}.get(c.status, "yellow")
        table.add_row(c.type, f"[{style}]{c.status}[/{style}]", c.reason, c.message)
    console.print(table)

    console.print(f"url: {service_url(service) or '-'}")
    for revision, percent in traffic_split(service).items():
        console.print(f"traffic: {revision} {percent}%")
    return 0


async def _wait(args: argparse.Namespace, run: RunConfig, demo: DemoConfig, client: RunClient) -> int:
    await wait_for_conditions(
        client,
        args.name or run.service,
        args.condition or ["Ready"],
        timeout=args.timeout if args.timeout is not None else run.ready_timeout,
        interval=run.poll_interval,
    )
    console.print("ready")
    return 0


async def _delete(args: argparse.Namespace, run: RunConfig, demo: DemoConfig, client: RunClient) -> int:
    status = await delete_service(
        client,
        args.name or run.service,
        wait=args.wait,
        timeout=run.ready_timeout,
        interval=run.poll_interval,
    )
    console.print(status.get("status", "accepted"))
    return 0


COMMANDS: dict[str, Command] = {
    "demo": _demo,
    "exists": _exists,
    "status": _status,
    "wait": _wait,
    "delete": _delete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runctl", description="Cloud Run control-plane tool")
    parser.add_argument("--project", type=str, default=None, help="GCP project ID")
    parser.add_argument("--region", type=str, default=None, help="Cloud Run region")
    parser.add_argument("--config", type=Path, default=None, help="Path to a runctl.toml")
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", type=str, default=None)

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("demo", help="Create, wait, make public, split traffic, delete")

    for command in ("exists", "status"):
        p = sub.add_parser(command)
        p.add_argument("name", nargs="?", default=None)

    p = sub.add_parser("wait", help="Wait for conditions to become True")
    p.add_argument("name", nargs="?", default=None)
    p.add_argument(
        "--condition", action="append", default=None,
        help="Condition type to wait for (repeatable, in order). Default: Ready",
    )
    p.add_argument("--timeout", type=float, default=None, help="Seconds per condition")

    p = sub.add_parser("delete")
    p.add_argument("name", nargs="?", default=None)
    p.add_argument("--wait", action="store_true", help="Block until the service is gone")

    return parser


async def main(args: argparse.Namespace) -> int:
    raw = load_config(config_file=args.config)
    run, demo = resolve_config(raw, project=args.project, region=args.region)
    # ADC discovery may probe the metadata server.
    project = await asyncio.to_thread(resolve_project, run.project)

    async with RunClient.from_config(run, project) as client:
        return await COMMANDS[args.command](args, run, demo, client)


def cli(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    handler_ids = setup_logging(LogConfig(level=args.log_level, file=args.log_file))

    try:
        code = asyncio.run(main(args))
    except RunError as e:
        logger.bind(component="cli").error("{err}", err=e)
        code = 1
    except KeyboardInterrupt:
        code = 130
    finally:
        teardown_logging(handler_ids)

    sys.exit(code)
