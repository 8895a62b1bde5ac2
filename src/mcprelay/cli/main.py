"""
mcp-relay command line.

    mcprelay status              connection state of every configured server
    mcprelay list [--openai]     registered host capability ids
    mcprelay call HOST_ID --args '{"a": 1}'
    mcprelay run                 keep connections alive until interrupted
"""

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

from loguru import logger
from rich.console import Console
from rich.table import Table

from mcprelay import __version__
from mcprelay.config.manager import ConfigManager
from mcprelay.core.cancellation import CancellationSignal
from mcprelay.core.supervisor import ConnectionSupervisor
from mcprelay.mcp.models import ConnectionState
from mcprelay.registry.host import LocalCapabilityHost
from mcprelay.registry.registry import CapabilityRegistry

console = Console()

_STATE_STYLES = {
    ConnectionState.CONNECTED: "green",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.DISCONNECTED: "dim",
    ConnectionState.ERROR: "red",
}


def setup_logging(*, debug: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging."""
    # Remove default handler
    logger.remove()

    # Console handler
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level="DEBUG" if debug else "INFO",
        colorize=True,
    )

    # File handler
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
        )


@asynccontextmanager
async def open_relay(
    config_path: str,
) -> AsyncIterator[Tuple[ConfigManager, LocalCapabilityHost, ConnectionSupervisor]]:
    """Load configuration, connect every enabled server, and shut down on exit."""
    config = ConfigManager(config_path)
    await config.load()

    host = LocalCapabilityHost()
    registry = CapabilityRegistry(config, host)
    supervisor = ConnectionSupervisor(config, registry)
    await supervisor.start()
    try:
        yield config, host, supervisor
    finally:
        await supervisor.shutdown()
        registry.dispose()


async def cmd_status(args: argparse.Namespace) -> int:
    async with open_relay(args.config) as (_, _, supervisor):
        statuses = supervisor.get_aggregated_status()

    if args.json:
        console.print_json(json.dumps([s.to_dict() for s in statuses]))
        return 0

    table = Table(title="MCP servers")
    table.add_column("Server", style="cyan")
    table.add_column("State")
    table.add_column("Capabilities", justify="right")
    table.add_column("Last connected")
    table.add_column("Last error", style="red")

    for status in statuses:
        style = _STATE_STYLES.get(status.state, "")
        name = status.name if status.enabled else f"{status.name} (disabled)"
        table.add_row(
            name,
            f"[{style}]{status.state.value}[/{style}]",
            str(len(status.capabilities)),
            status.last_connected.strftime("%Y-%m-%d %H:%M:%S") if status.last_connected else "-",
            status.last_error or "",
        )

    console.print(table)
    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    async with open_relay(args.config) as (_, host, _):
        if args.openai:
            console.print_json(json.dumps(host.to_openai_tools()))
            return 0

        table = Table(title="Registered capabilities")
        table.add_column("Host id", style="cyan")
        table.add_column("Kind")
        table.add_column("Server")
        table.add_column("Description")
        for definition in host.list_definitions():
            table.add_row(definition.host_id, definition.kind.value, definition.server, definition.description)
        console.print(table)
    return 0


async def cmd_call(args: argparse.Namespace) -> int:
    try:
        arguments = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --args JSON: {e}[/red]")
        return 2
    if not isinstance(arguments, dict):
        console.print("[red]--args must be a JSON object[/red]")
        return 2

    async with open_relay(args.config) as (_, host, _):
        signal = CancellationSignal()
        try:
            result = await host.invoke(args.host_id, arguments, signal)
        except asyncio.CancelledError:
            signal.cancel("interrupted")
            raise

    console.print_json(json.dumps(result.to_dict(), default=str))
    return 0 if result.success else 1


async def cmd_run(args: argparse.Namespace) -> int:
    async with open_relay(args.config) as (_, host, supervisor):
        supervisor.on_status_changed(
            lambda server, state: console.print(f"[bold]{server}[/bold] -> {state.value}")
        )
        logger.info(f"Relaying {len(host.host_ids())} capabilities; press Ctrl+C to stop")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("Shutdown requested")
    return 0


COMMANDS = {
    "status": cmd_status,
    "list": cmd_list,
    "call": cmd_call,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcprelay",
        description="Relay MCP server capabilities into a host capability registry",
    )
    parser.add_argument(
        "--config",
        type=str,
        default="mcprelay.yaml",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file (rotated)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"mcp-relay {__version__}"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show the state of every configured server")
    status.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    listing = sub.add_parser("list", help="List registered host capability ids")
    listing.add_argument("--openai", action="store_true", help="Print OpenAI function-tool schemas")

    call = sub.add_parser("call", help="Invoke a registered capability")
    call.add_argument("host_id", help="Host capability id, e.g. server::tool")
    call.add_argument("--args", type=str, default="{}", help="Arguments as a JSON object")

    sub.add_parser("run", help="Keep server connections alive until interrupted")

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, log_file=args.log_file)
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


def run() -> None:
    """Console script entry point."""
    sys.exit(main())
