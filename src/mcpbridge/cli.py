"""Command-line entry point for the bridge server."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from mcpbridge.client.connection_manager import ConnectionManager
from mcpbridge.config import BridgeConfig, load_config, server_from_command
from mcpbridge.server.app import create_app

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.json")
DEFAULT_PORT = 3000


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcpbridge",
        description="Expose MCP servers (stdio, HTTP, SSE) behind one HTTP endpoint.",
    )
    parser.add_argument("--port", type=int, default=None, help="port to listen on")
    parser.add_argument("--host", default="127.0.0.1", help="interface to bind")
    parser.add_argument("--config", type=Path, default=None, help="path to config.json")
    parser.add_argument(
        "--server",
        default=None,
        help="run a single server, e.g. '@scope/package' or 'command arg1 arg2'",
    )
    parser.add_argument("--log-level", default="INFO", help="logging level")
    return parser


def resolve_port(cli_port: int | None) -> int:
    if cli_port is not None:
        return cli_port
    env_port = os.getenv("PORT")
    return int(env_port) if env_port else DEFAULT_PORT


def build_manager(args: argparse.Namespace) -> ConnectionManager:
    """Load configuration and register the CLI server, if any."""
    if args.config is not None:
        config = load_config(args.config)
    elif DEFAULT_CONFIG_PATH.exists():
        config = load_config(DEFAULT_CONFIG_PATH)
    else:
        config = BridgeConfig()

    manager = ConnectionManager(config)
    if args.server:
        name, server_config = server_from_command(args.server)
        manager.add_server(name, server_config)
        logger.info(f"CLI server configured: {name}")

    if config.servers:
        logger.info(f"Config servers: {', '.join(config.servers)}")
    return manager


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    manager = build_manager(args)
    port = resolve_port(args.port)
    logger.info(f"MCP HTTP Bridge running on {args.host}:{port}")
    uvicorn.run(create_app(manager), host=args.host, port=port, log_level="warning")


if __name__ == "__main__":
    main()
