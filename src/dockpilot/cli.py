"""Command-line entry point: ``dockpilot serve``."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from dockpilot import __version__
from dockpilot.config import Settings, load_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="dockpilot",
        description="DockPilot log, shell and operation streaming server",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("command", nargs="?", default="serve", choices=["serve"])
    parser.add_argument("--host", default=None, help="Bind host (default: $DOCKPILOT_HOST)")
    parser.add_argument(
        "--port", type=int, default=None, help="Bind port (default: $DOCKPILOT_PORT or 3001)"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to dockpilot.toml (default: $DOCKPILOT_CONFIG or ./dockpilot.toml)",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Dotenv file loaded before settings (default: ./.env)",
    )
    return parser.parse_args(argv)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level_value, format=_LOG_FORMAT)


def main(argv: list[str] | None = None) -> None:
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    load_dotenv(dotenv_path=Path(args.env_file))
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except (ValueError, TypeError, FileNotFoundError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    configure_logging(settings)

    from dockpilot.server.cli import run_server

    run_server(settings, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
