"""
main.py — ClawDesk Entry Point

Usage:
    clawdesk status                             # connect, handshake, show server hello
    clawdesk call <method> [params-json]        # one request, print the payload
    clawdesk chat <message>                     # send and stream the reply
    clawdesk watch [event ...]                  # print push events until Ctrl+C
    clawdesk --log-level DEBUG --console-logs status
    clawdesk --config path/to/config.yaml status
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clawdesk",
        description="ClawDesk — desktop client for the local OpenClaw gateway",
    )
    parser.add_argument(
        "command",
        choices=["status", "call", "chat", "watch"],
        help="Gateway command to run.",
    )
    parser.add_argument(
        "args",
        nargs="*",
        help="Command arguments (method + params JSON, chat message, event names).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $CLAWDESK_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Gateway WebSocket URL (overrides gateway.url)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Gateway token (overrides config and the OpenClaw config file)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--console-logs",
        action="store_true",
        default=False,
        help="Also print logs to stderr",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    from clawdesk.config.settings import ConfigError, GatewayConfig, load_settings
    from clawdesk.interfaces.gateway_cli import run_gateway_cli
    from clawdesk.observability.logger import get_logger, setup_logging
    from clawdesk.session import DesktopSession

    try:
        settings = load_settings(args.config)
        if args.url:
            settings.gateway = GatewayConfig(**{**settings.gateway.model_dump(), "url": args.url})
    except (ConfigError, ValueError) as e:
        print(f"clawdesk: configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=args.console_logs or settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    log = get_logger("clawdesk.main")

    try:
        token = args.token or settings.resolve_gateway_token()
    except ConfigError as e:
        print(f"clawdesk: {e}", file=sys.stderr)
        return 2

    log.info("clawdesk.start", command=args.command, url=settings.gateway_url)
    session = DesktopSession(settings, token=token)
    return await run_gateway_cli(session, args.command, list(args.args))


def main(argv: Optional[list[str]] = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
