"""
Client entry point.

    portal-realtime -c portal-realtime.yaml [--user-id ID] [--log-level debug]

Runs a headless session for one user: notifications go to the log, the audio
cue is the terminal bell.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import structlog

from .config import RealtimeConfig, load_config
from .console import LogPresenter, TerminalBell
from .session import ClientSession


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """JSON lines (``fmt="json"``) or human-readable console output on stderr."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    min_level = getattr(logging, level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portal-realtime",
        description="Headless realtime notification client for the learning portal",
    )
    parser.add_argument(
        "-c", "--config",
        default="portal-realtime.yaml",
        help="YAML configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--user-id",
        help="signed-in user; overrides the environment variable named in the config",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="override logging.level from the config",
    )
    return parser


def _load(path: str) -> RealtimeConfig:
    try:
        return load_config(path)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
    except Exception as exc:
        print(f"Configuration error in {path}: {exc}", file=sys.stderr)
    sys.exit(1)


def run() -> None:
    args = _build_parser().parse_args()
    config = _load(args.config)

    configure_logging(args.log_level or config.logging.level, config.logging.format)
    log = structlog.get_logger()

    user_id = args.user_id or config.identity.user_id
    if not user_id:
        log.error("client.missing_user", env=config.identity.user_id_env)
        sys.exit(1)
    log.info(
        "client.starting",
        config_path=args.config,
        backend=config.backend.url,
        progress_store=config.progress.store,
    )

    session = ClientSession(config, LogPresenter(), TerminalBell(sys.stderr))
    try:
        asyncio.run(session.run_forever(user_id))
    except KeyboardInterrupt:
        log.info("client.interrupted")


if __name__ == "__main__":
    run()
