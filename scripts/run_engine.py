#!/usr/bin/env python3
"""
CLI entrypoint for launching the SmartVision analytics engine.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

if __package__ is None or __package__ == "":
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    if str(src_dir) not in sys.path:
        sys.path.insert(0, str(src_dir))

from smartvision_engine import StreamSupervisor, apply_env_overrides, default_config, load_config
from smartvision_engine.api import ListenerStartupError
from smartvision_engine.config import ConfigError


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="SmartVision real-time plate/face analytics engine"
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Path to YAML configuration file (defaults plus environment when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: LOG_LEVEL env or config value)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        help="Path to log file (optional, logs to file in addition to console)",
    )
    parser.add_argument(
        "--log-format",
        default="standard",
        choices=["standard", "detailed", "json"],
        help="Log format (default: standard)",
    )
    parser.add_argument(
        "--log-rotate",
        action="store_true",
        help="Enable log rotation (only with --log-file, max 10MB x 5 files)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored log output",
    )
    return parser.parse_args(argv)


class ColoredFormatter(logging.Formatter):
    """Custom formatter with color support for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelname in self.COLORS:
            record_copy = logging.makeLogRecord(record.__dict__)
            record_copy.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
            return super().format(record_copy)
        return super().format(record)


def setup_logging(args: argparse.Namespace, level_name: str) -> None:
    """Configure console and optional (rotating) file logging."""
    log_level = getattr(logging, level_name.upper(), logging.INFO)

    if args.log_format == "detailed":
        log_format = (
            "%(asctime)s [%(levelname)-8s] [%(process)d:%(thread)d] "
            "%(name)s:%(funcName)s:%(lineno)d | %(message)s"
        )
    elif args.log_format == "json":
        log_format = (
            '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s",'
            '"message":"%(message)s"}'
        )
    else:
        log_format = "%(asctime)s [%(levelname)-8s] %(name)s | %(message)s"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    use_color = not args.no_color and sys.stdout.isatty() and args.log_format != "json"
    console_handler.setFormatter(ColoredFormatter(log_format) if use_color else logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    if args.log_file:
        log_path = Path(args.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if args.log_rotate:
            file_handler: logging.Handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        else:
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(file_handler)
        logging.info("Logging to file: %s", log_path)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        config = load_config(args.config) if args.config else default_config()
        apply_env_overrides(config, os.environ)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    setup_logging(args, args.log_level or config.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting SmartVision engine with %d cameras", len(config.cameras))
    if args.config:
        logger.info("Config file: %s", args.config)

    supervisor = StreamSupervisor(config)
    try:
        asyncio.run(supervisor.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user, shutting down gracefully")
    except ListenerStartupError as exc:
        logger.critical("%s", exc)
        return 1
    except Exception as exc:
        logger.exception("Engine failed with error: %s", exc)
        return 1

    logger.info("Engine shutdown complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
