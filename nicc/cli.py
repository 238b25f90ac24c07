"""Command line entry point for nicc."""
from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from .config import Settings
from .cleaner import CacheCleaner

logger = logging.getLogger("nicc")


def _setup_logging(log_level: str = "info"):
    """Configure logging for the nicc logger tree."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)
    logger.setLevel(level)
    logger.propagate = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nicc",
        description="Evict expired and excess entries from an image optimizer cache directory.",
    )
    parser.add_argument("--dir", dest="directory_path",
                        help="absolute path to image cache directory")
    parser.add_argument("--cron", dest="cron_string",
                        help="cron configuration string (5 or 6 fields)")
    parser.add_argument("--size", dest="directory_size", type=int,
                        help="capacity of the cache directory in kilobytes")
    parser.add_argument("--percent", dest="fullness_percent", type=float,
                        help="fullness fraction in (0, 1) at which eviction starts")
    parser.add_argument("--concurrency", dest="concurrency_limit", type=int,
                        help="max concurrent filesystem operations")
    parser.add_argument("--log-level", dest="log_level",
                        help="debug, info, warning or error")
    parser.add_argument("-c", "--config", dest="config",
                        help="YAML settings file")
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    """CLI flags override the YAML file, which overrides env / .env."""
    args = build_parser().parse_args(argv)
    overrides: dict[str, Any] = {
        k: v for k, v in vars(args).items() if k != "config" and v is not None
    }
    if args.config:
        return Settings.from_yaml(args.config, **overrides)
    return Settings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        settings = load_settings(argv)
    except ValidationError as e:
        _setup_logging()
        logger.error("Invalid configuration:\n%s", e)
        return 2
    except OSError as e:
        _setup_logging()
        logger.error("Cannot read configuration: %s", e)
        return 2

    _setup_logging(settings.log_level)
    cleaner = CacheCleaner(settings)
    try:
        asyncio.run(cleaner.start())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
