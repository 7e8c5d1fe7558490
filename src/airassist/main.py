"""
main.py — AIRAssist Entry Point

Usage:
    airassist                                # console client, default settings
    airassist --log-level DEBUG              # verbose logging
    airassist --config path/to/config.yaml
    airassist --ephemeral                    # in-memory store, nothing persisted
    python -m airassist
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

# .env is loaded before any Settings are built so AIRASSIST_* values apply
load_dotenv(dotenv_path=Path.cwd() / ".env")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="airassist",
        description="AIRAssist — hands-free voice client for an AI assistant",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $AIRASSIST_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--ephemeral",
        action="store_true",
        default=False,
        help="Keep history, queue and settings in memory only",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from airassist.config.settings import ConfigError, load_settings
    from airassist.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # CLI --log-level flag overrides config.yaml
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("airassist.main")
    return settings, log


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    from airassist import __version__
    from airassist.app import AirAssistApp
    from airassist.interfaces.console import run_console

    log.info(
        "airassist.starting",
        version=__version__,
        server=settings.server.url,
        ephemeral=args.ephemeral,
    )

    app = AirAssistApp(settings, ephemeral=args.ephemeral)
    try:
        await run_console(app, log)
    except OSError as e:
        log.exception("airassist.crashed", error=str(e), error_type=type(e).__name__)
        print(f"\n❌  {type(e).__name__}: {e}\n", file=sys.stderr)
        return 1
    return 0


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
