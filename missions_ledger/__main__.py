"""Command-line runner for the missions ledger service.

Runs the nightly settlement scheduler, the punishment expiry check and the
/health + /metrics endpoint until SIGTERM or SIGINT.
"""
import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from .config import LedgerConfig, load_config
from .main import LedgerApp

CONFIG_ENV_VAR = "MISSIONS_LEDGER_CONFIG"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="missions-ledger",
        description="Gold/XP ledger and nightly settlement service for Heitor Missions.",
        epilog=f"Without --config the file named by ${CONFIG_ENV_VAR} is used, then "
               "~/.config/missions-ledger/config.yaml, /etc/missions-ledger/config.yaml "
               "and ./config.yaml.",
    )
    parser.add_argument("--config", type=str, help="Path to the ledger config.yaml")
    parser.add_argument("--database", type=str, help="SQLite ledger file, overriding database.path")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument(
        "--validate-config", action="store_true",
        help="Load and check the config, print the resolved settings and exit",
    )
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    from_env = os.environ.get(CONFIG_ENV_VAR)
    if from_env:
        return from_env
    for candidate in [
        Path.home() / ".config" / "missions-ledger" / "config.yaml",
        Path("/etc/missions-ledger/config.yaml"),
        Path("config.yaml"),
    ]:
        if candidate.exists():
            return str(candidate)
    return None


def build_config(config_path: str, database: str | None = None) -> LedgerConfig:
    config = load_config(config_path)
    if database:
        config.database.path = database
    return config


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("ledger")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No ledger config found. Pass --config or set %s.", CONFIG_ENV_VAR)
        sys.exit(1)

    try:
        config = build_config(config_path, args.database)
    except Exception as e:
        logger.error("Config %s is invalid: %s", config_path, e)
        sys.exit(1)

    if args.validate_config:
        logger.info(
            "Config %s is valid (database %s, timezone %s, settlement at %02d:%02d)",
            config_path, config.database.path, config.calendar.timezone,
            config.settlement.run_hour, config.settlement.run_minute,
        )
        return

    app = LedgerApp(config_path, config=config)

    # Unix only; Windows stops through KeyboardInterrupt
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Console script entry point."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
