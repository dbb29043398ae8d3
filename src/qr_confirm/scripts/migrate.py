# src/qr_confirm/scripts/migrate.py
"""
Apply schema migrations for the payment token tables.

    python -m qr_confirm.scripts.migrate [--revision REV] [--sql]
"""

import argparse
import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from qr_confirm.core.settings import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(database_url: str | None = None) -> Config:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url or settings.database_url_sync)
    return cfg


def run_upgrade(revision: str = "head", *, sql: bool = False) -> None:
    logger.info("Upgrading payment token schema to %s", revision)
    command.upgrade(alembic_config(), revision, sql=sql)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply payment token schema migrations")
    parser.add_argument("--revision", default="head", help="Target revision")
    parser.add_argument("--sql", action="store_true", help="Print SQL instead of executing it")
    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.log_level.upper())
    run_upgrade(args.revision, sql=args.sql)


if __name__ == "__main__":
    main()
