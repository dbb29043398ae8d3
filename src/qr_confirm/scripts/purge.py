# src/qr_confirm/scripts/purge.py
"""
Cron job removing payment data past its retention window.

Run daily:
    python -m qr_confirm.scripts.purge [--token-days N] [--audit-days N]
"""

import argparse
import logging

from qr_confirm.core.settings import settings
from qr_confirm.db.session import SessionLocal
from qr_confirm.db.time import utcnow
from qr_confirm.services.retention import purge


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Purge expired payment tokens and old audit rows")
    parser.add_argument(
        "--token-days",
        type=int,
        default=settings.token_retention_days,
        help="Keep tokens for this many days after expiry",
    )
    parser.add_argument(
        "--audit-days",
        type=int,
        default=settings.audit_retention_days,
        help="Keep audit entries for this many days",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=settings.log_level.upper())

    db = SessionLocal()
    try:
        report = purge(
            db,
            now=utcnow(),
            token_retention_days=args.token_days,
            audit_retention_days=args.audit_days,
        )
    finally:
        db.close()
    print(
        f"Purged {report.tokens} tokens, {report.audit_entries} audit entries, "
        f"{report.events} delivered events"
    )


if __name__ == "__main__":
    main()
