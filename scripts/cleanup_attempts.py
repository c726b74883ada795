#!/usr/bin/env python3
"""
Retention sweep for login attempt records.
Run daily from cron:  python -m scripts.cleanup_attempts [--days N]
"""

import argparse
import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from loginguard.application.ledger import AttemptLedger
from loginguard.config import GuardSettings
from loginguard.infrastructure.audit import AuditLog
from loginguard.main import build_store


def cleanup(days: int | None = None) -> int:
    """Delete unblocked records older than the retention window. Returns count."""
    settings = GuardSettings.from_env()
    store, persistence = build_store(settings)
    ledger = AttemptLedger(store, settings=settings, audit=AuditLog(settings.audit_log_dir))

    retention = days if days is not None else settings.retention_days
    print(f"🧹 Sweeping {persistence} attempt store (retention {retention} days)...")
    deleted = ledger.cleanup(retention_days=retention)
    print(f"  ✅ Cleaned up {deleted} old login attempt records")
    return deleted


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete stale, unblocked login attempt records.")
    parser.add_argument("--days", type=int, default=None, help="retention window in days")
    args = parser.parse_args(argv)
    cleanup(args.days)
    return 0


if __name__ == "__main__":
    sys.exit(main())
