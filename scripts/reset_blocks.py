#!/usr/bin/env python3
"""
Show every active block, then delete all login attempt records.
Intended for staging / manual recovery:  python -m scripts.reset_blocks [--type ip|email] [--yes]
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
from loginguard.domain.enums import IdentifierType
from loginguard.infrastructure.audit import AuditLog
from loginguard.main import build_store


def show_blocks(ledger: AttemptLedger) -> list:
    blocks = ledger.list_blocked()
    print(f"📊 Current Active Blocks: {len(blocks)}")
    for record in blocks:
        label = "🌐 IP" if record.identifier_type is IdentifierType.IP else "📧 Email"
        print(f"   {label}: {record.identifier}")
        print(f"      Blocked until: {record.blocked_until.isoformat()}")
        print(f"      Failed attempts: {record.failed_attempts}")
    return blocks


def reset_blocks(identifier_type: str | None = None) -> int:
    settings = GuardSettings.from_env()
    store, _ = build_store(settings)
    ledger = AttemptLedger(store, settings=settings, audit=AuditLog(settings.audit_log_dir))

    show_blocks(ledger)
    deleted = ledger.purge(identifier_type)
    print(f"\n🧹 Deleted {deleted} login attempt records")
    print("✅ All blocks have been reset!")
    return deleted


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Purge login attempt records.")
    parser.add_argument("--type", choices=[t.value for t in IdentifierType], default=None)
    parser.add_argument("--yes", action="store_true", help="skip the confirmation prompt")
    args = parser.parse_args(argv)

    if not args.yes:
        answer = input("This deletes login attempt history. Continue? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1
    reset_blocks(args.type)
    return 0


if __name__ == "__main__":
    sys.exit(main())
