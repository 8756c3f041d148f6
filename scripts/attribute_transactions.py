"""Attribute unowned transactions, or correct existing owners.

The scheduled pipeline and this script share the same resolver chain.

Examples:
    python scripts/attribute_transactions.py --dry-run
    python scripts/attribute_transactions.py
    python scripts/attribute_transactions.py --correct            # lists candidates only
    python scripts/attribute_transactions.py --correct --confirm  # overwrites owners
"""

import argparse
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from attribution_resolver import AttributionResolver
from core.audit import get_audit_logger
from core.config import get_settings
from core.observability import configure_logging, get_logger
from ledger import init_ledger_db


logger = get_logger(__name__)


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Attribute transactions to clients")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--correct", action="store_true", help="Correction mode: re-check already attributed rows")
    parser.add_argument("--confirm", action="store_true", help="Required to overwrite owners in correction mode")
    parser.add_argument("--client", default=None, help="Correction mode: only rows currently owned by this client")
    parser.add_argument("--actor", default="operator", help="Recorded on correction audit events")
    args = parser.parse_args()

    configure_logging()
    settings = get_settings()
    init_ledger_db(settings.db_path)
    resolver = AttributionResolver(
        settings.attribution,
        db_path=settings.db_path,
        audit=get_audit_logger(settings.db_path),
    )

    if args.correct:
        dry_run = args.dry_run or not args.confirm
        result = resolver.correct_attributions(
            confirmed=args.confirm,
            dry_run=dry_run,
            client_id=args.client,
            actor=args.actor,
        )
        output = result.to_dict()
        output["candidates"] = [
            {
                "transaction_id": c.transaction_id,
                "current_client_id": c.current_client_id,
                "proposed_client_id": c.proposed_client_id,
                "method": c.method.value,
            }
            for c in result.candidates
        ]
        print(json.dumps(output, indent=2))
        if dry_run and result.candidates and not args.dry_run:
            logger.warning("Nothing was changed. Re-run with --confirm to overwrite these owners.")
        return

    result = resolver.run(dry_run=args.dry_run)
    print(json.dumps(result.to_dict(), indent=2))


if __name__ == "__main__":
    main()
