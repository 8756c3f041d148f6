"""Link transactions to billing-period invoices, or reset links.

Examples:
    python scripts/link_invoices.py --dry-run
    python scripts/link_invoices.py
    python scripts/link_invoices.py --reset TX1 TX2 --confirm
"""

import argparse
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.audit import get_audit_logger
from core.config import get_settings
from core.errors import CorrectionNotConfirmed
from core.observability import configure_logging, get_logger
from invoice_linker import InvoicePeriodLinker
from ledger import init_ledger_db


logger = get_logger(__name__)


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Link transactions to internal invoices")
    parser.add_argument("--dry-run", action="store_true", help="Report planned links without writing")
    parser.add_argument("--reset", nargs="+", metavar="TRANSACTION_ID", help="Unlink these transactions")
    parser.add_argument("--confirm", action="store_true", help="Required with --reset")
    parser.add_argument("--actor", default="operator", help="Recorded on reset audit events")
    args = parser.parse_args()

    configure_logging()
    settings = get_settings()
    init_ledger_db(settings.db_path)
    linker = InvoicePeriodLinker(
        db_path=settings.db_path,
        audit=get_audit_logger(settings.db_path),
        exclude_client_ids=settings.attribution.house_client_ids,
    )

    if args.reset:
        try:
            count = linker.reset_links(args.reset, confirmed=args.confirm, dry_run=args.dry_run, actor=args.actor)
        except CorrectionNotConfirmed as e:
            logger.error(f"{e.message}. Re-run with --confirm.")
            sys.exit(1)
        print(json.dumps({"reset": count, "dry_run": args.dry_run}, indent=2))
        return

    result = linker.run(dry_run=args.dry_run)
    output = result.to_dict()
    if args.dry_run:
        output["planned_links"] = [
            {"transaction_id": p.transaction_id, "internal_invoice_id": p.internal_invoice_id}
            for p in result.planned
        ]
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
