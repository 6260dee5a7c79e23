"""
Generate the monthly partner payout report.

Groups the month's accrued commissions per partner, stores the report in
payout_reports and writes the CSV next to it. Entries stay accrued; the
payout run marks them paid.

Usage (from backend/):
  python -m scripts.generate_payout_report                 # previous month
  python -m scripts.generate_payout_report --month 2025-01 --regenerate
  python -m scripts.generate_payout_report --month 2025-01 --csv-out payouts.csv
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context
from services.payout_report_service import PayoutReportService
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Generate the monthly partner payout report")
    parser.add_argument("--month", help="Report month as YYYY-MM (default: previous month)")
    parser.add_argument("--regenerate", action="store_true", help="Rebuild even if a completed report exists")
    parser.add_argument("--csv-out", help="Also write the CSV to this path")
    args = parser.parse_args()

    async def _():
        async with get_db_context() as db:
            return await PayoutReportService(db).generate_report(
                report_month=args.month,
                generated_by="script",
                regenerate=args.regenerate,
            )

    try:
        report = asyncio.run(_())
    except ValueError as e:
        logger.error(str(e))
        return 2

    logger.info(
        "Payout report %s: %s partner(s), %s entries, total %s (%s)",
        report.report_month, report.total_partners, report.total_entries,
        report.total_commission_amount, ", ".join(report.currencies) or "-",
    )
    if args.csv_out:
        Path(args.csv_out).write_text(report.csv_content or "")
        logger.info("CSV written to %s", args.csv_out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
