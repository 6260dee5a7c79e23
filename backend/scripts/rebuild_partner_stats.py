"""
Rebuild partner statistics from the commission ledger (repair script).

Recomputes total_referrals, total_conversions, total_commission_earned and
total_commission_paid for one partner or for every partner. Use after a
logged "Failed to update partner statistics" warning.

Usage (from backend/):
  python -m scripts.rebuild_partner_stats --partner-id partner_123
  python -m scripts.rebuild_partner_stats --all
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import get_db_context
from services.partner_statistics import PartnerStatisticsService
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def rebuild(db, partner_ids) -> int:
    """Rebuild each partner; returns the number of partners not found."""
    service = PartnerStatisticsService(db)
    missing = 0
    for partner_id in partner_ids:
        stats = await service.rebuild_from_ledger(partner_id, actor_id="script")
        if stats is None:
            missing += 1
    return missing


async def all_partner_ids(db):
    docs = await db.partners.find({}, {"_id": 0, "partner_id": 1}).to_list(length=None)
    return [d["partner_id"] for d in docs]


def main():
    parser = argparse.ArgumentParser(description="Rebuild partner statistics from the commission ledger")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--partner-id", help="Partner to rebuild")
    group.add_argument("--all", action="store_true", help="Rebuild every partner")
    args = parser.parse_args()

    async def _():
        async with get_db_context() as db:
            partner_ids = await all_partner_ids(db) if args.all else [args.partner_id]
            logger.info("Rebuilding statistics for %s partner(s)", len(partner_ids))
            return await rebuild(db, partner_ids)

    missing = asyncio.run(_())
    if missing:
        logger.warning("%s partner(s) not found", missing)
    return 0 if not missing else 1


if __name__ == "__main__":
    sys.exit(main())
