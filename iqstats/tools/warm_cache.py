#!/usr/bin/env python3
"""
tools/warm_cache.py
Loads the leaderboard and dashboard datasets once and prints the headline numbers.
Handy to check a backend before pointing the web app at it.

  python -m iqstats.tools.warm_cache [--page-size 10] [--json]
"""
import argparse
import asyncio
import json
import sys

from iqstats.config import settings
from iqstats.datasource.factory import close_datasource, make_datasource
from iqstats.logging_config import setup_logging
from iqstats.services.analytics import Analytics


async def warm(page_size: int, as_json: bool) -> int:
    datasource = make_datasource(settings)
    try:
        analytics = Analytics.from_settings(datasource, settings)
        if not await analytics.warm_up():
            print("⛔  Warm-up failed, see logs.", file=sys.stderr)
            return 1

        page = await analytics.leaderboard.get_leaderboard(1, page_size)
        stats = await analytics.dashboard.get_dashboard_stats()
    finally:
        await close_datasource(datasource)

    if as_json:
        print(json.dumps({
            "leaderboard": [e.to_dict() for e in page.entries],
            "leaderboardStats": page.stats.to_dict(),
            "dashboard": stats.to_dict(),
        }, indent=2, ensure_ascii=False))
        return 0

    print(f"📊  {stats.valid_records} valid results, {stats.unique_participants} participants, "
          f"{stats.total_countries} countries")
    print(f"    avg IQ {stats.average_score} – best {stats.highest_score} – avg time {stats.average_test_time}")
    print(f"🏆  Top {len(page.entries)} / {page.stats.total_participants}:")
    for e in page.entries:
        print(f"    #{e.rank:<4} {e.score:>4}  {e.name} ({e.location})")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Warm the analytics cache and print a summary")
    parser.add_argument("--page-size", type=int, default=10)
    parser.add_argument("--json", action="store_true", help="print the raw payloads")
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    return asyncio.run(warm(args.page_size, args.json))


if __name__ == "__main__":
    sys.exit(main())
