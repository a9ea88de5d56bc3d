from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

import httpx

from app.logs import configure_logging
from app.settings import Settings
from ingest.pipeline import run_batch
from ingest.scheduler import seed_feed_packs
from store.db import close_database, open_database


async def _run(args: argparse.Namespace, settings: Settings) -> list[dict]:
    db = open_database(args.db or settings.db_path)
    try:
        if args.seed:
            seed_feed_packs(settings, db)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            results = await run_batch(
                db,
                settings,
                client,
                source_id=args.source,
                test_mode=args.test,
            )
    finally:
        close_database(db)
    return [r.to_dict(sample_size=args.sample) for r in results]


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one ingestion batch")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--source", default=None, help="process only this source id")
    parser.add_argument(
        "--test",
        action="store_true",
        help="fetch and normalize only; nothing is written",
    )
    parser.add_argument("--seed", action="store_true", help="load feed packs first")
    parser.add_argument("--sample", type=int, default=0)
    parser.add_argument("--log-file", type=Path, default=None)
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level, args.log_file)
    try:
        results = asyncio.run(_run(args, settings))
    except LookupError as e:
        parser.exit(status=2, message=f"{e}\n")

    print(json.dumps(results, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
