from __future__ import annotations

import asyncio
import logging

import httpx

from app.settings import Settings
from ingest.feed_packs import feed_pack_sources
from ingest.pipeline import run_batch
from ingest.sources import ensure_sources
from store.db import Database


logger = logging.getLogger(__name__)


def seed_feed_packs(settings: Settings, db: Database) -> int:
    sources = feed_pack_sources(settings.feeds_dir)
    ensure_sources(db, sources)
    if sources:
        logger.info("seeded %d sources from %s", len(sources), settings.feeds_dir)
    return len(sources)


async def run_scheduler(*, settings: Settings, db: Database) -> None:
    """Run a batch every tick until cancelled; due checks happen per source."""
    async with httpx.AsyncClient(follow_redirects=True) as client:
        while True:
            try:
                await run_batch(db, settings, client)
            except Exception:
                # the loop outlives a failed tick; sources record their own metrics
                logger.exception("scheduled batch failed")
            await asyncio.sleep(settings.scheduler_tick_seconds)
