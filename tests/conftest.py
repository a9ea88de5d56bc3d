from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest

from app.settings import Settings
from ingest.sources import AlertSource, ensure_sources
from store.db import Database, close_database, open_database


FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def db(tmp_path) -> Iterator[Database]:
    database = open_database(tmp_path / "test.db")
    try:
        yield database
    finally:
        close_database(database)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DB_PATH=str(tmp_path / "test.db"),
        FEEDS_DIR=str(tmp_path / "feeds"),
        RULE_BACKEND="static",
        CLASSIFICATION_RULES_PATH=str(tmp_path / "no-rules.yaml"),
        RETRY_BASE_DELAY_SECONDS=1.0,
        RETRY_MAX_DELAY_SECONDS=30.0,
    )


@pytest.fixture
def add_source(db) -> Callable[..., AlertSource]:
    def _add(**kwargs) -> AlertSource:
        source = AlertSource(
            id=kwargs.pop("id", "src-1"),
            name=kwargs.pop("name", "Test Source"),
            source_type=kwargs.pop("source_type", "security-rss"),
            api_endpoint=kwargs.pop("api_endpoint", "https://feeds.example.com/alerts"),
            **kwargs,
        )
        ensure_sources(db, [source])
        return source

    return _add


def fixture_response(
    name: str, content_type: str, status_code: int = 200
) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=(FIXTURES / name).read_bytes(),
        headers={"content-type": content_type},
    )


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
