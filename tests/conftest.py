"""Pytest configuration and shared fixtures.

This module provides fixtures for testing notiontasks, including a
temporary database with a controllable clock, a Notion configuration for
the task database, and factories for Notion pages and API errors.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest
from notion_client.errors import APIResponseError

from src.notiontasks.config import Config, EntitySettings, reset_config
from src.notiontasks.db.schemas import EntityType
from src.notiontasks.db.sqlite import Database, reset_db


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup (WAL mode leaves side files)
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def clock() -> FakeClock:
    """Deterministic clock shared by the database and the sync layer."""
    return FakeClock()


@pytest.fixture(scope="function")
def db(temp_db_path: Path, clock: FakeClock) -> Generator[Database, None, None]:
    """Create a test database instance."""
    # Reset any global state
    reset_db()
    reset_config()

    # Set environment variable for test database
    os.environ["NOTIONTASKS_DB_PATH"] = str(temp_db_path)

    database = Database(str(temp_db_path), clock=clock)
    database.create_tables()
    yield database

    # Cleanup
    database.engine.dispose()
    reset_db()
    if "NOTIONTASKS_DB_PATH" in os.environ:
        del os.environ["NOTIONTASKS_DB_PATH"]


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def task_settings() -> EntitySettings:
    """Settings for a task database with the default property names."""
    return EntitySettings(
        entity_type=EntityType.TASK,
        database_id="db-tasks",
        title_property="Name",
        status_property="Status",
        status_property_type="status",
        date_property="Due",
        completed_status="Done",
    )


@pytest.fixture
def notion_config(temp_db_path: Path, task_settings: EntitySettings) -> Config:
    """Configuration with only the task database set up and no real delays."""
    return Config(
        db_path=temp_db_path,
        notion_api_key="secret_test_key",
        entities={EntityType.TASK: task_settings},
        page_delay=0,
        min_request_interval=0,
        retry_max_attempts=4,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        queue_base_delay=5.0,
        queue_max_delay=300.0,
        grace_period=0.01,
    )


# ============================================================================
# Mock Notion API Fixtures
# ============================================================================


@pytest.fixture
def make_page() -> Callable[..., dict[str, Any]]:
    """Factory for Notion page objects as returned by the API."""

    def _make_page(
        page_id: str,
        title: str,
        status: Optional[str] = "Todo",
        due: Optional[str] = None,
        edited: str = "2025-01-15T12:00:00.000Z",
        archived: bool = False,
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "Name": {
                "id": "title",
                "type": "title",
                "title": [{"type": "text", "plain_text": title, "text": {"content": title}}],
            },
            "Status": {
                "id": "st",
                "type": "status",
                "status": {"name": status} if status else None,
            },
            "Due": {
                "id": "du",
                "type": "date",
                "date": {"start": due} if due else None,
            },
        }
        properties.update(extra or {})
        return {
            "object": "page",
            "id": page_id,
            "created_time": "2025-01-01T00:00:00.000Z",
            "last_edited_time": edited,
            "archived": archived,
            "in_trash": archived,
            "properties": properties,
        }

    return _make_page


@pytest.fixture
def api_error() -> Callable[..., APIResponseError]:
    """Factory for notion-client API errors with a given HTTP status."""

    def _api_error(
        status: int,
        code: str = "error",
        message: str = "Request failed",
        headers: Optional[dict[str, str]] = None,
    ) -> APIResponseError:
        error = APIResponseError.__new__(APIResponseError)
        error.args = (message,)
        error.status = status
        error.code = code
        error.headers = headers or {}
        error.body = ""
        return error

    return _api_error


# ============================================================================
# CLI Testing Fixtures
# ============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner."""
    from typer.testing import CliRunner
    return CliRunner()
