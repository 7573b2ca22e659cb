from collections.abc import Generator
from pathlib import Path

import pytest

from batchverify.config import Settings
from batchverify.database import build_session_factory
from batchverify.pipeline import BatchRunner
from tests.fakes import FakeCapability, RecordingChannel


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "screenshots").mkdir(parents=True, exist_ok=True)
    (tmp_path / "inbox").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="batchverify",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        output_root=str(temp_workspace / "screenshots"),
        inbox_dir=str(temp_workspace / "inbox"),
        outbox_dir=str(temp_workspace / "outbox"),
        target_url="https://forms.example.test/signup",
        headless=True,
        concurrency=2,
        entry_timeout_ms=2000,
        retry_errors=1,
        retry_delay_ms=0,
        retry_jitter_ms=0,
        serial_cooldown_min_ms=0,
        serial_cooldown_max_ms=0,
        max_entries=70,
        field_timeout_ms=100,
        submit_timeout_ms=100,
        settle_ms=0,
        classify_timeout_ms=200,
        poll_interval_ms=10,
        archive_max_bytes=49 * 1024 * 1024,
        approved_users=(),
        inbox_poll_seconds=30,
    )


@pytest.fixture()
def capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def runner(
    test_settings: Settings,
    capability: FakeCapability,
    channel: RecordingChannel,
) -> Generator[BatchRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)
    yield BatchRunner(test_settings, session_factory, lambda: capability, channel=channel)
