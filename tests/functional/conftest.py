"""Functional test bootstrap for the hierarchy service.

Points the service at a file-backed SQLite database, applies the SQLite
migrations once per session and empties every table before each test so
tests stay independent. Fixtures wire the duplication runtime onto an
``InlineJobQueue`` so jobs and attachment copies run synchronously.
"""

from __future__ import annotations

import os
import pathlib
import pytest

# Ensure the service points to the shared file DB before any hierarchy_service import
_ROOT = pathlib.Path(__file__).resolve().parents[2]
_DB_FILE = _ROOT / "tmp" / "functional_tests.db"
_DB_FILE.parent.mkdir(parents=True, exist_ok=True)
if _DB_FILE.exists():
    _DB_FILE.unlink()

os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_DB_FILE}"
os.environ["DATABASE_URL"] = os.environ["TEST_DATABASE_URL"]
# Disable app startup auto-migrations; we apply SQLite migrations explicitly
os.environ["AUTO_APPLY_MIGRATIONS"] = "0"

# Children before parents
_TABLES = (
    "attachment_copy_task",
    "duplication_job",
    "duplication_record",
    "media",
    "block_field",
    "block",
    "item",
    "part",
    "episode",
)


def _apply_sqlite_migrations() -> None:
    from hierarchy_service.db.base import get_engine
    from hierarchy_service.db.migrations_runner import apply_migrations

    engine = get_engine(os.environ["TEST_DATABASE_URL"])
    sqlite_migrations_dir = _ROOT / "sqlite_migrations"

    # Ensure a clean migration journal so the schema is applied on this DB
    journal = sqlite_migrations_dir / "_journal.json"
    if journal.exists():
        journal.unlink()
    apply_migrations(engine, migrations_dir=str(sqlite_migrations_dir))


@pytest.fixture(scope="session", autouse=True)
def functional_sqlite_bootstrap() -> None:
    """Session-level bootstrap: apply migrations once for the shared DB."""
    _apply_sqlite_migrations()
    yield


@pytest.fixture(autouse=True)
def clean_tables(functional_sqlite_bootstrap):
    from sqlalchemy import text as sql_text

    from hierarchy_service.db.base import get_engine
    from hierarchy_service.logic.events import get_buffered_events

    with get_engine(os.environ["TEST_DATABASE_URL"]).begin() as conn:
        for table in _TABLES:
            conn.execute(sql_text(f"DELETE FROM {table}"))
    get_buffered_events(clear=True)
    yield


@pytest.fixture()
def engine():
    from hierarchy_service.db.base import get_engine

    return get_engine(os.environ["TEST_DATABASE_URL"])


@pytest.fixture()
def app_config():
    from hierarchy_service.config import (
        AppConfig,
        AttachmentSettings,
        DatabaseConfig,
        DuplicationSettings,
        PositionSettings,
    )

    return AppConfig(
        database=DatabaseConfig(dsn=os.environ["TEST_DATABASE_URL"]),
        positions=PositionSettings(max_attempts=3, backoff_seconds=0),
        duplication=DuplicationSettings(
            max_attempts=3,
            backoff_base_seconds=0,
            backoff_max_seconds=0,
            attempt_timeout_seconds=30,
            worker_count=2,
        ),
        attachments=AttachmentSettings(max_attempts=2, backoff_seconds=0, location_prefix="test-blobs"),
    )


class RecordingQueue:
    """Captures publishes without delivering them."""

    def __init__(self) -> None:
        self.handlers: dict = {}
        self.published: list[tuple[str, str, float]] = []

    def subscribe(self, topic, handler) -> None:
        self.handlers[topic] = handler

    def publish(self, topic, message_id, delay_seconds=0.0) -> None:
        self.published.append((topic, message_id, float(delay_seconds)))


@pytest.fixture()
def recording_queue():
    return RecordingQueue()


@pytest.fixture()
def inline_queue():
    from hierarchy_service.logic.job_queue import InlineJobQueue

    return InlineJobQueue()


@pytest.fixture()
def blob_store():
    from hierarchy_service.logic.blob_store import InMemoryBlobStore

    return InMemoryBlobStore()


@pytest.fixture()
def coordinator(app_config, inline_queue, blob_store):
    from hierarchy_service.logic.duplication_jobs import build_coordinator

    coord = build_coordinator(app_config, inline_queue, blob_store)
    yield coord
    coord.shutdown()


@pytest.fixture()
def client(app_config, inline_queue, blob_store):
    from fastapi.testclient import TestClient

    from hierarchy_service.main import create_app

    app = create_app(config=app_config, job_queue=inline_queue, blob_store=blob_store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def seed_episode(blob_store):
    """Build an episode tree; returns a dict of created ids by kind.

    ``shape`` lists, per part, the items as block counts, e.g. ``[[2], [1, 1]]``
    is two parts: the first with one item of two blocks, the second with two
    items of one block each. Each block gets ``fields`` fields and ``media``
    attachments whose blobs are stored in ``blob_store``.
    """
    from hierarchy_service.db.base import get_engine
    from hierarchy_service.db.tables import media
    from hierarchy_service.logic.positions import insert_entity
    from hierarchy_service.logic.repository_episodes import create_episode

    def build(shape=((1,),), fields: int = 0, media_per_block: int = 0, owner: str = "owner-1") -> dict:
        ids: dict = {"episode": None, "part": [], "item": [], "block": [], "block_field": [], "media": []}
        episode_id = create_episode("Pilot", owner, description="first episode", share_token="secret-share")
        ids["episode"] = episode_id
        for p_idx, items in enumerate(shape):
            part = insert_entity("part", episode_id, {"title": f"Part {p_idx}"})
            ids["part"].append(part.entity_id)
            for i_idx, block_count in enumerate(items):
                item = insert_entity("item", part.entity_id, {"title": f"Item {p_idx}.{i_idx}"})
                ids["item"].append(item.entity_id)
                for b_idx in range(block_count):
                    block = insert_entity(
                        "block", item.entity_id, {"block_type": "text", "content": f"Block {p_idx}.{i_idx}.{b_idx}"}
                    )
                    ids["block"].append(block.entity_id)
                    for f_idx in range(fields):
                        field = insert_entity("block_field", block.entity_id, {"name": f"f{f_idx}", "value": str(f_idx)})
                        ids["block_field"].append(field.entity_id)
                    for m_idx in range(media_per_block):
                        key = f"uploads/{block.entity_id}/clip-{m_idx}.mp4"
                        blob_store.put(key, f"blob-{block.entity_id}-{m_idx}".encode())
                        with get_engine().begin() as conn:
                            res = conn.execute(
                                media.insert().values(
                                    block_id=block.entity_id,
                                    storage_key=key,
                                    content_type="video/mp4",
                                    size_bytes=10,
                                    access_token="token-secret",
                                    copy_status="ok",
                                )
                            )
                            ids["media"].append(int(res.inserted_primary_key[0]))
        return ids

    return build
