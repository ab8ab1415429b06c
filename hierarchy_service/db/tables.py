"""SQLAlchemy Core table declarations mirroring the SQL migrations.

Schema creation is owned by the migration files; these declarations exist so
bulk inserts can use ``INSERT ... RETURNING`` with parameter ordering and so
job bookkeeping gets typed DateTime/Boolean handling on every dialect.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()


episode = Table(
    "episode",
    metadata,
    Column("episode_id", Integer, primary_key=True, autoincrement=True),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("owner_id", String(64)),
    Column("created_by", String(64)),
    Column("share_token", String(128)),
    Column("published_at", DateTime),
    Column("created_at", DateTime),
)

part = Table(
    "part",
    metadata,
    Column("part_id", Integer, primary_key=True, autoincrement=True),
    Column("episode_id", Integer, ForeignKey("episode.episode_id", ondelete="CASCADE"), nullable=False),
    Column("title", Text, nullable=False),
    Column("summary", Text),
    Column("position", Integer, nullable=False),
    UniqueConstraint("episode_id", "position", name="uq_part_position"),
)

item = Table(
    "item",
    metadata,
    Column("item_id", Integer, primary_key=True, autoincrement=True),
    Column("part_id", Integer, ForeignKey("part.part_id", ondelete="CASCADE"), nullable=False),
    Column("title", Text, nullable=False),
    Column("body", Text),
    Column("position", Integer, nullable=False),
    UniqueConstraint("part_id", "position", name="uq_item_position"),
)

block = Table(
    "block",
    metadata,
    Column("block_id", Integer, primary_key=True, autoincrement=True),
    Column("item_id", Integer, ForeignKey("item.item_id", ondelete="CASCADE"), nullable=False),
    Column("block_type", String(32), nullable=False),
    Column("content", Text),
    Column("position", Integer, nullable=False),
    UniqueConstraint("item_id", "position", name="uq_block_position"),
)

block_field = Table(
    "block_field",
    metadata,
    Column("block_field_id", Integer, primary_key=True, autoincrement=True),
    Column("block_id", Integer, ForeignKey("block.block_id", ondelete="CASCADE"), nullable=False),
    Column("name", String(128), nullable=False),
    Column("value", Text),
    Column("position", Integer, nullable=False),
    UniqueConstraint("block_id", "position", name="uq_block_field_position"),
)

media = Table(
    "media",
    metadata,
    Column("media_id", Integer, primary_key=True, autoincrement=True),
    Column("block_id", Integer, ForeignKey("block.block_id", ondelete="CASCADE"), nullable=False),
    Column("storage_key", Text, nullable=False),
    Column("content_type", String(128)),
    Column("size_bytes", Integer),
    Column("access_token", String(128)),
    Column("copy_status", String(16), nullable=False, server_default="ok"),
)

duplication_record = Table(
    "duplication_record",
    metadata,
    Column("source_episode_id", Integer, primary_key=True),
    Column("actor_id", String(64), primary_key=True),
    Column("duplicate_episode_id", Integer, ForeignKey("episode.episode_id", ondelete="CASCADE"), nullable=False),
    Column("job_id", String(36)),
    Column("created_at", DateTime),
)

duplication_job = Table(
    "duplication_job",
    metadata,
    Column("job_id", String(36), primary_key=True),
    Column("source_episode_id", Integer, nullable=False),
    Column("actor_id", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False),
    Column("next_attempt_at", DateTime),
    Column("error_kind", String(64)),
    Column("last_error", Text),
    Column("result_episode_id", Integer),
    Column("cancel_requested", Boolean, nullable=False, default=False),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

attachment_copy_task = Table(
    "attachment_copy_task",
    metadata,
    Column("task_id", String(36), primary_key=True),
    Column("job_id", String(36)),
    Column("kind", String(32), nullable=False),
    Column("entity_id", Integer, nullable=False),
    Column("source_location", Text, nullable=False),
    Column("dest_location", Text, nullable=False),
    Column("status", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)


def table_for(name: str) -> Table:
    return metadata.tables[name]


__all__ = [
    "metadata",
    "episode",
    "part",
    "item",
    "block",
    "block_field",
    "media",
    "duplication_record",
    "duplication_job",
    "attachment_copy_task",
    "table_for",
]
