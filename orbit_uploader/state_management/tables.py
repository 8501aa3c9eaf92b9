"""SQLAlchemy table definitions for records and persisted upload state."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
)

from orbit_uploader.models import VideoKind

metadata = MetaData()

things = Table(
    "things",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("remote_id", Integer, nullable=True, default=None),
    Column("label_participant", Text, nullable=False),
    Column("label_dataset", Text, nullable=True, default=None),
    Column(
        "created_at",
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
    ),
)

videos = Table(
    "videos",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("thing_id", Integer, ForeignKey("things.id"), nullable=False),
    Column("file_path", Text, nullable=False),
    Column("remote_id", Integer, nullable=True, default=None),
    Column("kind", Enum(VideoKind, native_enum=False), nullable=False),
    Column("verified", Text, nullable=True, default=None),
    Column(
        "recorded",
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
    ),
)

participants = Table(
    "participant",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("auth_credential", Text, nullable=True),
    Column("study_start", Date, nullable=True),
    Column("study_end", Date, nullable=True),
)

key_values = Table(
    "key_values",
    metadata,
    Column("key", Text, primary_key=True),
    Column("value", JSON, nullable=False),
    Column(
        "last_updated",
        DateTime(timezone=False),
        nullable=False,
        server_default=func.now(),
    ),
)

Index("idx_things_remote_id", things.c.remote_id)
Index("idx_videos_remote_id", videos.c.remote_id)
Index("idx_videos_thing_id", videos.c.thing_id)
