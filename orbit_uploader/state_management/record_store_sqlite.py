"""SQLite-backed record store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import Table, delete, func, select, text, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from orbit_uploader.errors import RecordNotStoredError
from orbit_uploader.event_emitter import Emitter, get_emitter
from orbit_uploader.models import Participant, RecordKind
from orbit_uploader.records import RECORD_TYPES
from orbit_uploader.records.uploadable import Uploadable

from .record_store import RecordStore
from .tables import key_values, metadata, participants, things, videos

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


_TABLES: dict[RecordKind, Table] = {
    RecordKind.THING: things,
    RecordKind.VIDEO: videos,
}


class SqliteRecordStore(RecordStore):
    """SQLite RecordStore for things, videos, the participant and key-values."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the SQLite engine."""
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{db_path}",
            future=True,
        )
        self._emitter = get_emitter()

    async def init_async_store(self) -> None:
        """Apply pragmas and ensure schema."""
        await self._apply_pragmas()
        await self._ensure_schema()

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        await self._engine.dispose()

    async def _apply_pragmas(self) -> None:
        """Apply database pragmas.

        WAL journaling lets readers proceed while a write is in progress, and
        NORMAL synchronous mode avoids blocking on every commit.
        """
        async with self._engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL;"))
            await conn.execute(text("PRAGMA synchronous=NORMAL;"))

    async def _ensure_schema(self) -> None:
        """Create the database schema if it does not already exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    def _notify(self, kind: RecordKind) -> None:
        self._emitter.emit(Emitter.RECORDS_CHANGED, kind)

    async def save(self, record: Uploadable) -> Uploadable:
        """Insert or update a record.

        Args:
            record: The record to persist. On insert its ``local_id`` is set.

        Returns:
            The same record, now carrying its ``local_id``.

        Raises:
            RecordNotStoredError: If the record has a ``local_id`` whose row
                has been deleted.
        """
        table = _TABLES[record.kind]
        values = record.to_values()
        async with self._engine.begin() as conn:
            if record.local_id is None:
                result = await conn.execute(table.insert().values(**values))
                record.local_id = int(result.inserted_primary_key[0])
                logger.debug("Inserted %s %d", record.kind.value, record.local_id)
            else:
                result = await conn.execute(
                    update(table)
                    .where(table.c.id == record.local_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise RecordNotStoredError(
                        f"{record.kind.value} {record.local_id} is no longer stored"
                    )
        self._notify(record.kind)
        return record

    async def get(self, kind: RecordKind, local_id: int) -> Uploadable | None:
        """Return a record by kind and local ID.

        Args:
            kind: The record kind.
            local_id: The store-assigned ID.

        Returns:
            The record if it exists, otherwise None.
        """
        table = _TABLES[kind]
        async with self._engine.begin() as conn:
            row = (
                (await conn.execute(select(table).where(table.c.id == local_id)))
                .mappings()
                .one_or_none()
            )
        if row is None:
            return None
        return RECORD_TYPES[kind].from_row(dict(row))

    async def find_not_uploaded(self, kind: RecordKind) -> list[Uploadable]:
        """Return all records of a kind without a remote ID, oldest first."""
        table = _TABLES[kind]
        async with self._engine.begin() as conn:
            rows = (
                (
                    await conn.execute(
                        select(table)
                        .where(table.c.remote_id.is_(None))
                        .order_by(table.c.id.asc())
                    )
                )
                .mappings()
                .all()
            )
        record_type = RECORD_TYPES[kind]
        return [record_type.from_row(dict(row)) for row in rows]

    async def find_by_remote_id(
        self, kind: RecordKind, remote_id: int
    ) -> Uploadable | None:
        """Return the record of a kind with the given remote ID."""
        table = _TABLES[kind]
        async with self._engine.begin() as conn:
            row = (
                (
                    await conn.execute(
                        select(table).where(table.c.remote_id == remote_id)
                    )
                )
                .mappings()
                .first()
            )
        if row is None:
            return None
        return RECORD_TYPES[kind].from_row(dict(row))

    async def find_children(self, record: Uploadable) -> list[Uploadable]:
        """Return records that reference ``record`` as their parent.

        Args:
            record: A stored record.

        Returns:
            Child records of every kind whose parent kind is ``record.kind``.
        """
        if record.local_id is None:
            return []
        children: list[Uploadable] = []
        for kind, record_type in RECORD_TYPES.items():
            if record_type.depends_on != record.kind:
                continue
            table = _TABLES[kind]
            parent_column = table.c[record_type.parent_column]
            async with self._engine.begin() as conn:
                rows = (
                    (
                        await conn.execute(
                            select(table)
                            .where(parent_column == record.local_id)
                            .order_by(table.c.id.asc())
                        )
                    )
                    .mappings()
                    .all()
                )
            children.extend(record_type.from_row(dict(row)) for row in rows)
        return children

    async def delete(self, record: Uploadable) -> bool:
        """Delete a record row.

        Args:
            record: The record to delete.

        Returns:
            True if a row was removed, False if it was already gone.
        """
        if record.local_id is None:
            return False
        table = _TABLES[record.kind]
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(table).where(table.c.id == record.local_id)
            )
        removed = result.rowcount > 0
        if removed:
            self._notify(record.kind)
        return removed

    async def count_not_uploaded(self, kind: RecordKind) -> int:
        """Count records of a kind that have no remote ID."""
        table = _TABLES[kind]
        async with self._engine.begin() as conn:
            count = (
                await conn.execute(
                    select(func.count())
                    .select_from(table)
                    .where(table.c.remote_id.is_(None))
                )
            ).scalar_one()
        return int(count)

    async def get_participant(self) -> Participant | None:
        """Return the app's participant, if one has been stored."""
        async with self._engine.begin() as conn:
            row = (
                (await conn.execute(select(participants).order_by(participants.c.id)))
                .mappings()
                .first()
            )
        if row is None:
            return None
        return Participant.from_row(dict(row))

    async def save_participant(self, participant: Participant) -> None:
        """Insert or update the participant.

        There is one participant per app instance, so any other stored
        participant row is replaced.

        Args:
            participant: The participant to store.
        """
        previous = await self.get_participant()
        values = {
            "id": participant.id,
            "auth_credential": participant.auth_credential,
            "study_start": participant.study_start,
            "study_end": participant.study_end,
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                delete(participants).where(participants.c.id != participant.id)
            )
            stmt = insert(participants).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[participants.c.id],
                set_={k: v for k, v in values.items() if k != "id"},
            )
            await conn.execute(stmt)

        previous_credential = previous.auth_credential if previous else None
        if previous_credential != participant.auth_credential:
            self._emitter.emit(
                Emitter.CREDENTIAL_CHANGED, participant.auth_credential
            )

    async def get_value(self, key: str) -> Any | None:
        """Return a persisted JSON value, or None if the key is absent."""
        async with self._engine.begin() as conn:
            value = (
                await conn.execute(
                    select(key_values.c.value).where(key_values.c.key == key)
                )
            ).scalar_one_or_none()
        return value

    async def set_value(self, key: str, value: Any) -> None:
        """Persist a JSON value under ``key``, replacing any previous value."""
        now = _utc_now()
        async with self._engine.begin() as conn:
            stmt = insert(key_values).values(key=key, value=value, last_updated=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[key_values.c.key],
                set_={"value": value, "last_updated": now},
            )
            await conn.execute(stmt)

    async def delete_value(self, key: str) -> None:
        """Remove a persisted value if present."""
        async with self._engine.begin() as conn:
            await conn.execute(delete(key_values).where(key_values.c.key == key))
