"""Protocol for record persistence."""

from __future__ import annotations

from typing import Any, Protocol

from orbit_uploader.models import Participant, RecordKind
from orbit_uploader.records.uploadable import Uploadable


class RecordStore(Protocol):
    """Persistence interface for uploadable records and upload bookkeeping."""

    async def save(self, record: Uploadable) -> Uploadable:
        """Insert or update a record.

        Inserting assigns ``local_id``. Updating a record whose row no longer
        exists raises ``RecordNotStoredError``. Every write emits
        RECORDS_CHANGED for the record's kind.
        """
        ...

    async def get(self, kind: RecordKind, local_id: int) -> Uploadable | None:
        """Get a record by kind and local ID."""
        ...

    async def find_not_uploaded(self, kind: RecordKind) -> list[Uploadable]:
        """Return all records of a kind that have no remote ID."""
        ...

    async def find_by_remote_id(
        self, kind: RecordKind, remote_id: int
    ) -> Uploadable | None:
        """Return the record of a kind with the given remote ID."""
        ...

    async def find_children(self, record: Uploadable) -> list[Uploadable]:
        """Return the records whose upload depends on ``record``."""
        ...

    async def delete(self, record: Uploadable) -> bool:
        """Delete a record. Returns True if a row was removed."""
        ...

    async def count_not_uploaded(self, kind: RecordKind) -> int:
        """Count records of a kind that have no remote ID."""
        ...

    async def get_participant(self) -> Participant | None:
        """Return the app's participant, if one has been stored."""
        ...

    async def save_participant(self, participant: Participant) -> None:
        """Insert or update the participant.

        Emits CREDENTIAL_CHANGED when the credential differs from the stored one.
        """
        ...

    async def get_value(self, key: str) -> Any | None:
        """Return a persisted JSON value, or None if the key is absent."""
        ...

    async def set_value(self, key: str, value: Any) -> None:
        """Persist a JSON value under ``key``."""
        ...

    async def delete_value(self, key: str) -> None:
        """Remove a persisted value."""
        ...
