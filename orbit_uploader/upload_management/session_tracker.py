"""Bookkeeping of in-flight transfers for one transport session.

The tracker maps transport handles to the records being uploaded, guarantees
at most one live transfer per record, and for the background session keeps
the mapping in the key-value store so it can be rebuilt after a restart.
"""

from __future__ import annotations

import asyncio
import logging

from orbit_uploader.const import TASK_KEY_SUFFIX, UPLOADABLE_KEY_SUFFIX
from orbit_uploader.errors import RecordNotStoredError
from orbit_uploader.models import RecordKind, TransferState
from orbit_uploader.records.uploadable import UploadContext, Uploadable

from .transport import Transport

logger = logging.getLogger(__name__)

RecordKey = tuple[RecordKind, int]


class TransferSessionTracker:
    """Handle to record mapping for a single transport.

    Every method runs on the event loop. Checks and updates of the mapping
    never await in between, so no locking is needed for them.
    """

    def __init__(
        self,
        transport: Transport,
        context: UploadContext,
        *,
        persist: bool = False,
    ) -> None:
        """Initialise an empty tracker.

        Args:
            transport: Transport whose transfers this tracker follows.
            context: Collaborators handed to records when they upload.
            persist: Whether to keep the mapping in the key-value store.
        """
        self._transport = transport
        self._context = context
        self._persist_enabled = persist
        self._records: dict[int, Uploadable] = {}
        self._states: dict[int, TransferState] = {}
        self._handles: dict[RecordKey, int] = {}
        # Records whose upload request is being built
        self._reserved: set[RecordKey] = set()
        self._persist_lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        """Identifier of the tracked transport session."""
        return self._transport.session_id

    @property
    def transport(self) -> Transport:
        """The tracked transport."""
        return self._transport

    @property
    def task_key(self) -> str:
        """Key-value store key holding the persisted handles."""
        return f"{self.session_id}{TASK_KEY_SUFFIX}"

    @property
    def uploadable_key(self) -> str:
        """Key-value store key holding the persisted record identities."""
        return f"{self.session_id}{UPLOADABLE_KEY_SUFFIX}"

    def __len__(self) -> int:
        return len(self._records)

    def is_tracking(self, record: Uploadable) -> bool:
        """Whether ``record`` has a live or starting transfer on this session."""
        if record.local_id is None:
            return False
        key = record.key
        return key in self._handles or key in self._reserved

    async def submit(self, record: Uploadable, credential: str) -> int | None:
        """Start the upload of ``record`` unless it already has a transfer.

        Args:
            record: The record to upload.
            credential: Value for the Authorization header.

        Returns:
            The new transfer handle, or None if nothing was submitted.
        """
        try:
            key = record.key
        except RecordNotStoredError:
            logger.warning("Cannot track upload of unstored %s", record.kind.value)
            return None

        if key in self._handles or key in self._reserved:
            logger.info(
                "Upload of %s already in progress on %s, ignoring",
                record.describe(),
                self.session_id,
            )
            return None

        self._reserved.add(key)
        try:
            handle = await record.upload(credential, self._transport, self._context)
        finally:
            self._reserved.discard(key)

        if handle is None:
            return None

        self._records[handle] = record
        self._states[handle] = TransferState.SUBMITTED
        self._handles[key] = handle
        logger.info(
            "Tracking transfer %d for %s on %s",
            handle,
            record.describe(),
            self.session_id,
        )
        await self._persist()
        return handle

    def resolve(self, handle: int) -> Uploadable | None:
        """Return the record of a live transfer, or None for unknown handles."""
        record = self._records.get(handle)
        if record is None:
            logger.warning(
                "No record for transfer %d on %s", handle, self.session_id
            )
        return record

    def handle_for(self, record: Uploadable) -> int | None:
        """Return the live transfer handle of ``record``, if any."""
        if record.local_id is None:
            return None
        return self._handles.get(record.key)

    def state(self, handle: int) -> TransferState | None:
        """Return the state of a live transfer."""
        return self._states.get(handle)

    def mark(self, handle: int, state: TransferState) -> None:
        """Advance the state of a live transfer."""
        if handle in self._states:
            self._states[handle] = state

    async def release(
        self, handle: int, state: TransferState = TransferState.COMPLETED
    ) -> Uploadable | None:
        """Remove the mapping of a finished or cancelled transfer.

        Args:
            handle: The transfer handle.
            state: Final state, used for logging.

        Returns:
            The released record, or None if the handle was not tracked.
        """
        record = self._forget(handle)
        if record is None:
            return None
        logger.info(
            "Released transfer %d for %s on %s (%s)",
            handle,
            record.describe(),
            self.session_id,
            state.value,
        )
        await self._persist()
        return record

    def _forget(self, handle: int) -> Uploadable | None:
        record = self._records.pop(handle, None)
        self._states.pop(handle, None)
        if record is not None and record.local_id is not None:
            if self._handles.get(record.key) == handle:
                del self._handles[record.key]
        return record

    async def reconcile(self, live_handles: set[int]) -> list[Uploadable]:
        """Drop entries whose transfer the transport no longer knows.

        Args:
            live_handles: Handles of transfers still running on the transport.

        Returns:
            The records whose entries were dropped.
        """
        stale = [handle for handle in self._records if handle not in live_handles]
        dropped = []
        for handle in stale:
            record = self._forget(handle)
            if record is not None:
                logger.info(
                    "Dropping stale transfer %d for %s on %s",
                    handle,
                    record.describe(),
                    self.session_id,
                )
                dropped.append(record)
        if dropped:
            await self._persist()
        return dropped

    async def restore(self) -> int:
        """Rebuild the mapping persisted by a previous process.

        Records are fetched again from the store. A mapping whose two lists
        disagree in length is discarded together with its persisted keys.

        Returns:
            The number of restored entries.
        """
        if not self._persist_enabled:
            return 0

        store = self._context.store
        handles = await store.get_value(self.task_key)
        identities = await store.get_value(self.uploadable_key)
        if handles is None and identities is None:
            return 0

        handles = handles or []
        identities = identities or []
        if len(handles) != len(identities):
            logger.error(
                "Persisted transfers for %s are inconsistent "
                "(%d handles, %d records), discarding them",
                self.session_id,
                len(handles),
                len(identities),
            )
            await store.delete_value(self.task_key)
            await store.delete_value(self.uploadable_key)
            return 0

        restored = 0
        for handle, identity in zip(handles, identities):
            try:
                kind_value, local_id = identity
                kind = RecordKind(kind_value)
                handle = int(handle)
                local_id = int(local_id)
            except (TypeError, ValueError):
                logger.warning(
                    "Skipping malformed persisted transfer %r -> %r",
                    handle,
                    identity,
                )
                continue

            record = await store.get(kind, local_id)
            if record is None:
                logger.warning(
                    "Skipping transfer %d, %s %d is no longer stored",
                    handle,
                    kind.value,
                    local_id,
                )
                continue

            self._records[handle] = record
            self._states[handle] = TransferState.AWAITING_RESPONSE
            self._handles[record.key] = handle
            restored += 1

        logger.info("Restored %d transfers on %s", restored, self.session_id)
        await self._persist()
        return restored

    async def _persist(self) -> None:
        if not self._persist_enabled:
            return
        async with self._persist_lock:
            handles = list(self._records)
            identities = [
                [self._records[handle].kind.value, self._records[handle].local_id]
                for handle in handles
            ]
            store = self._context.store
            await store.set_value(self.task_key, handles)
            await store.set_value(self.uploadable_key, identities)
