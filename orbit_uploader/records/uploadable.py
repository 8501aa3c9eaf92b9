"""Capability contract shared by every record that is uploaded to the server.

Each record type defines its own request and response schema; the transfer
bookkeeping around it (trackers, coordinator, trigger) stays generic and only
talks to records through this interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from orbit_uploader.errors import RecordNotStoredError
from orbit_uploader.models import ApiEndpoints, RecordKind, TransferRequest

if TYPE_CHECKING:
    from orbit_uploader.state_management.record_store import RecordStore
    from orbit_uploader.upload_management.pending_deletions import PendingDeletions
    from orbit_uploader.upload_management.transport import Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadContext:
    """Collaborators a record needs to upload itself and record the outcome."""

    store: RecordStore
    endpoints: ApiEndpoints
    deletions: PendingDeletions
    tmp_path: Path | None = None


class Uploadable(ABC):
    """A locally stored record that must eventually exist on the server."""

    kind: ClassVar[RecordKind]
    # Large bodies go through the background-capable session
    background_transfer: ClassVar[bool] = False
    # Kind whose remote ID this record's upload needs, and the column naming it
    depends_on: ClassVar[RecordKind | None] = None
    parent_column: ClassVar[str | None] = None

    local_id: int | None
    remote_id: int | None

    @property
    def key(self) -> tuple[RecordKind, int]:
        """Identity of the record across kinds.

        Raises:
            RecordNotStoredError: If the record has not been stored yet.
        """
        if self.local_id is None:
            raise RecordNotStoredError(f"{self.kind.value} has no local ID")
        return (self.kind, self.local_id)

    def describe(self) -> str:
        """Short human-readable identity for log messages."""
        return f"{self.kind.value} {self.local_id}"

    def remote_locator(self, endpoints: ApiEndpoints) -> str | None:
        """Return the URL of the server record, or None before upload."""
        if self.remote_id is None:
            return None
        return f"{endpoints.for_kind(self.kind)}{self.remote_id}/"

    @classmethod
    @abstractmethod
    def from_row(cls, row: Mapping[str, Any]) -> Uploadable:
        """Build a record from a SQLAlchemy mapping row."""

    @abstractmethod
    def to_values(self) -> dict[str, Any]:
        """Column values to write, excluding the ``id`` primary key."""

    @abstractmethod
    async def build_request(
        self, credential: str, context: UploadContext
    ) -> TransferRequest | None:
        """Build the upload request, or return None if it cannot be made yet."""

    @abstractmethod
    def parse_upload_response(self, body: bytes) -> int:
        """Extract the server-assigned ID from an upload response body.

        Raises:
            UploadResponseError: If the body does not match the response schema.
        """

    def fallback_response(self, headers: Mapping[str, str]) -> bytes | None:
        """Rebuild a success body from response headers when the body was lost.

        Args:
            headers: Response headers with lower-cased names.

        Returns:
            A synthetic response body, or None if no fallback is available.
        """
        return None

    async def upload(
        self, credential: str, transport: Transport, context: UploadContext
    ) -> int | None:
        """Submit this record's upload on ``transport``.

        Args:
            credential: Value for the Authorization header.
            transport: Transport that runs the transfer.
            context: Store and endpoints used to build the request.

        Returns:
            The transfer handle, or None if the upload was not started.
        """
        if self.local_id is None:
            logger.warning("Cannot upload %s before it is stored", self.kind.value)
            return None
        if self.remote_id is not None:
            logger.info(
                "Skipping upload of %s, already uploaded as %d",
                self.describe(),
                self.remote_id,
            )
            return None

        request = await self.build_request(credential, context)
        if request is None:
            return None
        return transport.submit(request)

    async def on_upload_response_received(
        self, body: bytes, context: UploadContext
    ) -> int:
        """Assign the remote ID from a response body and persist it.

        If the record was deleted locally while the upload was in flight, the
        new server record is an orphan and is queued for remote deletion.

        Args:
            body: Raw response body.
            context: Store and deletion queue.

        Returns:
            The assigned remote ID.

        Raises:
            UploadResponseError: If the body does not match the response schema.
        """
        remote_id = self.parse_upload_response(body)
        self.remote_id = remote_id
        try:
            await context.store.save(self)
        except RecordNotStoredError:
            logger.warning(
                "%s was deleted during upload, removing orphan %d from server",
                self.describe(),
                remote_id,
            )
            await self.request_remote_deletion(context)
        return remote_id

    async def request_remote_deletion(self, context: UploadContext) -> bool:
        """Queue the server record for deletion.

        Returns:
            True if a locator was queued, False if the record was never uploaded.
        """
        locator = self.remote_locator(context.endpoints)
        if locator is None:
            return False
        await context.deletions.add(locator)
        return True
