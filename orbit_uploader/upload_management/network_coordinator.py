"""Network coordinator routing uploads to transfer sessions.

The coordinator owns a foreground session for small JSON requests and a
background session for media files, each followed by its own tracker. All
transport lifecycle events arrive on one queue and are handled by a single
dispatcher task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

import aiohttp

from orbit_uploader.const import (
    DEVICE_TOKEN_SUCCESS_CODES,
    PROGRESS_LOG_INTERVAL,
    REQUEST_TIMEOUT_SECONDS,
    UNCONFIRMED_UPLOADS_KEY,
)
from orbit_uploader.errors import RecordNotStoredError, UploadResponseError
from orbit_uploader.event_emitter import Emitter, get_emitter
from orbit_uploader.helpers import format_device_token
from orbit_uploader.models import (
    ApiEndpoints,
    DeviceTokenRequest,
    RecordKind,
    TransferCompletion,
    TransferEvent,
    TransferEventKind,
    TransferProgress,
    TransferResponse,
    TransferState,
)
from orbit_uploader.records.uploadable import UploadContext, Uploadable
from orbit_uploader.records.video import Video
from orbit_uploader.sampled_logger import SampledProgressLogger
from orbit_uploader.state_management.record_store import RecordStore

from .pending_deletions import PendingDeletions
from .session_tracker import RecordKey, TransferSessionTracker
from .transport import Transport

logger = logging.getLogger(__name__)


class NetworkCoordinator:
    """Entry point for every upload, cancellation and remote deletion.

    A missing credential silently suppresses every submission path.
    """

    def __init__(
        self,
        store: RecordStore,
        client_session: aiohttp.ClientSession,
        foreground: Transport,
        background: Transport,
        events: asyncio.Queue[TransferEvent],
        *,
        endpoints: ApiEndpoints | None = None,
        tmp_path: Path | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialise the coordinator and its trackers.

        Args:
            store: Record store.
            client_session: Shared aiohttp session for one-shot requests.
            foreground: Transport for small in-memory request bodies.
            background: Background-capable transport for file bodies.
            events: Queue the transports report lifecycle events on.
            endpoints: Server endpoints.
            tmp_path: Directory for staged multipart bodies.
            timeout: Total timeout of one-shot requests, in seconds.
        """
        self._store = store
        self._client_session = client_session
        self._events = events
        self._endpoints = endpoints or ApiEndpoints()
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._credential: str | None = None
        self._emitter = get_emitter()

        self.deletions = PendingDeletions(
            store,
            client_session,
            lambda: self._credential,
            timeout=timeout,
        )
        self.context = UploadContext(
            store=store,
            endpoints=self._endpoints,
            deletions=self.deletions,
            tmp_path=tmp_path,
        )
        self.foreground = TransferSessionTracker(foreground, self.context)
        self.background = TransferSessionTracker(
            background, self.context, persist=True
        )
        self._trackers = {
            tracker.session_id: tracker
            for tracker in (self.foreground, self.background)
        }

        # Called once when the background session has delivered all events
        self.completion_handler: Callable[[], None] | None = None

        self._unconfirmed: set[RecordKey] = set()
        # Records of cancelled transfers whose completion is still expected;
        # a response already on the wire is still applied to them
        self._cancelled: dict[tuple[str, int], Uploadable] = {}
        self._failures: dict[tuple[str, int], str] = {}
        self._progress = SampledProgressLogger(
            "Upload progress [msg %d] %s: %d/%d bytes",
            log_interval=PROGRESS_LOG_INTERVAL,
            target_logger=logger,
        )
        self._dispatcher: asyncio.Task | None = None

    @property
    def credential(self) -> str | None:
        """The credential requests are authorised with."""
        return self._credential

    @credential.setter
    def credential(self, value: str | None) -> None:
        self._credential = value

    @property
    def endpoints(self) -> ApiEndpoints:
        """Server endpoints."""
        return self._endpoints

    @property
    def unconfirmed(self) -> set[RecordKey]:
        """Records whose upload outcome could not be confirmed."""
        return set(self._unconfirmed)

    def is_unconfirmed(self, record: Uploadable) -> bool:
        """Whether ``record`` is parked after an unconfirmable upload."""
        return record.local_id is not None and record.key in self._unconfirmed

    async def start(self) -> None:
        """Load persisted state and start dispatching transport events."""
        await self.deletions.load()
        await self._load_unconfirmed()

        restored = await self.background.restore()
        dropped = await self.background.reconcile(
            self.background.transport.live_handles()
        )
        if restored or dropped:
            logger.info(
                "Background session resumed with %d of %d restored transfers",
                restored - len(dropped),
                restored,
            )

        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch(), name="transfer-event-dispatcher"
            )
        logger.info("NetworkCoordinator started")

    async def close(self) -> None:
        """Stop the dispatcher, close transports and pending deletions."""
        await self.deletions.close()
        for tracker in self._trackers.values():
            await tracker.transport.close()
        await self.drain()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.info("NetworkCoordinator closed")

    async def drain(self) -> None:
        """Wait until every queued transport event has been handled."""
        if self._dispatcher is not None and not self._dispatcher.done():
            await self._events.join()

    async def _dispatch(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Failed to handle {event.kind.value} event for transfer "
                    f"{event.handle} on {event.session_id}: {e}",
                    exc_info=True,
                )
            finally:
                self._events.task_done()

    async def handle_event(self, event: TransferEvent) -> None:
        """Route one transport event to the tracker of its session."""
        tracker = self._trackers.get(event.session_id)
        if tracker is None:
            logger.warning("Event for unknown session %s", event.session_id)
            return

        if event.kind == TransferEventKind.SESSION_FINISHED:
            self._on_session_finished(tracker)
            return

        if event.handle is None:
            logger.warning("%s event without a handle", event.kind.value)
            return

        if event.kind == TransferEventKind.BYTES_SENT:
            assert isinstance(event.payload, TransferProgress)
            self._on_bytes_sent(tracker, event.handle, event.payload)
        elif event.kind == TransferEventKind.DATA_RECEIVED:
            assert isinstance(event.payload, TransferResponse)
            await self._on_data_received(tracker, event.handle, event.payload)
        elif event.kind == TransferEventKind.COMPLETED:
            completion = event.payload or TransferCompletion()
            assert isinstance(completion, TransferCompletion)
            await self._on_completed(tracker, event.handle, completion)

    def _on_bytes_sent(
        self,
        tracker: TransferSessionTracker,
        handle: int,
        progress: TransferProgress,
    ) -> None:
        record = tracker.resolve(handle)
        if record is None:
            return
        tracker.mark(handle, TransferState.AWAITING_RESPONSE)
        self._progress.log(
            record.describe(),
            progress.total_bytes_sent,
            progress.total_bytes_expected,
        )

    async def _on_data_received(
        self,
        tracker: TransferSessionTracker,
        handle: int,
        response: TransferResponse,
    ) -> None:
        record = self._cancelled.get((tracker.session_id, handle))
        if record is None:
            record = tracker.resolve(handle)
            if record is None:
                return
            tracker.mark(handle, TransferState.AWAITING_RESPONSE)

        if not response.ok:
            logger.warning(
                "Unexpected status code %d uploading %s: %r",
                response.status,
                record.describe(),
                response.body[:200],
            )
            self._failures[(tracker.session_id, handle)] = (
                f"Unexpected status code {response.status}"
            )
            return

        try:
            remote_id = await record.on_upload_response_received(
                response.body, self.context
            )
        except UploadResponseError as e:
            remote_id = await self._apply_fallback(record, response, e)
            if remote_id is None:
                self._failures[(tracker.session_id, handle)] = str(e)
                return

        logger.info("Uploaded %s as remote %d", record.describe(), remote_id)
        self._emitter.emit(
            Emitter.UPLOAD_COMPLETE, record.kind, record.local_id, remote_id
        )

    async def _apply_fallback(
        self,
        record: Uploadable,
        response: TransferResponse,
        error: UploadResponseError,
    ) -> int | None:
        """Retry the response with a body rebuilt from the headers, once."""
        fallback = record.fallback_response(response.headers)
        if fallback is not None:
            try:
                return await record.on_upload_response_received(
                    fallback, self.context
                )
            except UploadResponseError as fallback_error:
                error = fallback_error

        logger.error(
            "Could not decode upload response for %s (%s). The upload may have "
            "succeeded on the server and needs manual reconciliation; it will "
            "not be uploaded again automatically",
            record.describe(),
            error,
        )
        await self._park_unconfirmed(record)
        return None

    async def _on_completed(
        self,
        tracker: TransferSessionTracker,
        handle: int,
        completion: TransferCompletion,
    ) -> None:
        key = (tracker.session_id, handle)
        failure = self._failures.pop(key, None)
        if self._cancelled.pop(key, None) is not None:
            logger.debug("Cancelled transfer %d on %s ended", handle, key[0])
            return

        if completion.error is not None:
            logger.warning(
                "Transfer %d on %s failed: %s",
                handle,
                tracker.session_id,
                completion.error,
            )

        record = tracker.resolve(handle)
        if record is None:
            return
        succeeded = completion.error is None and record.remote_id is not None
        await tracker.release(
            handle, TransferState.COMPLETED if succeeded else TransferState.FAILED
        )
        self._progress.forget(record.describe())

        if record.remote_id is None:
            message = completion.error or failure or "No response received"
            self._emitter.emit(
                Emitter.UPLOAD_FAILED, record.kind, record.local_id, message
            )

    def _on_session_finished(self, tracker: TransferSessionTracker) -> None:
        logger.info("All events delivered for session %s", tracker.session_id)
        handler = self.completion_handler
        self.completion_handler = None
        if handler is not None:
            handler()

    async def submit(self, record: Uploadable) -> int | None:
        """Upload ``record`` on the session matching its body type.

        Args:
            record: A stored record.

        Returns:
            The transfer handle, or None if nothing was submitted.
        """
        credential = self._credential
        if credential is None:
            logger.debug("No credential, not uploading %s", record.describe())
            return None
        if self.is_unconfirmed(record):
            logger.debug(
                "Not uploading %s, its previous upload is unconfirmed",
                record.describe(),
            )
            return None

        tracker = self.background if record.background_transfer else self.foreground
        return await tracker.submit(record, credential)

    async def cancel(self, record: Uploadable) -> bool:
        """Cancel the in-flight upload of ``record``.

        The mapping is released before the transport is told to cancel, so
        the late completion event finds nothing to resolve. A response that
        already arrived for the transfer is still applied to the record.

        Returns:
            True if a transfer was cancelled.
        """
        return await self._cancel(record) is not None

    async def _cancel(self, record: Uploadable) -> Uploadable | None:
        """Cancel the transfer of ``record`` and return the tracked copy."""
        for tracker in self._trackers.values():
            handle = tracker.handle_for(record)
            if handle is None:
                continue
            tracked = tracker.resolve(handle) or record
            self._cancelled[(tracker.session_id, handle)] = tracked
            await tracker.release(handle, TransferState.CANCELLED)
            tracker.transport.cancel(handle)
            return tracked
        return None

    async def delete_record(self, record: Uploadable) -> None:
        """Delete a record locally and queue its server copy for deletion.

        Records depending on ``record`` are deleted with it. A remote ID saved
        by a response that raced the deletion is picked up from the store or
        from the cancelled transfer's record; a response handled after the row
        is gone queues the orphan itself.
        """
        for child in await self._store.find_children(record):
            await self.delete_record(child)

        tracked = await self._cancel(record)
        stored = None
        if record.local_id is not None:
            stored = await self._store.get(record.kind, record.local_id)
        await self._store.delete(record)
        if record.local_id is not None and record.key in self._unconfirmed:
            self._unconfirmed.discard(record.key)
            await self._save_unconfirmed()

        uploaded = next(
            (
                candidate
                for candidate in (record, stored, tracked)
                if candidate is not None and candidate.remote_id is not None
            ),
            record,
        )
        await uploaded.request_remote_deletion(self.context)
        logger.info("Deleted %s", record.describe())

    async def replace_video_file(self, video: Video, file_path: Path) -> Video:
        """Replace a video with a new recording of the same thing.

        The old video is deleted as by ``delete_record`` and a new, unuploaded
        video is stored in its place.

        Returns:
            The newly stored video.
        """
        if video.local_id is None:
            raise RecordNotStoredError("Cannot re-record an unstored video")
        replacement = video.rerecorded(Path(file_path))
        await self.delete_record(video)
        await self._store.save(replacement)
        return replacement

    async def upload_device_token(self, token: bytes) -> bool:
        """Deliver a push-notification device token to the server.

        Returns:
            True if the server accepted the token.
        """
        credential = self._credential
        if credential is None:
            logger.debug("No credential, not uploading device token")
            return False

        body = DeviceTokenRequest(registration_id=format_device_token(token))
        try:
            async with self._client_session.post(
                self._endpoints.apns,
                data=body.model_dump_json(),
                headers={
                    "Authorization": credential,
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            ) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Could not upload device token: %s", e)
            return False

        if status not in DEVICE_TOKEN_SUCCESS_CODES:
            logger.warning(
                "Device token upload returned status %d: %s", status, text[:200]
            )
            return False
        logger.info("Device token uploaded")
        return True

    async def _park_unconfirmed(self, record: Uploadable) -> None:
        if record.local_id is None:
            return
        # A cancelled upload of a deleted record has nothing left to park
        if await self._store.get(record.kind, record.local_id) is None:
            return
        self._unconfirmed.add(record.key)
        await self._save_unconfirmed()

    async def _load_unconfirmed(self) -> None:
        pairs = await self._store.get_value(UNCONFIRMED_UPLOADS_KEY) or []
        for pair in pairs:
            try:
                kind_value, local_id = pair
                self._unconfirmed.add((RecordKind(kind_value), int(local_id)))
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed unconfirmed upload %r", pair)

    async def _save_unconfirmed(self) -> None:
        await self._store.set_value(
            UNCONFIRMED_UPLOADS_KEY,
            sorted([kind.value, local_id] for kind, local_id in self._unconfirmed),
        )
