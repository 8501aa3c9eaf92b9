"""Starts uploads in response to store changes, connectivity and credentials."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from orbit_uploader.const import RETRY_COOLDOWN_SECONDS
from orbit_uploader.event_emitter import Emitter, get_emitter
from orbit_uploader.models import RecordKind
from orbit_uploader.records import RECORD_TYPES
from orbit_uploader.state_management.record_store import RecordStore

from .network_coordinator import NetworkCoordinator
from .serial_queue import SerialQueue

logger = logging.getLogger(__name__)


class UploadTrigger:
    """Sweeps not-yet-uploaded records into the network coordinator.

    Sweeps run one at a time on a serial queue; event handlers only enqueue
    them. Connectivity-triggered sweeps are rate limited by a flat cool-down,
    while store and credential changes always sweep.
    """

    def __init__(
        self,
        store: RecordStore,
        coordinator: NetworkCoordinator,
        *,
        cooldown_seconds: float = RETRY_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the trigger; call ``start`` to begin listening.

        Args:
            store: Record store to find pending records in.
            coordinator: Coordinator records are submitted to.
            cooldown_seconds: Minimum time between connectivity sweeps.
            clock: Monotonic clock in seconds.
        """
        self._store = store
        self._coordinator = coordinator
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._backoff_until = float("-inf")
        self._queue = SerialQueue("upload-trigger")
        self._emitter = get_emitter()
        self._listening = False

    @property
    def backoff_until(self) -> float:
        """Earliest clock value at which connectivity may trigger a sweep."""
        return self._backoff_until

    def start(self) -> None:
        """Start the sweep worker and subscribe to events."""
        self._queue.start()
        if not self._listening:
            self._emitter.on(Emitter.RECORDS_CHANGED, self._on_records_changed)
            self._emitter.on(Emitter.IS_CONNECTED, self._on_is_connected)
            self._emitter.on(Emitter.CREDENTIAL_CHANGED, self._on_credential_changed)
            self._listening = True
        logger.info("UploadTrigger started")

    async def stop(self) -> None:
        """Unsubscribe and stop the sweep worker."""
        if self._listening:
            self._emitter.remove_listener(
                Emitter.RECORDS_CHANGED, self._on_records_changed
            )
            self._emitter.remove_listener(Emitter.IS_CONNECTED, self._on_is_connected)
            self._emitter.remove_listener(
                Emitter.CREDENTIAL_CHANGED, self._on_credential_changed
            )
            self._listening = False
        await self._queue.stop()
        logger.info("UploadTrigger stopped")

    async def join(self) -> None:
        """Wait until every queued sweep has run."""
        await self._queue.join()

    def _on_records_changed(self, kind: RecordKind) -> None:
        kinds = [kind]
        kinds.extend(
            dependent
            for dependent, record_type in RECORD_TYPES.items()
            if record_type.depends_on == kind
        )
        for swept in kinds:
            self.schedule_sweep(swept)

    def _on_is_connected(self, is_connected: bool) -> None:
        if not is_connected:
            return
        now = self._clock()
        if now < self._backoff_until:
            logger.debug(
                "Connected, next retry sweep in %.0f s", self._backoff_until - now
            )
            return
        self._backoff_until = max(self._backoff_until, now + self._cooldown)
        logger.info("Connected, retrying pending uploads and deletions")
        self.schedule_sweep_all()
        self._coordinator.deletions.trigger()

    def _on_credential_changed(self, credential: str | None) -> None:
        self._coordinator.credential = credential
        if credential is None:
            logger.info("Credential cleared, uploads suspended")
            return
        self.schedule_sweep_all()
        self._coordinator.deletions.trigger()

    def schedule_sweep(self, kind: RecordKind) -> None:
        """Queue a sweep of ``kind`` without waiting for it."""
        self._queue.submit(lambda: self.sweep(kind))

    def schedule_sweep_all(self) -> None:
        """Queue a sweep of every kind, parents first."""
        for kind in RECORD_TYPES:
            self.schedule_sweep(kind)

    async def sweep(self, kind: RecordKind) -> int:
        """Submit every not-yet-uploaded record of ``kind``.

        Records already in flight are rejected by their tracker, so repeated
        sweeps never start a second transfer for the same record.

        Returns:
            The number of transfers started.
        """
        if self._coordinator.credential is None:
            logger.debug("No credential, skipping %s sweep", kind.value)
            return 0

        started = 0
        for record in await self._store.find_not_uploaded(kind):
            if await self._coordinator.submit(record) is not None:
                started += 1
        if started:
            logger.info("Started %d %s uploads", started, kind.value)
        return started
