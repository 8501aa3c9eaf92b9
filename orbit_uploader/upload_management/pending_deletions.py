"""Persistent set of server records that still have to be deleted."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable

import aiohttp

from orbit_uploader.const import (
    DELETE_SUCCESS_CODES,
    DELETE_URLS_KEY,
    REQUEST_TIMEOUT_SECONDS,
)
from orbit_uploader.event_emitter import Emitter, get_emitter
from orbit_uploader.state_management.record_store import RecordStore

logger = logging.getLogger(__name__)


class PendingDeletions:
    """Remote locators awaiting a successful DELETE.

    One deletion is attempted at a time. A locator leaves the set only when
    the server answers 204 or 404; anything else keeps it for a later attempt.
    Each success immediately schedules the next attempt, so the set drains
    while the server is reachable.
    """

    def __init__(
        self,
        store: RecordStore,
        client_session: aiohttp.ClientSession,
        credential_provider: Callable[[], str | None],
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        choose: Callable[[list[str]], str] = random.choice,
    ) -> None:
        """Initialise an empty set; call ``load`` to read the persisted one.

        Args:
            store: Key-value store persisting the set.
            client_session: Shared aiohttp session.
            credential_provider: Returns the active credential, or None.
            timeout: Total timeout of each DELETE request, in seconds.
            choose: Picks the locator to attempt next.
        """
        self._store = store
        self._client_session = client_session
        self._credential_provider = credential_provider
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._choose = choose
        self._urls: set[str] = set()
        self._task: asyncio.Task | None = None
        self._rerun = False
        self._emitter = get_emitter()

    @property
    def pending(self) -> set[str]:
        """Locators still awaiting deletion."""
        return set(self._urls)

    def __len__(self) -> int:
        return len(self._urls)

    async def load(self) -> None:
        """Read the persisted set from the store."""
        urls = await self._store.get_value(DELETE_URLS_KEY) or []
        self._urls.update(str(url) for url in urls)
        if self._urls:
            logger.info("Loaded %d pending remote deletions", len(self._urls))

    async def add(self, url: str) -> None:
        """Queue ``url`` for deletion, persist the set and attempt a deletion."""
        self._urls.add(url)
        await self._save()
        self.trigger()

    def trigger(self) -> None:
        """Schedule one deletion attempt without waiting for it."""
        if not self._urls:
            return
        if self._task is not None and not self._task.done():
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait_idle(self) -> None:
        """Wait until no deletion attempt is running or scheduled."""
        while self._task is not None and not self._task.done():
            await asyncio.gather(self._task, return_exceptions=True)

    async def close(self) -> None:
        """Cancel a running deletion attempt."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            self._rerun = False
            try:
                deleted = await self.process_one()
            except Exception as e:
                logger.error(f"Remote deletion attempt failed: {e}", exc_info=True)
                deleted = False
            if not (deleted or self._rerun) or not self._urls:
                return

    async def process_one(self) -> bool:
        """Attempt to delete one randomly chosen locator.

        Returns:
            True if a locator was removed from the set.
        """
        if not self._urls:
            return False
        credential = self._credential_provider()
        if credential is None:
            logger.debug("No credential, postponing remote deletions")
            return False

        url = self._choose(sorted(self._urls))
        try:
            async with self._client_session.delete(
                url,
                headers={"Authorization": credential},
                timeout=self._timeout,
            ) as response:
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Could not delete %s: %s", url, e)
            return False

        if status not in DELETE_SUCCESS_CODES:
            logger.warning("Deleting %s returned status %d, will retry", url, status)
            return False

        self._urls.discard(url)
        await self._save()
        logger.info("Deleted %s (status %d)", url, status)
        self._emitter.emit(Emitter.DELETION_COMPLETE, url)
        return True

    async def _save(self) -> None:
        await self._store.set_value(DELETE_URLS_KEY, sorted(self._urls))
