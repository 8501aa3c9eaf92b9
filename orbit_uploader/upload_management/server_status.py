"""One-shot polls of server-side state: video validation and study dates."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import aiohttp
from pydantic import ValidationError

from orbit_uploader.const import REQUEST_TIMEOUT_SECONDS
from orbit_uploader.models import (
    ApiEndpoints,
    ParticipantAPIResponse,
    RecordKind,
    VideoAPIPage,
)
from orbit_uploader.records.video import Video
from orbit_uploader.state_management.record_store import RecordStore

logger = logging.getLogger(__name__)


class ServerStatusPoller:
    """Copies server-side status into local records.

    Each poll is a single attempt; failures are logged and the poll returns.
    """

    def __init__(
        self,
        store: RecordStore,
        client_session: aiohttp.ClientSession,
        credential_provider: Callable[[], str | None],
        *,
        endpoints: ApiEndpoints | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialise the poller.

        Args:
            store: Record store to update.
            client_session: Shared aiohttp session.
            credential_provider: Returns the active credential, or None.
            endpoints: Server endpoints.
            timeout: Total timeout of each request, in seconds.
        """
        self._store = store
        self._client_session = client_session
        self._credential_provider = credential_provider
        self._endpoints = endpoints or ApiEndpoints()
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _get(self, url: str, credential: str) -> bytes | None:
        try:
            async with self._client_session.get(
                url,
                headers={"Authorization": credential},
                timeout=self._timeout,
            ) as response:
                body = await response.read()
                if response.status != 200:
                    logger.warning(
                        "GET %s returned status %d: %r",
                        url,
                        response.status,
                        body[:200],
                    )
                    return None
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("GET %s failed: %s", url, e)
            return None

    async def update_video_statuses(self) -> int:
        """Store the server validation status of every uploaded video.

        Follows the listing's ``next`` links until the last page.

        Returns:
            The number of videos whose status changed.
        """
        credential = self._credential_provider()
        if credential is None:
            logger.debug("No credential, skipping video status update")
            return 0

        updated = 0
        url: str | None = self._endpoints.video
        while url is not None:
            body = await self._get(url, credential)
            if body is None:
                break
            try:
                page = VideoAPIPage.model_validate_json(body)
            except ValidationError as e:
                logger.error("Could not parse video listing from %s: %s", url, e)
                break

            for item in page.results:
                video = await self._store.find_by_remote_id(RecordKind.VIDEO, item.id)
                if not isinstance(video, Video):
                    logger.warning("Server video %d is not stored locally", item.id)
                    continue
                if video.verified == item.validation:
                    continue
                video.verified = item.validation
                await self._store.save(video)
                updated += 1
            url = page.next

        logger.info("Updated validation status of %d videos", updated)
        return updated

    async def update_participant_status(self) -> bool:
        """Store the participant's study dates if the server reports new ones.

        Returns:
            True if the participant was updated.
        """
        credential = self._credential_provider()
        if credential is None:
            logger.debug("No credential, skipping participant status update")
            return False
        participant = await self._store.get_participant()
        if participant is None:
            return False

        body = await self._get(self._endpoints.participant, credential)
        if body is None:
            return False
        try:
            status = ParticipantAPIResponse.model_validate_json(body)
        except ValidationError as e:
            logger.error("Could not parse participant status: %s", e)
            return False

        if (participant.study_start, participant.study_end) == (
            status.study_start,
            status.study_end,
        ):
            return False
        participant.study_start = status.study_start
        participant.study_end = status.study_end
        await self._store.save_participant(participant)
        logger.info(
            "Study period updated: %s to %s", status.study_start, status.study_end
        )
        return True
