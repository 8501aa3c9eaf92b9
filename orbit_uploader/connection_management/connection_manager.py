"""Connection manager for network monitoring.

Periodically probes the ORBIT API and emits IS_CONNECTED whenever the
connection state changes, which lets the upload trigger retry pending work.
"""

import asyncio
import logging

import aiohttp

from orbit_uploader.const import (
    API_URL,
    CONNECTIVITY_CHECK_INTERVAL_SECONDS,
    CONNECTIVITY_TIMEOUT_SECONDS,
)
from orbit_uploader.event_emitter import Emitter, get_emitter

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Runs connectivity checks and emits connection state changes.

    In offline mode no check is made and the manager always reports
    disconnected.
    """

    def __init__(
        self,
        client_session: aiohttp.ClientSession,
        api_url: str = API_URL,
        timeout: float = CONNECTIVITY_TIMEOUT_SECONDS,
        check_interval: float = CONNECTIVITY_CHECK_INTERVAL_SECONDS,
        offline: bool = False,
    ) -> None:
        """Initialize the connection manager.

        Args:
            client_session: aiohttp ClientSession for making requests
            api_url: URL probed with HEAD requests
            timeout: Timeout in seconds for connectivity checks
            check_interval: Seconds between connectivity checks
            offline: Never report a connection
        """
        self.client_session = client_session
        self._api_url = api_url
        self._timeout = timeout
        self._check_interval = check_interval
        self._offline = offline
        self._is_connected = False
        self._connection_task: asyncio.Task | None = None
        self._emitter = get_emitter()

    async def start(self) -> None:
        """Start the connectivity check loop."""
        if self._offline:
            logger.info("ConnectionManager in offline mode, not checking")
            return
        self._connection_task = asyncio.create_task(self._check_loop())
        logger.info("ConnectionManager started")

    async def stop(self) -> None:
        """Stop the connectivity check loop."""
        if self._connection_task:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
            self._connection_task = None
        logger.info("ConnectionManager stopped")

    async def _check_loop(self) -> None:
        while True:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in connectivity check loop: {e}", exc_info=True)
            await asyncio.sleep(self._check_interval)

    async def check_once(self) -> bool:
        """Probe the API once and emit IS_CONNECTED if the state changed.

        Returns:
            The current connection state.
        """
        is_connected = False if self._offline else await self._check_connectivity()
        if is_connected != self._is_connected:
            self._is_connected = is_connected
            self._emitter.emit(Emitter.IS_CONNECTED, is_connected)
            logger.info(f"{'Connected' if is_connected else 'Disconnected'}")
        return is_connected

    async def _check_connectivity(self) -> bool:
        """Make a HEAD request to the API URL.

        Returns:
            True if the server answered with a non-5xx status.
        """
        try:
            async with self.client_session.head(
                self._api_url,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    def is_connected(self) -> bool:
        """Return the last observed connection state."""
        return self._is_connected
