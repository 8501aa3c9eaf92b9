"""Uploader bootstrap and lifecycle management.

Everything runs on a single asyncio event loop. The emitter must be
initialised on that loop before ``UploaderBootstrap.start`` is called.

INITIALIZATION SEQUENCE
=======================

    UploaderBootstrap.start()
         │
         ├─[1] aiohttp.ClientSession (shared by all HTTP users)
         │
         ├─[2] SqliteRecordStore + init_async_store()
         │
         ├─[3] Transports (foreground + background) on one event queue
         │
         ├─[4] NetworkCoordinator
         │     ├── credential loaded from the stored participant
         │     └── start(): deletions, unconfirmed uploads, background
         │         mapping restored and reconciled, dispatcher started
         │
         ├─[5] UploadTrigger (RECORDS_CHANGED, IS_CONNECTED,
         │     CREDENTIAL_CHANGED) + initial sweep
         │
         ├─[6] ConnectionManager + start() (emits IS_CONNECTED)
         │
         └─[7] Return UploaderContext
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import aiohttp

from orbit_uploader.config_manager.uploader_config import UploaderConfig
from orbit_uploader.connection_management.connection_manager import (
    ConnectionManager,
)
from orbit_uploader.const import FOREGROUND_SESSION_ID
from orbit_uploader.helpers import get_uploader_db_path, get_uploader_tmp_path
from orbit_uploader.models import TransferEvent
from orbit_uploader.state_management.record_store_sqlite import SqliteRecordStore
from orbit_uploader.upload_management.network_coordinator import (
    NetworkCoordinator,
)
from orbit_uploader.upload_management.server_status import ServerStatusPoller
from orbit_uploader.upload_management.transport import AiohttpTransport
from orbit_uploader.upload_management.upload_trigger import UploadTrigger

logger = logging.getLogger(__name__)


@dataclass
class UploaderContext:
    """Complete uploader context with all initialized components."""

    config: UploaderConfig
    client_session: aiohttp.ClientSession
    store: SqliteRecordStore
    coordinator: NetworkCoordinator
    trigger: UploadTrigger
    connection_manager: ConnectionManager
    status_poller: ServerStatusPoller


def resolve_db_path(config: UploaderConfig) -> Path:
    """Return the database path from config, falling back to the default."""
    return Path(config.db_path) if config.db_path else get_uploader_db_path()


def resolve_tmp_path(config: UploaderConfig) -> Path:
    """Return the staging directory from config, falling back to the default."""
    return Path(config.tmp_path) if config.tmp_path else get_uploader_tmp_path()


async def bootstrap_uploader(config: UploaderConfig) -> UploaderContext:
    """Initialize the uploader services on the running loop.

    Args:
        config: Resolved uploader configuration.

    Returns:
        UploaderContext with all initialized services.
    """
    logger.info("Bootstrapping uploader...")
    endpoints = config.endpoints()

    # 1. HTTP client
    client_session = aiohttp.ClientSession()

    # 2. Record store - MUST call init_async_store() before any other operation
    db_path = resolve_db_path(config)
    store = SqliteRecordStore(db_path)
    await store.init_async_store()
    logger.info("SqliteRecordStore initialized at %s", db_path)

    tmp_path = resolve_tmp_path(config)
    tmp_path.mkdir(parents=True, exist_ok=True)

    # 3. Transports report to the coordinator through one queue
    events: asyncio.Queue[TransferEvent] = asyncio.Queue()
    foreground = AiohttpTransport(
        FOREGROUND_SESSION_ID,
        client_session,
        events,
        timeout=config.request_timeout_seconds,
    )
    background = AiohttpTransport(
        config.background_session_id,
        client_session,
        events,
        background=True,
        timeout=config.request_timeout_seconds,
    )

    # 4. Coordinator
    coordinator = NetworkCoordinator(
        store,
        client_session,
        foreground,
        background,
        events,
        endpoints=endpoints,
        tmp_path=tmp_path,
        timeout=config.request_timeout_seconds,
    )
    participant = await store.get_participant()
    coordinator.credential = participant.auth_credential if participant else None
    await coordinator.start()

    # 5. Trigger - subscribes before connectivity events start flowing
    trigger = UploadTrigger(
        store, coordinator, cooldown_seconds=config.retry_cooldown_seconds
    )
    trigger.start()
    if coordinator.credential is None:
        logger.warning("No participant credential stored, uploads are suspended")
    else:
        trigger.schedule_sweep_all()
        coordinator.deletions.trigger()

    # 6. Connectivity
    connection_manager = ConnectionManager(
        client_session,
        api_url=config.api_url,
        timeout=config.connectivity_timeout_seconds,
        check_interval=config.connectivity_check_interval_seconds,
        offline=config.offline,
    )
    await connection_manager.start()

    status_poller = ServerStatusPoller(
        store,
        client_session,
        lambda: coordinator.credential,
        endpoints=endpoints,
        timeout=config.request_timeout_seconds,
    )

    logger.info("Uploader bootstrap complete")
    return UploaderContext(
        config=config,
        client_session=client_session,
        store=store,
        coordinator=coordinator,
        trigger=trigger,
        connection_manager=connection_manager,
        status_poller=status_poller,
    )


async def shutdown_uploader(context: UploaderContext) -> None:
    """Shut down services in reverse order of initialization.

    Args:
        context: Context returned by ``bootstrap_uploader``.
    """
    logger.info("Shutting down uploader...")

    try:
        await context.connection_manager.stop()
    except Exception:
        logger.exception("Error stopping ConnectionManager")

    try:
        await context.trigger.stop()
    except Exception:
        logger.exception("Error stopping UploadTrigger")

    try:
        await context.coordinator.close()
    except Exception:
        logger.exception("Error closing NetworkCoordinator")

    # Dispose the engine to prevent aiosqlite thread errors
    try:
        await context.store.close()
    except Exception:
        logger.exception("Error closing SqliteRecordStore")

    try:
        await context.client_session.close()
    except Exception:
        logger.exception("Error closing aiohttp session")

    logger.info("Uploader shutdown complete")


class UploaderBootstrap:
    """Coordinates uploader initialization and shutdown.

    Usage:
        bootstrap = UploaderBootstrap(config)
        context = await bootstrap.start()
        try:
            ...
        finally:
            await bootstrap.stop()
    """

    def __init__(self, config: UploaderConfig) -> None:
        """Initialize bootstrap.

        Args:
            config: Resolved uploader configuration.
        """
        self._config = config
        self._context: UploaderContext | None = None

    @property
    def context(self) -> UploaderContext | None:
        """The running context, if started."""
        return self._context

    async def start(self) -> UploaderContext:
        """Start all uploader services."""
        if self._context is None:
            self._context = await bootstrap_uploader(self._config)
        return self._context

    async def stop(self) -> None:
        """Stop all uploader services."""
        if self._context is None:
            return
        context, self._context = self._context, None
        await shutdown_uploader(context)
