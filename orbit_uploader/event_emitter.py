"""Shared event emitter for cross-component signaling."""

import asyncio
import logging
from typing import Any

from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)


class Emitter(AsyncIOEventEmitter):
    """Shared event emitter for cross-component signaling."""

    # Record store -> Upload trigger
    RECORDS_CHANGED = "RECORDS_CHANGED"
    # (kind: RecordKind)

    # Record store -> Upload trigger
    CREDENTIAL_CHANGED = "CREDENTIAL_CHANGED"
    # (credential: str | None)

    # Connection manager -> Upload trigger
    IS_CONNECTED = "IS_CONNECTED"
    # (is_connected: bool)

    # Network coordinator -> observers
    UPLOAD_COMPLETE = "UPLOAD_COMPLETE"
    # (kind: RecordKind, local_id: int, remote_id: int)

    # Network coordinator -> observers
    UPLOAD_FAILED = "UPLOAD_FAILED"
    # (kind: RecordKind, local_id: int, error_message: str)

    # Pending deletions -> observers
    DELETION_COMPLETE = "DELETION_COMPLETE"
    # (url: str)

    def __init__(self, *, loop: asyncio.AbstractEventLoop) -> None:
        """Initialize the event emitter.

        Args:
            loop: The event loop to use for async event handlers.
        """
        super().__init__(loop=loop)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> bool:
        """Emit an event with logging.

        Args:
            event: The event name to emit.
            *args: Positional arguments to pass to handlers.
            **kwargs: Keyword arguments to pass to handlers.

        Returns:
            True if the event had listeners, False otherwise.
        """
        if event == self.CREDENTIAL_CHANGED:
            # Never log the credential itself
            formatted_args = [
                "<set>" if arg is not None else "<cleared>" for arg in args
            ]
        else:
            formatted_args = [
                f"{arg[:80]}..." if isinstance(arg, str) and len(arg) > 80 else str(arg)
                for arg in args
            ]
        logger.info("EVENT %s: %s", event, ", ".join(formatted_args))
        return super().emit(event, *args, **kwargs)


_emitter: Emitter | None = None


def init_emitter(*, loop: asyncio.AbstractEventLoop) -> Emitter:
    """Initialize the global emitter once the event loop is running.

    Args:
        loop: The event loop to use for async event handlers.

    """
    global _emitter
    if _emitter is not None:
        raise RuntimeError("Emitter already initialized")
    _emitter = Emitter(loop=loop)
    return _emitter


def get_emitter() -> Emitter:
    """Return the initialized emitter."""
    if _emitter is None:
        raise RuntimeError("Emitter not initialized.")
    return _emitter


def reset_emitter() -> None:
    """Drop the global emitter so a new loop can initialize one."""
    global _emitter
    if _emitter is not None:
        _emitter.remove_all_listeners()
    _emitter = None
