"""Transports that run transfers and report their lifecycle as events.

A transport creates a transfer for each submitted request, identifies it by an
integer handle, and reports progress, response data and completion as
``TransferEvent`` messages on a shared queue. It keeps no knowledge of which
record a transfer belongs to.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol

import aiohttp

from orbit_uploader.const import REQUEST_TIMEOUT_SECONDS
from orbit_uploader.models import (
    TransferCompletion,
    TransferEvent,
    TransferEventKind,
    TransferProgress,
    TransferRequest,
    TransferResponse,
)

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


class Transport(Protocol):
    """Interface of a transfer session."""

    session_id: str
    background: bool

    def submit(self, request: TransferRequest) -> int:
        """Start a transfer and return its handle without waiting for it."""
        ...

    def cancel(self, handle: int) -> None:
        """Cancel an in-flight transfer; its completion is still reported."""
        ...

    def live_handles(self) -> set[int]:
        """Return handles of transfers that have not completed."""
        ...

    async def close(self) -> None:
        """Cancel outstanding transfers and release resources."""
        ...


class AiohttpTransport(Transport):
    """Transport backed by a shared aiohttp ClientSession.

    A background transport is discretionary: it runs one transfer at a time,
    and reports SESSION_FINISHED whenever its last outstanding transfer has
    delivered all of its events.
    """

    def __init__(
        self,
        session_id: str,
        client_session: aiohttp.ClientSession,
        events: asyncio.Queue[TransferEvent],
        *,
        background: bool = False,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        first_handle: int = 1,
    ) -> None:
        """Initialise the transport.

        Args:
            session_id: Identifier attached to every event this transport emits.
            client_session: Shared aiohttp session for HTTP requests.
            events: Queue receiving lifecycle events.
            background: Whether this is the background-capable session.
            timeout: Total timeout for each transfer, in seconds.
            first_handle: First handle to assign.
        """
        self.session_id = session_id
        self.background = background
        self._client_session = client_session
        self._events = events
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._next_handle = first_handle
        self._tasks: dict[int, asyncio.Task] = {}
        # Requests whose completion has not been reported yet
        self._unreported: dict[int, TransferRequest] = {}
        self._slots = asyncio.Semaphore(1) if background else None

    def _emit(self, event: TransferEvent) -> None:
        self._events.put_nowait(event)

    def submit(self, request: TransferRequest) -> int:
        """Start a transfer for ``request``.

        Args:
            request: The request to send.

        Returns:
            The handle identifying the transfer in later events.
        """
        handle = self._next_handle
        self._next_handle += 1

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run(handle, request))
        self._tasks[handle] = task
        self._unreported[handle] = request
        task.add_done_callback(lambda _task: self._on_task_done(handle))
        logger.debug(
            "Session %s started transfer %d: %s %s",
            self.session_id,
            handle,
            request.method,
            request.url,
        )
        return handle

    def cancel(self, handle: int) -> None:
        """Cancel an in-flight transfer if it is still running."""
        task = self._tasks.get(handle)
        if task is None:
            logger.debug("No live transfer %d to cancel", handle)
            return
        task.cancel()

    def live_handles(self) -> set[int]:
        """Return handles of transfers that have not completed."""
        return set(self._tasks)

    async def close(self) -> None:
        """Cancel outstanding transfers and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_task_done(self, handle: int) -> None:
        self._tasks.pop(handle, None)
        # A task cancelled before its first step never enters _run
        self._report_completion(handle, "cancelled")
        if self.background and not self._tasks:
            self._emit(
                TransferEvent(
                    self.session_id, None, TransferEventKind.SESSION_FINISHED
                )
            )

    async def _run(self, handle: int, request: TransferRequest) -> None:
        error: str | None = None
        try:
            if self._slots is not None:
                async with self._slots:
                    await self._send(handle, request)
            else:
                await self._send(handle, request)
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            error = str(e) or type(e).__name__
            logger.warning(
                "Transfer %d on %s failed: %s", handle, self.session_id, error
            )
        finally:
            self._report_completion(handle, error)

    def _report_completion(self, handle: int, error: str | None) -> None:
        """Remove the staged body and emit COMPLETED, once per transfer."""
        request = self._unreported.pop(handle, None)
        if request is None:
            return
        if request.cleanup_body_file and request.body_file is not None:
            request.body_file.unlink(missing_ok=True)
        self._emit(
            TransferEvent(
                self.session_id,
                handle,
                TransferEventKind.COMPLETED,
                TransferCompletion(error=error),
            )
        )

    async def _send(self, handle: int, request: TransferRequest) -> None:
        headers = dict(request.headers)
        data: bytes | AsyncIterator[bytes] | None = request.body
        if request.body_file is not None:
            total = request.body_file.stat().st_size
            headers["Content-Length"] = str(total)
            data = self._stream_file(handle, request.body_file, total)

        async with self._client_session.request(
            request.method,
            request.url,
            headers=headers,
            data=data,
            timeout=self._timeout,
        ) as response:
            if request.body is not None:
                size = len(request.body)
                self._emit(
                    TransferEvent(
                        self.session_id,
                        handle,
                        TransferEventKind.BYTES_SENT,
                        TransferProgress(size, size, size),
                    )
                )
            body = await response.read()
            self._emit(
                TransferEvent(
                    self.session_id,
                    handle,
                    TransferEventKind.DATA_RECEIVED,
                    TransferResponse(
                        status=response.status,
                        headers={k.lower(): v for k, v in response.headers.items()},
                        body=body,
                    ),
                )
            )

    async def _stream_file(
        self, handle: int, path: Path, total: int
    ) -> AsyncIterator[bytes]:
        sent = 0
        with path.open("rb") as source:
            while True:
                chunk = source.read(STREAM_CHUNK_SIZE)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
                self._emit(
                    TransferEvent(
                        self.session_id,
                        handle,
                        TransferEventKind.BYTES_SENT,
                        TransferProgress(len(chunk), sent, total),
                    )
                )
