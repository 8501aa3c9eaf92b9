"""Shared fixtures for uploader tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
import pytest_asyncio

import orbit_uploader.event_emitter as em_module
from orbit_uploader.event_emitter import init_emitter
from orbit_uploader.models import (
    TransferCompletion,
    TransferEvent,
    TransferEventKind,
    TransferProgress,
    TransferRequest,
    TransferResponse,
)
from orbit_uploader.state_management.record_store_sqlite import SqliteRecordStore


@pytest_asyncio.fixture(scope="function", autouse=True)
async def initialize_emitter():
    """Initialize the emitter for each test with the current event loop."""
    loop = asyncio.get_running_loop()

    em_module._emitter = None

    emitter = init_emitter(loop=loop)

    yield emitter

    emitter.remove_all_listeners()

    em_module._emitter = None


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    """A fresh SQLite record store."""
    record_store = SqliteRecordStore(tmp_path / "state.db")
    await record_store.init_async_store()
    try:
        yield record_store
    finally:
        await record_store.close()


class FakeTransport:
    """Transport that records requests and lets tests script the responses."""

    def __init__(
        self,
        session_id: str,
        events: asyncio.Queue[TransferEvent],
        background: bool = False,
    ) -> None:
        self.session_id = session_id
        self.background = background
        self.events = events
        self.requests: dict[int, TransferRequest] = {}
        self.cancelled: list[int] = []
        self.live: set[int] = set()
        self.closed = False
        self._next_handle = 1

    def submit(self, request: TransferRequest) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self.requests[handle] = request
        self.live.add(handle)
        return handle

    def cancel(self, handle: int) -> None:
        self.cancelled.append(handle)
        if handle in self.live:
            self.complete(handle, error="cancelled")

    def live_handles(self) -> set[int]:
        return set(self.live)

    async def close(self) -> None:
        self.closed = True

    def progress(self, handle: int, sent: int, expected: int) -> None:
        self.events.put_nowait(
            TransferEvent(
                self.session_id,
                handle,
                TransferEventKind.BYTES_SENT,
                TransferProgress(sent, sent, expected),
            )
        )

    def respond(
        self,
        handle: int,
        status: int = 201,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        """Deliver a response and complete the transfer."""
        self.events.put_nowait(
            TransferEvent(
                self.session_id,
                handle,
                TransferEventKind.DATA_RECEIVED,
                TransferResponse(status=status, headers=headers or {}, body=body),
            )
        )
        self.complete(handle)

    def complete(self, handle: int, error: str | None = None) -> None:
        self.live.discard(handle)
        self.events.put_nowait(
            TransferEvent(
                self.session_id,
                handle,
                TransferEventKind.COMPLETED,
                TransferCompletion(error=error),
            )
        )

    def finish_session(self) -> None:
        self.events.put_nowait(
            TransferEvent(self.session_id, None, TransferEventKind.SESSION_FINISHED)
        )


@pytest.fixture
def events() -> asyncio.Queue[TransferEvent]:
    return asyncio.Queue()


@pytest.fixture
def transport_factory(events) -> Callable[..., FakeTransport]:
    def _make(session_id: str, background: bool = False) -> FakeTransport:
        return FakeTransport(session_id, events, background=background)

    return _make


@pytest.fixture
def video_file(tmp_path: Path) -> Path:
    """A small stand-in for a recorded video."""
    path = tmp_path / "recording.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"V" * 4096)
    return path
