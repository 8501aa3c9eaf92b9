"""Tests for AiohttpTransport against a local HTTP server."""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from orbit_uploader.models import (
    TransferEvent,
    TransferEventKind,
    TransferRequest,
)
from orbit_uploader.upload_management.multipart_form import MultipartFormFile
from orbit_uploader.upload_management.transport import AiohttpTransport

TEST_TIMEOUT_SECONDS = 10.0


class OrbitBackend:
    def __init__(self) -> None:
        self.received: list[dict] = []
        self.active = 0
        self.max_active = 0
        self.release = asyncio.Event()

    async def create_thing(self, request: web.Request) -> web.Response:
        self.received.append({"json": await request.json()})
        return web.json_response(
            {"id": 42, "label_participant": "mug", "label_validated": "mug"},
            status=201,
        )

    async def create_video(self, request: web.Request) -> web.Response:
        self.received.append(
            {
                "content_length": request.headers.get("Content-Length"),
                "transfer_encoding": request.headers.get("Transfer-Encoding"),
                "body": await request.read(),
            }
        )
        return web.Response(status=201, headers={"Orbit-Id": "17"})

    async def slow(self, request: web.Request) -> web.Response:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return web.Response(status=204)


@pytest_asyncio.fixture
async def backend():
    orbit = OrbitBackend()
    app = web.Application()
    app.router.add_post("/api/thing/", orbit.create_thing)
    app.router.add_post("/api/video/", orbit.create_video)
    app.router.add_post("/api/slow/", orbit.slow)
    server = TestServer(app)
    await server.start_server()
    orbit.url = lambda path: str(server.make_url(path))
    try:
        yield orbit
    finally:
        orbit.release.set()
        await server.close()


@pytest_asyncio.fixture
async def client_session():
    session = aiohttp.ClientSession()
    try:
        yield session
    finally:
        await session.close()


async def _collect(
    events: asyncio.Queue[TransferEvent], until: TransferEventKind, count: int = 1
) -> list[TransferEvent]:
    collected: list[TransferEvent] = []
    seen = 0

    async def _run() -> None:
        nonlocal seen
        while seen < count:
            event = await events.get()
            collected.append(event)
            if event.kind == until:
                seen += 1

    await asyncio.wait_for(_run(), timeout=TEST_TIMEOUT_SECONDS)
    return collected


@pytest.mark.asyncio
async def test_json_request_events(backend, client_session, events) -> None:
    transport = AiohttpTransport("default", client_session, events)
    request = TransferRequest(
        method="POST",
        url=backend.url("/api/thing/"),
        headers={"Content-Type": "application/json", "Authorization": "t"},
        body=b'{"label_participant": "mug"}',
    )

    handle = transport.submit(request)
    collected = await _collect(events, TransferEventKind.COMPLETED)

    assert [event.kind for event in collected] == [
        TransferEventKind.BYTES_SENT,
        TransferEventKind.DATA_RECEIVED,
        TransferEventKind.COMPLETED,
    ]
    assert all(event.handle == handle for event in collected)
    response = collected[1].payload
    assert response.status == 201
    assert b'"id":42' in response.body.replace(b" ", b"")
    assert collected[2].payload.error is None
    assert backend.received == [{"json": {"label_participant": "mug"}}]
    assert transport.live_handles() == set()


@pytest.mark.asyncio
async def test_file_body_streams_with_content_length(
    backend, client_session, events, tmp_path: Path, video_file: Path
) -> None:
    transport = AiohttpTransport(
        "uk.ac.city.orbit-camera", client_session, events, background=True
    )
    form = MultipartFormFile.build(
        [("thing", "4"), ("technique", "R")], [("file", video_file)], tmp_path
    )
    size = form.body.stat().st_size
    request = TransferRequest(
        method="POST",
        url=backend.url("/api/video/"),
        headers={"Content-Type": form.content_type},
        body_file=form.body,
        cleanup_body_file=True,
    )

    transport.submit(request)
    collected = await _collect(events, TransferEventKind.SESSION_FINISHED)

    kinds = [event.kind for event in collected]
    assert kinds[-3:] == [
        TransferEventKind.DATA_RECEIVED,
        TransferEventKind.COMPLETED,
        TransferEventKind.SESSION_FINISHED,
    ]
    progress = [e.payload for e in collected if e.kind == TransferEventKind.BYTES_SENT]
    assert progress[-1].total_bytes_sent == size
    assert progress[-1].total_bytes_expected == size

    response = collected[-3].payload
    assert response.headers["orbit-id"] == "17"
    assert response.body == b""

    received = backend.received[0]
    assert received["content_length"] == str(size)
    assert received["transfer_encoding"] is None
    assert video_file.read_bytes() in received["body"]
    assert not form.body.exists()


@pytest.mark.asyncio
async def test_background_runs_one_transfer_at_a_time(
    backend, client_session, events
) -> None:
    transport = AiohttpTransport(
        "uk.ac.city.orbit-camera", client_session, events, background=True
    )
    for _ in range(3):
        transport.submit(
            TransferRequest(method="POST", url=backend.url("/api/slow/"), body=b"x")
        )

    await asyncio.sleep(0.2)
    assert transport.live_handles() == {1, 2, 3}
    backend.release.set()
    collected = await _collect(events, TransferEventKind.COMPLETED, count=3)

    assert backend.max_active == 1
    assert all(
        e.payload.error is None
        for e in collected
        if e.kind == TransferEventKind.COMPLETED
    )


@pytest.mark.asyncio
async def test_cancel_reports_completion(backend, client_session, events) -> None:
    transport = AiohttpTransport("default", client_session, events)
    handle = transport.submit(
        TransferRequest(method="POST", url=backend.url("/api/slow/"), body=b"x")
    )
    await asyncio.sleep(0.1)

    transport.cancel(handle)
    collected = await _collect(events, TransferEventKind.COMPLETED)

    assert collected[-1].handle == handle
    assert collected[-1].payload.error == "cancelled"
    await asyncio.sleep(0.05)
    assert transport.live_handles() == set()


@pytest.mark.asyncio
async def test_connection_error_reports_completion(client_session, events) -> None:
    transport = AiohttpTransport("default", client_session, events, timeout=5)

    transport.submit(
        TransferRequest(method="POST", url="http://127.0.0.1:9/api/thing/", body=b"{}")
    )
    collected = await _collect(events, TransferEventKind.COMPLETED)

    assert [event.kind for event in collected] == [TransferEventKind.COMPLETED]
    assert collected[0].payload.error


@pytest.mark.asyncio
async def test_close_cancels_outstanding(backend, client_session, events) -> None:
    transport = AiohttpTransport("default", client_session, events)
    transport.submit(
        TransferRequest(method="POST", url=backend.url("/api/slow/"), body=b"x")
    )
    await asyncio.sleep(0.1)

    await transport.close()

    assert transport.live_handles() == set()
    collected = await _collect(events, TransferEventKind.COMPLETED)
    assert collected[-1].payload.error == "cancelled"


@pytest.mark.asyncio
async def test_cancel_right_after_submit_reports_completion(
    client_session, events, tmp_path: Path
) -> None:
    transport = AiohttpTransport("default", client_session, events)
    staged = tmp_path / "form.body"
    staged.write_bytes(b"--Boundary-x--\r\n")
    handle = transport.submit(
        TransferRequest(
            method="POST",
            url="http://127.0.0.1:9/api/video/",
            body_file=staged,
            cleanup_body_file=True,
        )
    )

    transport.cancel(handle)
    collected = await _collect(events, TransferEventKind.COMPLETED)

    assert [(event.kind, event.handle) for event in collected] == [
        (TransferEventKind.COMPLETED, handle)
    ]
    assert collected[0].payload.error == "cancelled"
    assert not staged.exists()
    assert transport.live_handles() == set()


@pytest.mark.asyncio
async def test_close_right_after_submit_reports_completion(
    client_session, events
) -> None:
    transport = AiohttpTransport(
        "uk.ac.city.orbit-camera", client_session, events, background=True
    )
    handle = transport.submit(
        TransferRequest(method="POST", url="http://127.0.0.1:9/api/slow/", body=b"x")
    )

    await transport.close()
    collected = await _collect(events, TransferEventKind.SESSION_FINISHED)

    assert [event.kind for event in collected] == [
        TransferEventKind.COMPLETED,
        TransferEventKind.SESSION_FINISHED,
    ]
    assert collected[0].handle == handle
    assert collected[0].payload.error == "cancelled"
