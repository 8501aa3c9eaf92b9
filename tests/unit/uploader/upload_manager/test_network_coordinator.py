"""Tests for NetworkCoordinator driven by fake transports."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from orbit_uploader.const import UNCONFIRMED_UPLOADS_KEY
from orbit_uploader.event_emitter import Emitter, get_emitter
from orbit_uploader.models import ApiEndpoints, RecordKind, VideoKind
from orbit_uploader.records import Thing, Video
from orbit_uploader.upload_management.network_coordinator import (
    NetworkCoordinator,
)

BACKGROUND = "uk.ac.city.orbit-camera"
ENDPOINTS = ApiEndpoints(
    thing="https://orbit.test/api/thing/",
    video="https://orbit.test/api/video/",
    participant="https://orbit.test/api/participant/",
    apns="https://orbit.test/api/device/apns/",
)
THING_BODY = b'{"id": 42, "label_participant": "mug", "label_validated": "mug"}'


class EventCapture:
    def __init__(self, event: str) -> None:
        self.event = event
        self.received: list[tuple] = []

    def handler(self, *args) -> None:
        self.received.append(args)


@pytest.fixture
def capture():
    captures: list[EventCapture] = []

    def _capture(event: str) -> EventCapture:
        collector = EventCapture(event)
        get_emitter().on(event, collector.handler)
        captures.append(collector)
        return collector

    yield _capture
    for collector in captures:
        get_emitter().remove_listener(collector.event, collector.handler)


@pytest.fixture
def foreground(transport_factory):
    return transport_factory("default")


@pytest.fixture
def background(transport_factory):
    return transport_factory(BACKGROUND, background=True)


@pytest.fixture
def client_session() -> MagicMock:
    return MagicMock()


@pytest_asyncio.fixture
async def coordinator(store, client_session, foreground, background, events, tmp_path):
    coordinator = NetworkCoordinator(
        store,
        client_session,
        foreground,
        background,
        events,
        endpoints=ENDPOINTS,
        tmp_path=tmp_path / "staging",
    )
    coordinator.credential = "Token abc"
    await coordinator.start()
    try:
        yield coordinator
    finally:
        await coordinator.close()


async def _uploaded_thing(store, remote_id: int = 42) -> Thing:
    return await store.save(Thing(label_participant="mug", remote_id=remote_id))


@pytest.mark.asyncio
async def test_thing_upload_sets_remote_id(
    coordinator, store, foreground, capture
) -> None:
    completed = capture(Emitter.UPLOAD_COMPLETE)
    thing = await store.save(Thing(label_participant="mug"))

    handle = await coordinator.submit(thing)
    foreground.respond(handle, 201, THING_BODY)
    await coordinator.drain()

    stored = await store.get(RecordKind.THING, thing.local_id)
    assert stored.remote_id == 42
    assert completed.received == [(RecordKind.THING, thing.local_id, 42)]
    assert len(coordinator.foreground) == 0


@pytest.mark.asyncio
async def test_unexpected_status_is_not_parsed(
    coordinator, store, foreground, capture
) -> None:
    failed = capture(Emitter.UPLOAD_FAILED)
    thing = await store.save(Thing(label_participant="mug"))

    handle = await coordinator.submit(thing)
    foreground.respond(handle, 500, THING_BODY)
    await coordinator.drain()

    stored = await store.get(RecordKind.THING, thing.local_id)
    assert stored.remote_id is None
    assert failed.received == [
        (RecordKind.THING, thing.local_id, "Unexpected status code 500")
    ]
    assert not coordinator.is_unconfirmed(thing)
    assert coordinator.foreground.handle_for(thing) is None


@pytest.mark.asyncio
async def test_transport_error_releases_mapping(
    coordinator, store, foreground, capture
) -> None:
    failed = capture(Emitter.UPLOAD_FAILED)
    thing = await store.save(Thing(label_participant="mug"))

    handle = await coordinator.submit(thing)
    foreground.complete(handle, error="Connection reset")
    await coordinator.drain()

    assert failed.received == [(RecordKind.THING, thing.local_id, "Connection reset")]
    assert await coordinator.submit(thing) == handle + 1


@pytest.mark.asyncio
async def test_video_fallback_header_recovers_remote_id(
    coordinator, store, background, video_file
) -> None:
    thing = await _uploaded_thing(store)
    video = await store.save(Video(thing_id=thing.local_id, file_path=video_file))

    handle = await coordinator.submit(video)
    assert handle is not None
    assert coordinator.background.handle_for(video) == handle
    background.progress(handle, 4096, 8192)
    background.respond(handle, 201, b"", headers={"orbit-id": "17"})
    await coordinator.drain()

    stored = await store.get(RecordKind.VIDEO, video.local_id)
    assert stored.remote_id == 17
    assert not coordinator.is_unconfirmed(video)


@pytest.mark.asyncio
async def test_undecodable_response_parks_record(
    coordinator, store, background, video_file, capture
) -> None:
    failed = capture(Emitter.UPLOAD_FAILED)
    thing = await _uploaded_thing(store)
    video = await store.save(Video(thing_id=thing.local_id, file_path=video_file))

    handle = await coordinator.submit(video)
    background.respond(handle, 201, b"<html>proxy</html>")
    await coordinator.drain()

    assert coordinator.is_unconfirmed(video)
    assert await store.get_value(UNCONFIRMED_UPLOADS_KEY) == [
        ["video", video.local_id]
    ]
    assert len(failed.received) == 1
    assert await coordinator.submit(video) is None
    assert len(background.requests) == 1


@pytest.mark.asyncio
async def test_unconfirmed_uploads_survive_restart(
    store, client_session, foreground, background, events
) -> None:
    await store.set_value(UNCONFIRMED_UPLOADS_KEY, [["thing", 1]])
    thing = await store.save(Thing(label_participant="mug"))
    coordinator = NetworkCoordinator(
        store, client_session, foreground, background, events, endpoints=ENDPOINTS
    )
    coordinator.credential = "t"
    await coordinator.start()
    try:
        assert coordinator.unconfirmed == {(RecordKind.THING, thing.local_id)}
        assert await coordinator.submit(thing) is None
    finally:
        await coordinator.close()


@pytest.mark.asyncio
async def test_cancel_releases_before_transport_completion(
    coordinator, store, foreground, capture
) -> None:
    failed = capture(Emitter.UPLOAD_FAILED)
    thing = await store.save(Thing(label_participant="mug"))
    handle = await coordinator.submit(thing)

    assert await coordinator.cancel(thing) is True
    assert coordinator.foreground.handle_for(thing) is None
    await coordinator.drain()

    assert foreground.cancelled == [handle]
    assert failed.received == []
    assert await coordinator.cancel(thing) is False


@pytest.mark.asyncio
async def test_session_finished_invokes_handler_once(coordinator, background) -> None:
    handler = MagicMock()
    coordinator.completion_handler = handler

    background.finish_session()
    background.finish_session()
    await coordinator.drain()

    handler.assert_called_once_with()
    assert coordinator.completion_handler is None


@pytest.mark.asyncio
async def test_no_credential_suppresses_submission(
    coordinator, store, foreground
) -> None:
    coordinator.credential = None
    thing = await store.save(Thing(label_participant="mug"))

    assert await coordinator.submit(thing) is None
    assert foreground.requests == {}


@pytest.mark.asyncio
async def test_unknown_handle_is_ignored(coordinator, foreground) -> None:
    foreground.respond(99, 201, THING_BODY)
    await coordinator.drain()

    assert len(coordinator.foreground) == 0


@pytest.mark.asyncio
async def test_start_restores_and_reconciles_background(
    store, client_session, foreground, background, events, video_file
) -> None:
    thing = await _uploaded_thing(store)
    live = await store.save(Video(thing_id=thing.local_id, file_path=video_file))
    stale = await store.save(Video(thing_id=thing.local_id, file_path=video_file))
    await store.set_value(f"{BACKGROUND}-task", [3, 4])
    await store.set_value(
        f"{BACKGROUND}-uploadable",
        [["video", live.local_id], ["video", stale.local_id]],
    )
    background.live = {3}

    coordinator = NetworkCoordinator(
        store, client_session, foreground, background, events, endpoints=ENDPOINTS
    )
    await coordinator.start()
    try:
        assert coordinator.background.handle_for(live) == 3
        assert coordinator.background.handle_for(stale) is None
        assert await store.get_value(f"{BACKGROUND}-task") == [3]
    finally:
        await coordinator.close()


@pytest.mark.asyncio
async def test_response_for_locally_deleted_record_queues_orphan(
    coordinator, store, foreground
) -> None:
    thing = await store.save(Thing(label_participant="mug"))
    handle = await coordinator.submit(thing)
    await store.delete(thing)

    with patch.object(coordinator.deletions, "trigger"):
        foreground.respond(handle, 201, THING_BODY)
        await coordinator.drain()

    assert coordinator.deletions.pending == {"https://orbit.test/api/thing/42/"}


@pytest.mark.asyncio
async def test_delete_record_deletes_children_and_queues_remote(
    coordinator, store, video_file
) -> None:
    thing = await _uploaded_thing(store, remote_id=5)
    uploaded = await store.save(
        Video(thing_id=thing.local_id, file_path=video_file, remote_id=6)
    )
    pending = await store.save(Video(thing_id=thing.local_id, file_path=video_file))

    with patch.object(coordinator.deletions, "trigger"):
        await coordinator.delete_record(thing)

    assert await store.get(RecordKind.THING, thing.local_id) is None
    assert await store.get(RecordKind.VIDEO, uploaded.local_id) is None
    assert await store.get(RecordKind.VIDEO, pending.local_id) is None
    assert coordinator.deletions.pending == {
        "https://orbit.test/api/thing/5/",
        "https://orbit.test/api/video/6/",
    }


@pytest.mark.asyncio
async def test_delete_record_with_response_in_flight_queues_remote(
    coordinator, store, foreground
) -> None:
    thing = await store.save(Thing(label_participant="mug"))
    handle = await coordinator.submit(thing)
    foreground.respond(handle, 201, THING_BODY)

    with patch.object(coordinator.deletions, "trigger"):
        fresh = await store.get(RecordKind.THING, thing.local_id)
        await coordinator.delete_record(fresh)
        await coordinator.drain()

    assert await store.get(RecordKind.THING, thing.local_id) is None
    assert coordinator.deletions.pending == {"https://orbit.test/api/thing/42/"}
    assert len(coordinator.foreground) == 0


@pytest.mark.asyncio
async def test_response_after_delete_record_queues_orphan(
    coordinator, store, foreground, capture
) -> None:
    completed = capture(Emitter.UPLOAD_COMPLETE)
    thing = await store.save(Thing(label_participant="mug"))
    handle = await coordinator.submit(thing)

    with patch.object(foreground, "cancel") as cancel, patch.object(
        coordinator.deletions, "trigger"
    ):
        await coordinator.delete_record(thing)
        cancel.assert_called_once_with(handle)
        assert coordinator.deletions.pending == set()

        foreground.respond(handle, 201, THING_BODY)
        await coordinator.drain()

    assert coordinator.deletions.pending == {"https://orbit.test/api/thing/42/"}
    assert completed.received == [(RecordKind.THING, thing.local_id, 42)]
    assert coordinator.unconfirmed == set()


@pytest.mark.asyncio
async def test_undecodable_response_after_delete_is_not_parked(
    coordinator, store, foreground
) -> None:
    thing = await store.save(Thing(label_participant="mug"))
    handle = await coordinator.submit(thing)

    with patch.object(foreground, "cancel"):
        await coordinator.delete_record(thing)
        foreground.respond(handle, 201, b"<html>created</html>")
        await coordinator.drain()

    assert coordinator.unconfirmed == set()
    assert coordinator.deletions.pending == set()


@pytest.mark.asyncio
async def test_replace_video_file(coordinator, store, video_file, tmp_path) -> None:
    thing = await _uploaded_thing(store)
    old = await store.save(
        Video(
            thing_id=thing.local_id,
            file_path=video_file,
            technique=VideoKind.REGISTER_ZOOM,
            remote_id=30,
        )
    )
    new_file = tmp_path / "retake.mp4"
    new_file.write_bytes(b"retake")

    with patch.object(coordinator.deletions, "trigger"):
        replacement = await coordinator.replace_video_file(old, new_file)

    assert replacement.local_id not in (None, old.local_id)
    assert replacement.remote_id is None
    assert replacement.technique is VideoKind.REGISTER_ZOOM
    assert replacement.file_path == Path(new_file)
    assert await store.get(RecordKind.VIDEO, old.local_id) is None
    assert coordinator.deletions.pending == {"https://orbit.test/api/video/30/"}
    assert [v.local_id for v in await store.find_not_uploaded(RecordKind.VIDEO)] == [
        replacement.local_id
    ]


@pytest.mark.asyncio
async def test_upload_device_token(coordinator, client_session) -> None:
    response = MagicMock(status=201)
    response.text = AsyncMock(return_value="")
    client_session.post.return_value.__aenter__.return_value = response

    assert await coordinator.upload_device_token(b"\xab\xcd\x01") is True

    args, kwargs = client_session.post.call_args
    assert args == (ENDPOINTS.apns,)
    assert json.loads(kwargs["data"]) == {"registration_id": "ABCD01"}
    assert kwargs["headers"]["Authorization"] == "Token abc"


@pytest.mark.asyncio
async def test_device_token_rejected(coordinator, client_session) -> None:
    response = MagicMock(status=400)
    response.text = AsyncMock(return_value="bad token")
    client_session.post.return_value.__aenter__.return_value = response

    assert await coordinator.upload_device_token(b"\x01") is False

