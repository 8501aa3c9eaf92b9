"""Tests for the streamed multipart body builder."""

from __future__ import annotations

import email.parser
import email.policy
from pathlib import Path
from unittest.mock import patch

import pytest

from orbit_uploader.upload_management.multipart_form import (
    MultipartFormFile,
    get_content_type_for_file,
)


def _parse(form: MultipartFormFile):
    raw = (
        f"Content-Type: {form.content_type}\r\n\r\n".encode() + form.body.read_bytes()
    )
    message = email.parser.BytesParser(policy=email.policy.HTTP).parsebytes(raw)
    assert message.is_multipart()
    return list(message.iter_parts())


def test_build_writes_fields_and_file(tmp_path: Path, video_file: Path) -> None:
    form = MultipartFormFile.build(
        [("thing", "12"), ("technique", "Z")],
        [("file", video_file)],
        tmp_path / "staging",
    )

    assert form.body.parent == tmp_path / "staging"
    assert form.boundary.startswith("Boundary-")
    parts = _parse(form)
    assert [part.get_param("name", header="content-disposition") for part in parts] == [
        "thing",
        "technique",
        "file",
    ]
    assert parts[0].get_payload(decode=True) == b"12"
    assert parts[1].get_payload(decode=True) == b"Z"
    assert parts[2].get_filename() == "recording.mp4"
    assert parts[2].get_content_type() == "video/mp4"
    assert parts[2].get_payload(decode=True) == video_file.read_bytes()


def test_body_ends_with_closing_boundary(tmp_path: Path, video_file: Path) -> None:
    form = MultipartFormFile.build([], [("file", video_file)], tmp_path)

    assert form.body.read_bytes().endswith(f"--{form.boundary}--\r\n".encode())


def test_file_copied_in_fixed_size_chunks(tmp_path: Path) -> None:
    source = tmp_path / "large.mov"
    source.write_bytes(b"0123456789" * 7680)

    reads: list[int] = []
    original_open = Path.open

    class CountingReader:
        def __init__(self, handle):
            self._handle = handle

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self._handle.close()

        def read(self, size: int) -> bytes:
            reads.append(size)
            return self._handle.read(size)

    def fake_open(self, mode="r", *args, **kwargs):
        handle = original_open(self, mode, *args, **kwargs)
        if self == source:
            return CountingReader(handle)
        return handle

    with patch.object(Path, "open", fake_open):
        form = MultipartFormFile.build(
            [], [("file", source)], tmp_path, chunk_size=16384
        )

    assert set(reads) == {16384}
    # five data reads then EOF
    assert len(reads) == 6
    assert _parse(form)[0].get_payload(decode=True) == source.read_bytes()


def test_missing_file_removes_partial_body(tmp_path: Path) -> None:
    staging = tmp_path / "staging"

    with pytest.raises(OSError):
        MultipartFormFile.build(
            [("thing", "1")], [("file", tmp_path / "missing.mp4")], staging
        )

    assert list(staging.iterdir()) == []


@pytest.mark.parametrize(
    "name, expected",
    [
        ("clip.mp4", "video/mp4"),
        ("clip.MOV", "video/quicktime"),
        ("clip.bin", "application/octet-stream"),
    ],
)
def test_content_type_for_file(name: str, expected: str) -> None:
    assert get_content_type_for_file(Path(name)) == expected
