"""Streamed multipart/form-data bodies for file uploads.

The body is written to a temporary file in fixed-size chunks so memory use
does not grow with the size of the uploaded media.
"""

from __future__ import annotations

import logging
import tempfile
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from orbit_uploader.const import MULTIPART_CHUNK_SIZE

logger = logging.getLogger(__name__)

CONTENT_TYPE_MAPPING = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".json": "application/json",
}


def get_content_type_for_file(file: Path) -> str:
    """Determine content type from file extension.

    Args:
        file: Path to the file.

    Returns:
        Content type string for the file.
    """
    return CONTENT_TYPE_MAPPING.get(file.suffix.lower(), "application/octet-stream")


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


@dataclass(frozen=True)
class MultipartFormFile:
    """A multipart/form-data body staged in a file.

    Attributes:
        content_type: Value for the request's Content-Type header.
        body: Path of the temporary file holding the encoded body.
    """

    content_type: str
    body: Path

    @property
    def boundary(self) -> str:
        """The boundary token separating parts."""
        return self.content_type.split("boundary=", 1)[1]

    @classmethod
    def build(
        cls,
        fields: Sequence[tuple[str, str]],
        files: Sequence[tuple[str, Path]],
        directory: Path | None = None,
        chunk_size: int = MULTIPART_CHUNK_SIZE,
    ) -> MultipartFormFile:
        """Write fields and files into a multipart body file.

        Args:
            fields: (name, value) pairs written as text parts.
            files: (name, path) pairs whose contents are streamed as file parts.
            directory: Where to create the body file; the system temporary
                directory by default.
            chunk_size: Bytes copied per read from each source file.

        Returns:
            The content type and location of the body file.

        Raises:
            OSError: If a source file cannot be read or the body written.
        """
        boundary = f"Boundary-{uuid.uuid4()}"
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            mode="wb",
            prefix="orbit-upload-",
            suffix=".multipart",
            dir=directory,
            delete=False,
        ) as handle:
            body = Path(handle.name)
            try:
                for name, value in fields:
                    handle.write(f"--{boundary}\r\n".encode())
                    handle.write(
                        f'Content-Disposition: form-data; name="{_quote(name)}"\r\n\r\n'
                        .encode()
                    )
                    handle.write(f"{value}\r\n".encode())

                for name, path in files:
                    handle.write(f"--{boundary}\r\n".encode())
                    handle.write(
                        (
                            f'Content-Disposition: form-data; name="{_quote(name)}"; '
                            f'filename="{_quote(path.name)}"\r\n'
                        ).encode()
                    )
                    handle.write(
                        f"Content-Type: {get_content_type_for_file(path)}\r\n\r\n"
                        .encode()
                    )
                    _copy_in_chunks(path, handle, chunk_size)
                    handle.write(b"\r\n")

                handle.write(f"--{boundary}--\r\n".encode())
            except OSError:
                handle.close()
                body.unlink(missing_ok=True)
                raise

        logger.debug("Wrote multipart body %s (%d bytes)", body, body.stat().st_size)
        return cls(
            content_type=f"multipart/form-data; boundary={boundary}",
            body=body,
        )


def _copy_in_chunks(source: Path, target: BinaryIO, chunk_size: int) -> None:
    with source.open("rb") as source_handle:
        while True:
            chunk = source_handle.read(chunk_size)
            if not chunk:
                break
            target.write(chunk)
