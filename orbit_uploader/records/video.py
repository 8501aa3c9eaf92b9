"""A video of a thing, uploaded as a multipart file body."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, ClassVar

from pydantic import ValidationError

from orbit_uploader.const import ORBIT_ID_HEADER
from orbit_uploader.errors import UploadResponseError
from orbit_uploader.models import (
    RecordKind,
    TransferRequest,
    VideoAPIResponse,
    VideoKind,
)
from orbit_uploader.upload_management.multipart_form import MultipartFormFile

from .uploadable import UploadContext, Uploadable

logger = logging.getLogger(__name__)


@dataclass
class Video(Uploadable):
    """A recording of a thing, stored on device at ``file_path``."""

    kind: ClassVar[RecordKind] = RecordKind.VIDEO
    background_transfer: ClassVar[bool] = True
    depends_on: ClassVar[RecordKind | None] = RecordKind.THING
    parent_column: ClassVar[str | None] = "thing_id"

    thing_id: int
    file_path: Path
    technique: VideoKind = VideoKind.REGISTER_ROTATE
    verified: str | None = None
    local_id: int | None = None
    remote_id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Video:
        """Build a Video from a SQLAlchemy mapping row."""
        technique_raw = row["kind"]
        return cls(
            thing_id=int(row["thing_id"]),
            file_path=Path(row["file_path"]),
            technique=(
                technique_raw
                if isinstance(technique_raw, VideoKind)
                else VideoKind(str(technique_raw))
            ),
            verified=row.get("verified"),
            local_id=int(row["id"]),
            remote_id=row.get("remote_id"),
        )

    def to_values(self) -> dict[str, Any]:
        """Column values to write."""
        return {
            "thing_id": self.thing_id,
            "file_path": str(self.file_path),
            "kind": self.technique,
            "verified": self.verified,
            "remote_id": self.remote_id,
        }

    def rerecorded(self, file_path: Path) -> Video:
        """Return an unstored copy of this video pointing at a new recording."""
        return replace(
            self, file_path=file_path, verified=None, local_id=None, remote_id=None
        )

    async def build_request(
        self, credential: str, context: UploadContext
    ) -> TransferRequest | None:
        """Build the multipart POST for this video.

        Returns None while the parent thing has no remote ID, or when the
        media file is missing.
        """
        thing = await context.store.get(RecordKind.THING, self.thing_id)
        if thing is None or thing.remote_id is None:
            logger.info(
                "Cannot upload %s without the remote ID of thing %d",
                self.describe(),
                self.thing_id,
            )
            return None

        if not self.file_path.is_file():
            logger.error(
                "Cannot upload %s, file not found: %s", self.describe(), self.file_path
            )
            return None

        try:
            form = await asyncio.to_thread(
                MultipartFormFile.build,
                [("thing", str(thing.remote_id)), ("technique", self.technique.value)],
                [("file", self.file_path)],
                context.tmp_path,
            )
        except OSError as exc:
            logger.error("Could not create form data for %s: %s", self.describe(), exc)
            return None

        return TransferRequest(
            method="POST",
            url=context.endpoints.video,
            headers={
                "Authorization": credential,
                "Content-Type": form.content_type,
            },
            body_file=form.body,
            cleanup_body_file=True,
        )

    def parse_upload_response(self, body: bytes) -> int:
        """Return the ID from a ``{"id": ...}`` body."""
        try:
            response = VideoAPIResponse.model_validate_json(body)
        except ValidationError as exc:
            raise UploadResponseError(
                f"Could not parse video upload response: {body[:200]!r}"
            ) from exc
        return response.id

    def fallback_response(self, headers: Mapping[str, str]) -> bytes | None:
        """Rebuild ``{"id": ...}`` from the ``orbit-id`` response header."""
        value = headers.get(ORBIT_ID_HEADER)
        if value is None:
            return None
        try:
            remote_id = int(value.strip())
        except ValueError:
            logger.warning("Ignoring malformed %s header: %r", ORBIT_ID_HEADER, value)
            return None
        return VideoAPIResponse(id=remote_id).model_dump_json().encode("utf-8")
