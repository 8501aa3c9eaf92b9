"""A thing: the label a participant gives an object they want to find."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import ValidationError

from orbit_uploader.errors import UploadResponseError
from orbit_uploader.models import (
    RecordKind,
    ThingAPIRequest,
    ThingAPIResponse,
    TransferRequest,
)

from .uploadable import UploadContext, Uploadable

logger = logging.getLogger(__name__)


@dataclass
class Thing(Uploadable):
    """An object important to the participant, identified by their label.

    Uploading creates the server record, whose ID the thing's videos are
    then uploaded against.
    """

    kind: ClassVar[RecordKind] = RecordKind.THING

    label_participant: str
    label_dataset: str | None = None
    local_id: int | None = None
    remote_id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Thing:
        """Build a Thing from a SQLAlchemy mapping row."""
        return cls(
            label_participant=str(row["label_participant"]),
            label_dataset=row.get("label_dataset"),
            local_id=int(row["id"]),
            remote_id=row.get("remote_id"),
        )

    def to_values(self) -> dict[str, Any]:
        """Column values to write."""
        return {
            "label_participant": self.label_participant,
            "label_dataset": self.label_dataset,
            "remote_id": self.remote_id,
        }

    async def build_request(
        self, credential: str, context: UploadContext
    ) -> TransferRequest | None:
        """Build the JSON POST creating the server record."""
        body = ThingAPIRequest(label_participant=self.label_participant)
        return TransferRequest(
            method="POST",
            url=context.endpoints.thing,
            headers={
                "Authorization": credential,
                "Content-Type": "application/json",
            },
            body=body.model_dump_json().encode("utf-8"),
        )

    def parse_upload_response(self, body: bytes) -> int:
        """Return the ID from a ``{"id", "label_participant", ...}`` body."""
        try:
            response = ThingAPIResponse.model_validate_json(body)
        except ValidationError as exc:
            raise UploadResponseError(
                f"Could not parse thing upload response: {body[:200]!r}"
            ) from exc
        return response.id
