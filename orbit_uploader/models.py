"""Models used by the uploader."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, Field

from orbit_uploader import const


class RecordKind(str, Enum):
    """Type tag of an uploadable record, persisted with background mappings."""

    THING = "thing"
    VIDEO = "video"


class VideoKind(str, Enum):
    """Recording technique of a video, as the server codes it."""

    REGISTER_ROTATE = "R"
    REGISTER_ZOOM = "Z"
    # "No technique" on the server
    RECOGNITION = "N"


class TransferState(str, Enum):
    """Lifecycle of one transfer handle.

    State transitions:
    - SUBMITTED -> AWAITING_RESPONSE (first bytes sent or response started)
    - AWAITING_RESPONSE -> COMPLETED | FAILED
    - Any -> CANCELLED (explicit cancellation)
    """

    SUBMITTED = "submitted"
    AWAITING_RESPONSE = "awaiting_response"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransferEventKind(str, Enum):
    """Lifecycle events a transport reports for its transfers."""

    BYTES_SENT = "bytes_sent"
    DATA_RECEIVED = "data_received"
    COMPLETED = "completed"
    # All queued background events for the session have been delivered
    SESSION_FINISHED = "session_finished"


@dataclass(frozen=True)
class TransferProgress:
    """Body bytes sent so far for one transfer."""

    bytes_sent: int
    total_bytes_sent: int
    total_bytes_expected: int


@dataclass(frozen=True)
class TransferResponse:
    """Response data captured before the HTTP response is closed.

    Header names are lower-cased. ``body`` may be empty when a background
    transfer loses its response across a restart.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        """True for 2xx statuses."""
        return 200 <= self.status < 300


@dataclass(frozen=True)
class TransferCompletion:
    """Outcome of a transfer; ``error`` is None when a response was received."""

    error: str | None = None


TransferPayload = Union[TransferProgress, TransferResponse, TransferCompletion, None]


@dataclass(frozen=True)
class TransferEvent:
    """One transport lifecycle event, routed by ``session_id``."""

    session_id: str
    handle: int | None
    kind: TransferEventKind
    payload: TransferPayload = None


@dataclass(frozen=True)
class TransferRequest:
    """An outbound request, with its body in memory or staged in a file."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None
    body_file: Path | None = None
    cleanup_body_file: bool = False


@dataclass(frozen=True)
class ApiEndpoints:
    """Server endpoints records are uploaded to."""

    thing: str = const.ENDPOINT_THING
    video: str = const.ENDPOINT_VIDEO
    participant: str = const.ENDPOINT_PARTICIPANT
    apns: str = const.ENDPOINT_APNS

    def for_kind(self, kind: RecordKind) -> str:
        """Return the collection endpoint for a record kind."""
        if kind == RecordKind.THING:
            return self.thing
        return self.video


@dataclass
class Participant:
    """The single participant of this app instance."""

    id: int
    auth_credential: str | None
    study_start: date | None = None
    study_end: date | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Participant:
        """Build a Participant from a SQLAlchemy mapping row."""
        return cls(
            id=int(row["id"]),
            auth_credential=row.get("auth_credential"),
            study_start=row.get("study_start"),
            study_end=row.get("study_end"),
        )


class ThingAPIRequest(BaseModel):
    """Thing endpoint request body."""

    label_participant: str


class ThingAPIResponse(BaseModel):
    """Thing endpoint response body."""

    id: int
    label_participant: str
    label_validated: str


class VideoAPIResponse(BaseModel):
    """Video endpoint response body; only the server ID is needed."""

    id: int


class VideoAPIItem(BaseModel):
    """One video in the paginated video listing."""

    id: int
    thing: int
    file: str
    technique: str
    validation: str


class VideoAPIPage(BaseModel):
    """Paginated video listing envelope."""

    count: int
    next: str | None = None
    previous: str | None = None
    results: list[VideoAPIItem] = Field(default_factory=list)


class ParticipantAPIResponse(BaseModel):
    """Participant endpoint GET body."""

    study_start: date
    study_end: date


class DeviceTokenRequest(BaseModel):
    """Push-notification device token registration body."""

    registration_id: str
