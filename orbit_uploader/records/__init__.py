"""Uploadable record types."""

from orbit_uploader.models import RecordKind

from .thing import Thing
from .uploadable import UploadContext, Uploadable
from .video import Video

RECORD_TYPES: dict[RecordKind, type[Uploadable]] = {
    RecordKind.THING: Thing,
    RecordKind.VIDEO: Video,
}

__all__ = ["RECORD_TYPES", "Thing", "UploadContext", "Uploadable", "Video"]
