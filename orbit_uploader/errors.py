"""Exceptions raised by the ORBIT uploader."""


class UploaderError(Exception):
    """Base class for uploader errors."""


class UploadResponseError(UploaderError):
    """Raised when an upload response body does not match the expected schema."""


class RecordNotStoredError(UploaderError):
    """Raised when an operation needs a record that has no local ID yet."""


class ConfigError(UploaderError):
    """Raised when the uploader configuration cannot be loaded."""
