"""Pydantic models for ORBIT uploader configuration."""

from pydantic import BaseModel

from orbit_uploader import const
from orbit_uploader.models import ApiEndpoints


class UploaderConfig(BaseModel):
    """Configuration options for an uploader instance.

    Attributes:
        api_url: base URL the default endpoints are derived from.
        endpoint_thing: collection endpoint for things.
        endpoint_video: collection endpoint for videos.
        endpoint_participant: participant status endpoint.
        endpoint_apns: push-notification device token endpoint.
        db_path: SQLite database holding records and persisted upload state.
        tmp_path: directory where multipart request bodies are staged.
        background_session_id: identifier scoping the persisted task mapping.
        retry_cooldown_seconds: minimum time between connectivity-triggered
            sweeps.
        request_timeout_seconds: total timeout for a single transfer.
        connectivity_check_interval_seconds: seconds between reachability checks.
        connectivity_timeout_seconds: timeout of a single reachability check.
        offline: when true, never report the network as reachable.
    """

    api_url: str = const.API_URL
    endpoint_thing: str | None = None
    endpoint_video: str | None = None
    endpoint_participant: str | None = None
    endpoint_apns: str | None = None
    db_path: str | None = None
    tmp_path: str | None = None
    background_session_id: str = const.BACKGROUND_SESSION_ID
    retry_cooldown_seconds: float = const.RETRY_COOLDOWN_SECONDS
    request_timeout_seconds: float = const.REQUEST_TIMEOUT_SECONDS
    connectivity_check_interval_seconds: float = (
        const.CONNECTIVITY_CHECK_INTERVAL_SECONDS
    )
    connectivity_timeout_seconds: float = const.CONNECTIVITY_TIMEOUT_SECONDS
    offline: bool = False

    def endpoints(self) -> ApiEndpoints:
        """Return the effective endpoints, filling gaps from ``api_url``."""
        base = self.api_url.rstrip("/")
        return ApiEndpoints(
            thing=self.endpoint_thing or f"{base}/thing/",
            video=self.endpoint_video or f"{base}/video/",
            participant=self.endpoint_participant or f"{base}/participant/",
            apns=self.endpoint_apns or f"{base}/device/apns/",
        )
