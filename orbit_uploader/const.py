"""Constants for the ORBIT uploader."""

import os
from pathlib import Path

API_URL = os.getenv("ORBIT_API_URL", "https://example.com/phaseone/api")

ENDPOINT_THING = f"{API_URL}/thing/"
ENDPOINT_VIDEO = f"{API_URL}/video/"
ENDPOINT_PARTICIPANT = f"{API_URL}/participant/"
ENDPOINT_APNS = f"{API_URL}/device/apns/"

# Session identifiers. The background one scopes the persisted task mapping.
FOREGROUND_SESSION_ID = "default"
BACKGROUND_SESSION_ID = "uk.ac.city.orbit-camera"

# Response header carrying the server-assigned ID when a background transfer
# loses its response body.
ORBIT_ID_HEADER = "orbit-id"

# Key-value store keys
TASK_KEY_SUFFIX = "-task"
UPLOADABLE_KEY_SUFFIX = "-uploadable"
DELETE_URLS_KEY = "deleteURLs"
UNCONFIRMED_UPLOADS_KEY = "unconfirmedUploads"

# Flat cool-down between connectivity-triggered sweeps
RETRY_COOLDOWN_SECONDS = 30 * 60

MULTIPART_CHUNK_SIZE = 16384  # 16 KiB

DELETE_SUCCESS_CODES = {204, 404}
DEVICE_TOKEN_SUCCESS_CODES = {200, 201}

REQUEST_TIMEOUT_SECONDS = 60.0
CONNECTIVITY_TIMEOUT_SECONDS = 5.0
CONNECTIVITY_CHECK_INTERVAL_SECONDS = 10.0

PROGRESS_LOG_INTERVAL = 100

CONFIG_DIR = Path.home() / ".orbit_uploader"
CONFIG_FILE = "config.yaml"
CONFIG_ENCODING = "utf-8"
