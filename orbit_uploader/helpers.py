"""Helper functions for the ORBIT uploader."""

import os
from pathlib import Path

from orbit_uploader.const import CONFIG_DIR


def get_uploader_db_path() -> Path:
    """Return the path to the SQLite database file used by the uploader.

    This path is determined by the environment variable ORBIT_UPLOADER_DB_PATH.
    If this variable is not set, the path defaults to
    ~/.orbit_uploader/state.db.

    :return: Path to the SQLite database file
    """
    return Path(
        os.environ.get(
            "ORBIT_UPLOADER_DB_PATH",
            str(CONFIG_DIR / "state.db"),
        )
    )


def get_uploader_tmp_path() -> Path:
    """Return the directory where multipart request bodies are staged.

    This path is determined by ORBIT_UPLOADER_TMP_PATH. If not set, it
    defaults to a sibling of the DB path: <db_dir>/tmp.
    """
    default_root = get_uploader_db_path().parent / "tmp"
    return Path(
        os.environ.get(
            "ORBIT_UPLOADER_TMP_PATH",
            str(default_root),
        )
    )


def format_device_token(token: bytes) -> str:
    """Render a push-notification device token as upper-case hex."""
    return token.hex().upper()
