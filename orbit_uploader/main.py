"""Main entry point for the ORBIT uploader CLI."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import aiohttp

from orbit_uploader import runner_entry
from orbit_uploader.bootstrap import resolve_db_path
from orbit_uploader.config_manager.config import ConfigManager
from orbit_uploader.config_manager.helpers import parse_seconds
from orbit_uploader.config_manager.uploader_config import UploaderConfig
from orbit_uploader.const import DELETE_URLS_KEY, UNCONFIRMED_UPLOADS_KEY
from orbit_uploader.errors import ConfigError
from orbit_uploader.event_emitter import init_emitter, reset_emitter
from orbit_uploader.models import Participant, RecordKind
from orbit_uploader.state_management.record_store_sqlite import SqliteRecordStore
from orbit_uploader.upload_management.server_status import ServerStatusPoller

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def add_common_config_args(parser: argparse.ArgumentParser) -> None:
    """Add CLI options that override configuration values."""
    parser.add_argument("--api-url", dest="api_url", help="Base URL of the API.")
    parser.add_argument("--db-path", dest="db_path", help="SQLite database path.")
    parser.add_argument(
        "--tmp-path", dest="tmp_path", help="Directory for staged upload bodies."
    )
    parser.add_argument(
        "--retry-cooldown",
        dest="retry_cooldown_seconds",
        type=parse_seconds,
        help="Minimum time between connectivity retries, e.g. 30m.",
    )
    parser.add_argument(
        "--offline",
        action="store_const",
        const=True,
        default=None,
        help="Never report the network as reachable.",
    )


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "api_url": getattr(args, "api_url", None),
        "db_path": getattr(args, "db_path", None),
        "tmp_path": getattr(args, "tmp_path", None),
        "retry_cooldown_seconds": getattr(args, "retry_cooldown_seconds", None),
        "offline": getattr(args, "offline", None),
    }


def load_config(args: argparse.Namespace) -> UploaderConfig:
    """Resolve configuration from the config file, environment and CLI."""
    manager = ConfigManager(args.config)
    return manager.resolve_effective_config(_cli_overrides(args))


async def _with_store(config: UploaderConfig, action: Any) -> Any:
    init_emitter(loop=asyncio.get_running_loop())
    store = SqliteRecordStore(resolve_db_path(config))
    try:
        await store.init_async_store()
        return await action(store)
    finally:
        await store.close()
        reset_emitter()


def handle_run(args: argparse.Namespace) -> None:
    """Run the uploader until interrupted."""
    runner_entry.main(load_config(args))


def handle_set_credential(args: argparse.Namespace) -> None:
    """Store the participant and the credential requests are authorised with."""
    config = load_config(args)

    async def action(store: SqliteRecordStore) -> None:
        participant = await store.get_participant()
        if participant is None or participant.id != args.participant_id:
            participant = Participant(id=args.participant_id, auth_credential=None)
        participant.auth_credential = args.credential
        await store.save_participant(participant)

    asyncio.run(_with_store(config, action))
    print(f"Credential stored for participant {args.participant_id}")


def handle_status(args: argparse.Namespace) -> None:
    """Print counts of records and deletions still waiting for the server."""
    config = load_config(args)

    async def action(store: SqliteRecordStore) -> dict[str, int]:
        counts = {
            f"pending {kind.value}s": await store.count_not_uploaded(kind)
            for kind in RecordKind
        }
        counts["pending deletions"] = len(await store.get_value(DELETE_URLS_KEY) or [])
        counts["unconfirmed uploads"] = len(
            await store.get_value(UNCONFIRMED_UPLOADS_KEY) or []
        )
        return counts

    counts = asyncio.run(_with_store(config, action))
    for label, count in counts.items():
        print(f"{label}: {count}")


def handle_refresh_status(args: argparse.Namespace) -> None:
    """Copy video validation results and study dates from the server."""
    config = load_config(args)

    async def action(store: SqliteRecordStore) -> tuple[int, bool] | None:
        participant = await store.get_participant()
        credential = participant.auth_credential if participant else None
        if credential is None:
            return None
        async with aiohttp.ClientSession() as client_session:
            poller = ServerStatusPoller(
                store,
                client_session,
                lambda: credential,
                endpoints=config.endpoints(),
                timeout=config.request_timeout_seconds,
            )
            videos = await poller.update_video_statuses()
            study_updated = await poller.update_participant_status()
        return videos, study_updated

    result = asyncio.run(_with_store(config, action))
    if result is None:
        print("No credential stored, run set-credential first")
        return
    videos, study_updated = result
    print(f"video statuses updated: {videos}")
    print(f"study period updated: {'yes' if study_updated else 'no'}")


def build_parser() -> argparse.ArgumentParser:
    """Build the orbit-uploader argument parser."""
    parser = argparse.ArgumentParser(
        prog="orbit-uploader",
        description="ORBIT dataset uploader",
    )
    parser.add_argument("--config", type=Path, help="YAML configuration file.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # orbit-uploader run [options...]
    run_parser = subparsers.add_parser("run", help="Run the uploader.")
    add_common_config_args(run_parser)
    run_parser.set_defaults(handler=handle_run)

    credential_parser = subparsers.add_parser(
        "set-credential", help="Store the participant credential."
    )
    credential_parser.add_argument("credential", help="Authorization header value.")
    credential_parser.add_argument(
        "--participant-id", type=int, default=1, help="Participant ID."
    )
    add_common_config_args(credential_parser)
    credential_parser.set_defaults(handler=handle_set_credential)

    status_parser = subparsers.add_parser("status", help="Show pending uploads.")
    add_common_config_args(status_parser)
    status_parser.set_defaults(handler=handle_status)

    refresh_parser = subparsers.add_parser(
        "refresh-status", help="Fetch video validation and study dates."
    )
    add_common_config_args(refresh_parser)
    refresh_parser.set_defaults(handler=handle_refresh_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse ``argv``, configure logging and run the chosen subcommand."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    try:
        args.handler(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
