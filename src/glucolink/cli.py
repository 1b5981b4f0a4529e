"""CLI para cargar volcados de glucómetros/CGM y detectar cambios de configuración."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict, replace
from pathlib import Path

from glucolink.builder import RecordBuilder
from glucolink.logging_config import get_logger, setup_logging
from glucolink.pipeline import CgmDriverPipeline, DriverPipeline, SessionContext
from glucolink.settings_changes import detect_settings_changes
from glucolink.storage import AppConfig, SQLiteStore, SQLiteUploadClient, UploadReceipt
from glucolink.summary import daily_glucose_summary, events_to_frame
from glucolink.transports.replay import (
    ReplayPaths,
    ReplayTransport,
    load_dump,
    newest_dump,
    parse_snapshot,
)

logger = get_logger(__name__)


def _add_config_overrides(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--timezone", help="IANA timezone of the device clock.")
    parser.add_argument("--group-id", help="Upload group (account) id.")
    parser.add_argument("--bluetooth-id", help="Host-assigned Bluetooth device id.")
    parser.add_argument(
        "--connect-timeout",
        type=float,
        help="Seconds to wait for the device to connect.",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        description="Carga de lecturas de glucómetros y CGM desde volcados JSON."
    )
    parser.add_argument(
        "--db",
        default=str(Path.home() / ".glucolink" / "glucolink.sqlite3"),
        help="SQLite database (default: ~/.glucolink/glucolink.sqlite3).",
    )
    parser.add_argument("--log-format", choices=["text", "json"], default="text")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    upload = sub.add_parser("upload", help="Run the driver over a device dump.")
    upload.add_argument("dump", help="Dump file, or folder (newest *.json is used).")
    upload.add_argument(
        "--cgm",
        action="store_true",
        help="Use the CGM receiver driver (includes settings changes).",
    )
    upload.add_argument(
        "--save-config",
        action="store_true",
        help="Persist the given overrides as the new defaults.",
    )
    _add_config_overrides(upload)

    changes = sub.add_parser(
        "settings-changes", help="Print clock and settings changes of a dump."
    )
    changes.add_argument("dump", help="Dump file, or folder (newest *.json is used).")

    config = sub.add_parser("config", help="Show or update the stored configuration.")
    _add_config_overrides(config)
    return parser.parse_args(argv)


def apply_overrides(config: AppConfig, ns: argparse.Namespace) -> AppConfig:
    """Return ``config`` with every CLI override that was given."""
    overrides = {
        "timezone": getattr(ns, "timezone", None),
        "group_id": getattr(ns, "group_id", None),
        "bluetooth_id": getattr(ns, "bluetooth_id", None),
        "connect_timeout_seconds": getattr(ns, "connect_timeout", None),
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


def resolve_dump(raw: str) -> Path:
    path = Path(raw).expanduser()
    if path.is_dir():
        return newest_dump(ReplayPaths(root=path))
    return path


async def run_upload(ns: argparse.Namespace, store: SQLiteStore, config: AppConfig) -> int:
    """Run the driver over a dump and store the upload locally."""
    transport = ReplayTransport(resolve_dump(ns.dump))
    pipeline = CgmDriverPipeline() if ns.cgm else DriverPipeline()
    session = SessionContext(
        transport=transport,
        upload_client=SQLiteUploadClient(store),
        timezone=config.timezone,
        group_id=config.group_id,
        version=config.version,
        bluetooth_id=config.bluetooth_id,
        connect_timeout=config.connect_timeout_seconds,
    )
    result = await pipeline.run(session)
    if not result.ok:
        print(f"ERROR: {result.error}")
        return 1

    receipt = result.data.upload_result
    print(f"OK: Device dump: {transport.dump_path}")
    print(f"OK: Device id: {session.device_id}")
    print(f"OK: Events: {len(result.data.post_records)}")
    if isinstance(receipt, UploadReceipt):
        print(f"OK: New events: {receipt.new_events}")
        print(f"OK: Already uploaded: {receipt.duplicate_events}")
        if receipt.session_id is not None:
            print(f"OK: Session: {receipt.session_id}")

    daily = daily_glucose_summary(events_to_frame(result.data.post_records))
    if not daily.empty:
        print(daily.to_string(index=False))
    return 0


def run_settings_changes(ns: argparse.Namespace) -> int:
    """Print the clock and configuration changes found in a dump as JSON."""
    path = resolve_dump(ns.dump)
    document = load_dump(path.read_text(encoding="utf-8"))
    items = document.get("settings", [])
    if not isinstance(items, list):
        raise ValueError("Device dump 'settings' must be a list")
    snapshots = [parse_snapshot(item) for item in items if isinstance(item, dict)]
    changes = detect_settings_changes(snapshots, RecordBuilder())
    out = {
        "clockChanges": [e.to_payload() for e in changes.clock_changes],
        "configChanges": [e.to_payload() for e in changes.config_changes],
    }
    print(json.dumps(out, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (0 on success).
    """
    ns = parse_args(argv)
    setup_logging(ns.log_format, ns.log_level)

    if ns.command == "settings-changes":
        return run_settings_changes(ns)

    store = SQLiteStore(Path(ns.db).expanduser())
    config = apply_overrides(store.load_config(), ns)

    if ns.command == "config":
        store.save_config(config)
        print(json.dumps(asdict(config), indent=2))
        return 0

    if ns.save_config:
        store.save_config(config)
    logger.info("Starting upload", dump=ns.dump, cgm=ns.cgm)
    return asyncio.run(run_upload(ns, store, config))
