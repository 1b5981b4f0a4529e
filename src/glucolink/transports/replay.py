"""Transporte que reproduce volcados JSON de un dispositivo."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from dateutil import parser as date_parser

from glucolink.errors import TransportError
from glucolink.model import DeviceInfo, RawRecord, RawSettingsSnapshot
from glucolink.transmitter import transmitter_id_from_raw
from glucolink.transports.base import CgmTransport


@dataclass(frozen=True)
class ReplayPaths:
    """Folder holding device dumps (``*.json``)."""

    root: Path
    pattern: str = "*.json"


class ReplayTransport(CgmTransport):
    """Reads a device dump from disk instead of talking to hardware.

    The dump is loaded on connect; fetches return what it contains.
    """

    def __init__(self, dump_path: Path) -> None:
        self._dump_path = dump_path
        self._document: dict[str, Any] | None = None

    @classmethod
    def newest_in(cls, paths: ReplayPaths) -> ReplayTransport:
        """Create a transport for the newest dump in ``paths.root`` by mtime."""
        return cls(newest_dump(paths))

    @property
    def dump_path(self) -> Path:
        return self._dump_path

    async def connect(self) -> None:
        if not self._dump_path.exists():
            raise TransportError(f"Device dump not found: {self._dump_path}")
        text = self._dump_path.read_text(encoding="utf-8")
        try:
            self._document = load_dump(text)
        except ValueError as exc:
            raise TransportError(f"Unreadable device dump: {exc}") from exc

    async def get_device_info(self) -> DeviceInfo:
        return parse_device_info(self._require_document().get("deviceInfo"))

    async def fetch_all_records(self) -> list[RawRecord]:
        items = self._require_document().get("records", [])
        if not isinstance(items, list):
            raise TransportError("Device dump 'records' must be a list")
        try:
            return [parse_record(item) for item in items if isinstance(item, dict)]
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Malformed record in device dump: {exc}") from exc

    async def fetch_settings_snapshots(self) -> list[RawSettingsSnapshot]:
        items = self._require_document().get("settings", [])
        if not isinstance(items, list):
            raise TransportError("Device dump 'settings' must be a list")
        try:
            return [parse_snapshot(item) for item in items if isinstance(item, dict)]
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Malformed settings in device dump: {exc}") from exc

    async def disconnect(self) -> None:
        self._document = None

    def _require_document(self) -> dict[str, Any]:
        if self._document is None:
            raise TransportError("Transport is not connected")
        return self._document


def newest_dump(paths: ReplayPaths) -> Path:
    """Return the newest dump by mtime.

    Raises:
        FileNotFoundError: If the folder is missing or holds no dump.
    """
    if not paths.root.exists():
        raise FileNotFoundError(str(paths.root))
    files = sorted(
        paths.root.glob(paths.pattern),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    if not files:
        raise FileNotFoundError(f"No {paths.pattern} in {paths.root}")
    return files[0]


def load_dump(text: str) -> dict[str, Any]:
    """Parse a dump, tolerating leading non-JSON (e.g. log lines).

    Raises:
        ValueError: If the text holds no JSON object.
    """
    start = text.find("{")
    raw = json.loads(text[start:] if start >= 0 else text)
    if not isinstance(raw, dict):
        raise ValueError("Device dump must be a JSON object")
    return raw


def parse_device_info(item: Any) -> DeviceInfo:
    if not isinstance(item, dict):
        raise TransportError("Device dump has no 'deviceInfo'")
    manufacturers = item.get("manufacturers") or []
    if isinstance(manufacturers, str):
        manufacturers = [manufacturers]
    return DeviceInfo(
        manufacturers=tuple(str(m) for m in manufacturers),
        model=str(item.get("model", "")),
        serial=str(item.get("serial", "")),
        name=str(item.get("name", "")),
    )


def parse_record(item: dict[str, Any]) -> RawRecord:
    """Convierte un ítem del volcado en RawRecord."""
    value = item.get("value")
    if value is None:
        raise ValueError(f"Record without value: {item!r}")
    return RawRecord(
        value=float(value),
        units=str(item.get("units", "mg/dL")),
        timestamp=parse_timestamp(item.get("timestamp"), item.get("epoch")),
        seq_num=int(item.get("seqNum", 0)),
        type=int(item.get("type", 0)),
    )


def parse_timestamp(ts_str: Any, epoch: Any) -> datetime:
    """Parse a device-local timestamp into a naive datetime.

    Accepts ISO-8601, ``YYYY/MM/DD HH:MM`` or a unix epoch.
    """
    if isinstance(ts_str, str) and ts_str.strip():
        text = ts_str.strip()
        try:
            return datetime.strptime(text, "%Y/%m/%d %H:%M")
        except ValueError:
            return date_parser.isoparse(text).replace(tzinfo=None)

    if epoch is not None:
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc).replace(tzinfo=None)

    raise ValueError("Missing timestamp and epoch")


def parse_snapshot(item: dict[str, Any]) -> RawSettingsSnapshot:
    """Map a receiver settings record (camelCase keys) to a snapshot."""
    try:
        system_seconds = int(item["systemSeconds"])
        system_time = date_parser.isoparse(str(item["systemTime"])).replace(tzinfo=None)
        display_offset = int(item["displayOffset"])
        internal_time = str(item["internalTime"])
        set_up_state = int(item["setUpState"])
        transmitter_id = transmitter_id_from_raw(item["transmitterId"])
    except KeyError as exc:
        raise ValueError(f"Settings record missing {exc.args[0]!r}") from exc

    return RawSettingsSnapshot(
        system_seconds=system_seconds,
        system_time=system_time,
        display_offset=display_offset,
        internal_time=internal_time,
        set_up_state=set_up_state,
        transmitter_id=transmitter_id,
        low_alarm_enabled=bool(item.get("lowAlarmEnabled", False)),
        low_alarm_value=item.get("lowAlarmValue"),
        low_alarm_snooze_ms=item.get("lowAlarmSnoozeMsec"),
        high_alarm_enabled=bool(item.get("highAlarmEnabled", False)),
        high_alarm_value=item.get("highAlarmValue"),
        high_alarm_snooze_ms=item.get("highAlarmSnoozeMsec"),
        fall_rate_enabled=bool(item.get("fallRateEnabled", False)),
        fall_rate_value=item.get("fallRateValue"),
        rise_rate_enabled=bool(item.get("riseRateEnabled", False)),
        rise_rate_value=item.get("riseRateValue"),
        out_of_range_enabled=bool(item.get("outOfRangeEnabled", False)),
        out_of_range_snooze_ms=item.get("outOfRangeSnoozeMsec"),
        language_name=item.get("languageName"),
        alarm_profile_name=item.get("alarmProfileName"),
        predictive_low_snooze=item.get("predictiveLowSnooze"),
        brightness_level=item.get("brightnessLevel"),
        sensor_code=item.get("sensorCode"),
        current_graph_height=item.get("currentGraphHeight"),
    )
