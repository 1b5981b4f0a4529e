"""Detección de cambios de hora y de configuración en un receptor CGM.

The receiver keeps a log of its configuration records. Walking them in
chronological order yields two derived streams:

- clock changes, whenever the display offset between system time and the
  time shown to the user moves;
- configuration changes, one per distinct alert configuration once the
  receiver is fully set up.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from glucolink.builder import RecordBuilder
from glucolink.model import (
    ClockChangeEvent,
    ConfigChangeEvent,
    OutOfRangeAlerts,
    RateAlert,
    RateOfChangeAlerts,
    RawSettingsSnapshot,
    ThresholdAlert,
)
from glucolink.timezone import format_device_time
from glucolink.transmitter import decode_transmitter_id

FACTORY_YEAR = "2009"
SET_UP_COMPLETE = 5
UNPROVISIONED_TRANSMITTER_IDS = frozenset({"60000", "400000", "888888"})
SETTINGS_UNITS = "mg/dL"


@dataclass(frozen=True)
class SettingsChanges:
    """Result of scanning a receiver's settings log."""

    clock_changes: list[ClockChangeEvent] = field(default_factory=list)
    config_changes: list[ConfigChangeEvent] = field(default_factory=list)


def detect_settings_changes(
    snapshots: Iterable[RawSettingsSnapshot],
    builder: RecordBuilder,
) -> SettingsChanges:
    """Derive clock changes and configuration changes from settings snapshots.

    Args:
        snapshots: Settings records in any order.
        builder: Run record builder.

    Returns:
        Both streams in chronological order.
    """
    ordered = sorted(snapshots, key=lambda s: s.system_seconds)
    usable = [s for s in ordered if not s.internal_time.startswith(FACTORY_YEAR)]

    return SettingsChanges(
        clock_changes=_clock_changes(usable, builder),
        config_changes=_dedupe(
            [
                _config_event(s, builder)
                for s in usable
                if _is_provisioned(s)
            ]
        ),
    )


def _clock_changes(
    snapshots: list[RawSettingsSnapshot], builder: RecordBuilder
) -> list[ClockChangeEvent]:
    changes: list[ClockChangeEvent] = []
    last_offset: int | None = None
    for snap in snapshots:
        if snap.display_offset != last_offset:
            old_time = snap.system_time + timedelta(seconds=last_offset or 0)
            new_time = snap.system_time + timedelta(seconds=snap.display_offset)
            changes.append(
                builder.make_time_change(
                    change_from=format_device_time(old_time),
                    change_to=format_device_time(new_time),
                    index=snap.system_seconds,
                    payload={
                        "systemSeconds": snap.system_seconds,
                        "oldDisplayOffset": last_offset,
                        "newDisplayOffset": snap.display_offset,
                    },
                )
            )
        last_offset = snap.display_offset

    # The first entry compares against no offset at all.
    return changes[1:]


def _is_provisioned(snap: RawSettingsSnapshot) -> bool:
    if snap.set_up_state < SET_UP_COMPLETE:
        return False
    return decode_transmitter_id(snap.transmitter_id) not in UNPROVISIONED_TRANSMITTER_IDS


def _config_event(snap: RawSettingsSnapshot, builder: RecordBuilder) -> ConfigChangeEvent:
    payload: dict[str, Any] = {
        "language": snap.language_name,
        "alarmProfile": snap.alarm_profile_name,
        "internalTime": snap.internal_time,
    }
    if snap.predictive_low_snooze:
        payload["predictiveLowSnooze"] = snap.predictive_low_snooze
        payload["brightnessLevel"] = snap.brightness_level
        payload["sensorCode"] = snap.sensor_code
    if snap.current_graph_height:
        # only reported by receivers sold outside the US
        payload["graphHeight"] = snap.current_graph_height

    fall_rate = -snap.fall_rate_value if snap.fall_rate_value is not None else None
    display_time = snap.system_time + timedelta(seconds=snap.display_offset)
    return builder.make_cgm_settings(
        device_time=format_device_time(display_time),
        units=SETTINGS_UNITS,
        transmitter_id=decode_transmitter_id(snap.transmitter_id),
        low_alerts=ThresholdAlert(
            enabled=snap.low_alarm_enabled,
            level=snap.low_alarm_value,
            snooze=snap.low_alarm_snooze_ms,
        ),
        high_alerts=ThresholdAlert(
            enabled=snap.high_alarm_enabled,
            level=snap.high_alarm_value,
            snooze=snap.high_alarm_snooze_ms,
        ),
        rate_of_change_alerts=RateOfChangeAlerts(
            fall_rate=RateAlert(enabled=snap.fall_rate_enabled, rate=fall_rate),
            rise_rate=RateAlert(enabled=snap.rise_rate_enabled, rate=snap.rise_rate_value),
        ),
        out_of_range_alerts=OutOfRangeAlerts(
            enabled=snap.out_of_range_enabled,
            snooze=snap.out_of_range_snooze_ms,
        ),
        index=snap.system_seconds,
        payload=payload,
    )


def _dedupe(events: list[ConfigChangeEvent]) -> list[ConfigChangeEvent]:
    """Keep an event only when it differs from the one right before it."""
    out: list[ConfigChangeEvent] = []
    previous: tuple[Any, ...] | None = None
    for event in events:
        current = event.comparable_fields()
        if current != previous:
            out.append(event)
        previous = current
    return out
