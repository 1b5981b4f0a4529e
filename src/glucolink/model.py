"""Modelos tipados para lecturas crudas, eventos canónicos y configuración CGM."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

CONTROL_SOLUTION_TYPE = 10


@dataclass(frozen=True)
class DeviceInfo:
    """Identity reported by the device over the transport."""

    manufacturers: tuple[str, ...]
    model: str
    serial: str
    name: str


@dataclass(frozen=True)
class RawRecord:
    """One device-native reading (timestamp is device-local, naive)."""

    value: float
    units: str
    timestamp: datetime
    seq_num: int
    type: int = 0

    @property
    def is_control_solution(self) -> bool:
        return self.type == CONTROL_SOLUTION_TYPE


@dataclass(frozen=True)
class PackedTransmitterId:
    """Transmitter id packed by the receiver into an unsigned integer."""

    value: int


@dataclass(frozen=True)
class DecodedTransmitterId:
    """Transmitter id already reported in human-readable form."""

    value: str


TransmitterId = PackedTransmitterId | DecodedTransmitterId


@dataclass(frozen=True)
class RawSettingsSnapshot:
    """Receiver configuration record as read from the device."""

    system_seconds: int
    system_time: datetime
    display_offset: int
    internal_time: str
    set_up_state: int
    transmitter_id: TransmitterId
    low_alarm_enabled: bool = False
    low_alarm_value: int | None = None
    low_alarm_snooze_ms: int | None = None
    high_alarm_enabled: bool = False
    high_alarm_value: int | None = None
    high_alarm_snooze_ms: int | None = None
    fall_rate_enabled: bool = False
    fall_rate_value: float | None = None
    rise_rate_enabled: bool = False
    rise_rate_value: float | None = None
    out_of_range_enabled: bool = False
    out_of_range_snooze_ms: int | None = None
    language_name: str | None = None
    alarm_profile_name: str | None = None
    predictive_low_snooze: int | None = None
    brightness_level: int | None = None
    sensor_code: str | None = None
    current_graph_height: int | None = None


@dataclass(frozen=True)
class Annotation:
    """Annotation attached to a clamped reading."""

    code: str
    threshold: int
    value: str

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "threshold": self.threshold, "value": self.value}


@dataclass(frozen=True)
class UtcInfo:
    """UTC placement of a device time."""

    time: str
    timezone_offset: int
    conversion_offset: int = 0
    clock_drift_offset: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "timezoneOffset": self.timezone_offset,
            "conversionOffset": self.conversion_offset,
            "clockDriftOffset": self.clock_drift_offset,
        }


def _common_payload(
    device_time: str, device_id: str | None, utc: UtcInfo | None
) -> dict[str, Any]:
    out: dict[str, Any] = {"deviceTime": device_time}
    if device_id is not None:
        out["deviceId"] = device_id
    if utc is not None:
        out.update(utc.to_payload())
    return out


@dataclass(frozen=True)
class GlucoseEvent:
    """Normalized glucose reading ready for upload.

    ``index`` keeps the source sequence number for ordering only and is never
    serialized.
    """

    type: str
    value: float
    units: str
    device_time: str
    device_id: str | None = None
    annotations: tuple[Annotation, ...] = ()
    utc: UtcInfo | None = None
    index: int | None = None

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": self.type,
            "value": self.value,
            "units": self.units,
            **_common_payload(self.device_time, self.device_id, self.utc),
        }
        if self.annotations:
            out["annotations"] = [a.to_payload() for a in self.annotations]
        return out


@dataclass(frozen=True)
class ClockChangeEvent:
    """Detected adjustment of the device display clock."""

    change_from: str
    change_to: str
    agent: str
    device_time: str
    index: int
    payload: dict[str, Any] = field(default_factory=dict)
    device_id: str | None = None
    utc: UtcInfo | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "deviceEvent",
            "subType": "timeChange",
            "change": {
                "from": self.change_from,
                "to": self.change_to,
                "agent": self.agent,
            },
            **_common_payload(self.device_time, self.device_id, self.utc),
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class ThresholdAlert:
    """Low or high glucose alert group."""

    enabled: bool
    level: int | None
    snooze: int | None

    def to_payload(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "level": self.level, "snooze": self.snooze}


@dataclass(frozen=True)
class RateAlert:
    enabled: bool
    rate: float | None

    def to_payload(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "rate": self.rate}


@dataclass(frozen=True)
class RateOfChangeAlerts:
    fall_rate: RateAlert
    rise_rate: RateAlert

    def to_payload(self) -> dict[str, Any]:
        return {
            "fallRate": self.fall_rate.to_payload(),
            "riseRate": self.rise_rate.to_payload(),
        }


@dataclass(frozen=True)
class OutOfRangeAlerts:
    """Signal-loss alert group."""

    enabled: bool
    snooze: int | None

    def to_payload(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "snooze": self.snooze}


@dataclass(frozen=True)
class ConfigChangeEvent:
    """One distinct CGM alert configuration state."""

    device_time: str
    units: str
    transmitter_id: str
    low_alerts: ThresholdAlert
    high_alerts: ThresholdAlert
    rate_of_change_alerts: RateOfChangeAlerts
    out_of_range_alerts: OutOfRangeAlerts
    index: int
    predictive_alerts: Any = None
    calibration_alerts: Any = None
    payload: dict[str, Any] = field(default_factory=dict)
    device_id: str | None = None
    utc: UtcInfo | None = None

    def comparable_fields(self) -> tuple[Any, ...]:
        """Fields that decide whether two snapshots are the same configuration."""
        return (
            self.transmitter_id,
            self.units,
            self.low_alerts,
            self.high_alerts,
            self.rate_of_change_alerts,
            self.out_of_range_alerts,
            self.predictive_alerts,
            self.calibration_alerts,
        )

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": "cgmSettings",
            "units": self.units,
            "transmitterId": self.transmitter_id,
            "lowAlerts": self.low_alerts.to_payload(),
            "highAlerts": self.high_alerts.to_payload(),
            "rateOfChangeAlerts": self.rate_of_change_alerts.to_payload(),
            "outOfRangeAlerts": self.out_of_range_alerts.to_payload(),
            **_common_payload(self.device_time, self.device_id, self.utc),
            "payload": dict(self.payload),
        }
        if self.predictive_alerts is not None:
            out["predictiveAlerts"] = self.predictive_alerts
        if self.calibration_alerts is not None:
            out["calibrationAlerts"] = self.calibration_alerts
        return out


UploadEvent = GlucoseEvent | ClockChangeEvent | ConfigChangeEvent
