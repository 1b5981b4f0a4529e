"""Construcción validada de registros canónicos."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from glucolink.errors import RecordValidationError
from glucolink.model import (
    Annotation,
    ClockChangeEvent,
    ConfigChangeEvent,
    GlucoseEvent,
    OutOfRangeAlerts,
    RateOfChangeAlerts,
    ThresholdAlert,
    UtcInfo,
)
from glucolink.timezone import DEVICE_TIME_FORMAT

GLUCOSE_TYPES = frozenset({"smbg", "cbg"})
UNITS = frozenset({"mg/dL", "mmol/L"})
TIME_CHANGE_AGENTS = frozenset({"manual", "automatic"})


@dataclass(frozen=True)
class RecordBuilder:
    """Factory for canonical records.

    Holds the defaults shared by every record of a run (the device id). Each
    ``make_*`` call validates a complete set of fields and returns an
    immutable record.
    """

    device_id: str | None = None

    def with_device_id(self, device_id: str) -> RecordBuilder:
        """Return a builder whose records carry ``device_id``."""
        return replace(self, device_id=device_id)

    def make_smbg(
        self,
        *,
        value: float,
        units: str,
        device_time: str,
        annotations: tuple[Annotation, ...] = (),
        index: int | None = None,
        utc: UtcInfo | None = None,
        event_type: str = "smbg",
    ) -> GlucoseEvent:
        """Build a glucose reading.

        Raises:
            RecordValidationError: If a field is missing or unsupported.
        """
        if event_type not in GLUCOSE_TYPES:
            raise RecordValidationError(f"Unsupported glucose type: {event_type!r}")
        _check_units(units)
        _check_device_time(device_time)
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise RecordValidationError(f"Glucose value must be numeric: {value!r}")
        if math.isnan(value):
            raise RecordValidationError("Glucose value is NaN")
        return GlucoseEvent(
            type=event_type,
            value=value,
            units=units,
            device_time=device_time,
            device_id=self.device_id,
            annotations=tuple(annotations),
            utc=utc,
            index=index,
        )

    def make_time_change(
        self,
        *,
        change_from: str,
        change_to: str,
        index: int,
        payload: Mapping[str, Any],
        agent: str = "manual",
    ) -> ClockChangeEvent:
        """Build a device clock change; its device time is the old time."""
        _check_device_time(change_from)
        _check_device_time(change_to)
        if agent not in TIME_CHANGE_AGENTS:
            raise RecordValidationError(f"Unsupported time change agent: {agent!r}")
        return ClockChangeEvent(
            change_from=change_from,
            change_to=change_to,
            agent=agent,
            device_time=change_from,
            index=index,
            payload=dict(payload),
            device_id=self.device_id,
        )

    def make_cgm_settings(
        self,
        *,
        device_time: str,
        units: str,
        transmitter_id: str,
        low_alerts: ThresholdAlert,
        high_alerts: ThresholdAlert,
        rate_of_change_alerts: RateOfChangeAlerts,
        out_of_range_alerts: OutOfRangeAlerts,
        index: int,
        payload: Mapping[str, Any],
    ) -> ConfigChangeEvent:
        """Build a CGM settings record."""
        _check_device_time(device_time)
        _check_units(units)
        if not transmitter_id:
            raise RecordValidationError("Missing transmitter id")
        return ConfigChangeEvent(
            device_time=device_time,
            units=units,
            transmitter_id=transmitter_id,
            low_alerts=low_alerts,
            high_alerts=high_alerts,
            rate_of_change_alerts=rate_of_change_alerts,
            out_of_range_alerts=out_of_range_alerts,
            index=index,
            payload=dict(payload),
            device_id=self.device_id,
        )


def _check_units(units: str) -> None:
    if units not in UNITS:
        raise RecordValidationError(f"Unsupported units: {units!r}")


def _check_device_time(device_time: str) -> None:
    if not device_time:
        raise RecordValidationError("Missing device time")
    try:
        datetime.strptime(device_time, DEVICE_TIME_FORMAT)
    except ValueError as exc:
        raise RecordValidationError(f"Invalid device time: {device_time!r}") from exc
