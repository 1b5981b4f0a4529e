"""Normalización de lecturas crudas a eventos de glucosa."""

from __future__ import annotations

from glucolink.builder import RecordBuilder
from glucolink.model import Annotation, GlucoseEvent, RawRecord
from glucolink.timezone import TimezoneOffsetResolver, format_device_time

HIGH_THRESHOLD = 600
LOW_THRESHOLD = 20
OUT_OF_RANGE_CODE = "bg/out-of-range"


def clamp_value(value: float) -> tuple[float, Annotation | None]:
    """Clamp a reading into the displayable range.

    Returns:
        The (possibly clamped) value and the annotation describing the clamp,
        or None when the value was in range.
    """
    if value > HIGH_THRESHOLD:
        high = Annotation(OUT_OF_RANGE_CODE, HIGH_THRESHOLD, "high")
        return float(HIGH_THRESHOLD + 1), high
    if value < LOW_THRESHOLD:
        low = Annotation(OUT_OF_RANGE_CODE, LOW_THRESHOLD, "low")
        return float(LOW_THRESHOLD - 1), low
    return value, None


def normalize_record(
    record: RawRecord,
    builder: RecordBuilder,
    resolver: TimezoneOffsetResolver,
    event_type: str = "smbg",
) -> GlucoseEvent | None:
    """Map one raw reading into a canonical glucose event.

    Control solution readings are not patient data and yield None.

    Args:
        record: Reading as fetched from the transport.
        builder: Run record builder (carries the device id).
        resolver: Timezone resolver for the run.
        event_type: ``smbg`` for meters, ``cbg`` for CGMs.

    Returns:
        The normalized event, or None if the record is excluded.
    """
    if record.is_control_solution:
        return None

    value, annotation = clamp_value(record.value)
    return builder.make_smbg(
        value=value,
        units=record.units,
        device_time=format_device_time(record.timestamp),
        annotations=(annotation,) if annotation else (),
        index=record.seq_num,
        utc=resolver.utc_info(record.timestamp),
        event_type=event_type,
    )
