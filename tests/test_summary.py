from __future__ import annotations

from datetime import date

import pandas as pd

from glucolink.model import Annotation, ClockChangeEvent, GlucoseEvent
from glucolink.summary import SUMMARY_COLUMNS, daily_glucose_summary, events_to_frame


def _glucose(
    value: float, device_time: str, units: str = "mg/dL", *, annotated: bool = False
) -> GlucoseEvent:
    annotations = (Annotation("bg/out-of-range", 600, "high"),) if annotated else ()
    return GlucoseEvent(
        type="smbg",
        value=value,
        units=units,
        device_time=device_time,
        annotations=annotations,
    )


def test_events_to_frame_empty() -> None:
    assert events_to_frame([]).empty


def test_events_to_frame_orders_and_skips_non_glucose_events() -> None:
    events = [
        _glucose(110, "2025-12-16T08:30:00"),
        ClockChangeEvent(
            change_from="2025-12-15T09:00:00",
            change_to="2025-12-15T10:00:00",
            agent="manual",
            device_time="2025-12-15T09:00:00",
            index=1,
        ),
        _glucose(100, "2025-12-15T07:15:00"),
    ]
    df = events_to_frame(events)
    assert len(df) == 2
    assert list(df["date"]) == [date(2025, 12, 15), date(2025, 12, 16)]
    assert list(df["glucose_mg_dl"]) == [100.0, 110.0]


def test_events_to_frame_converts_mmol() -> None:
    df = events_to_frame([_glucose(5.5, "2025-12-15T07:15:00", "mmol/L")])
    assert round(df.iloc[0]["glucose_mg_dl"], 2) == 99.09


def test_daily_glucose_summary_empty() -> None:
    out = daily_glucose_summary(pd.DataFrame())
    assert list(out.columns) == SUMMARY_COLUMNS
    assert out.empty


def test_daily_glucose_summary_aggregates_by_day() -> None:
    df = events_to_frame(
        [
            _glucose(100, "2025-12-15T07:00:00"),
            _glucose(601, "2025-12-15T12:00:00", annotated=True),
            _glucose(115, "2025-12-15T20:00:00"),
            _glucose(90, "2025-12-16T07:00:00"),
        ]
    )
    out = daily_glucose_summary(df)

    assert list(out["date"]) == [date(2025, 12, 15), date(2025, 12, 16)]
    first = out.iloc[0]
    assert first["glucose_count"] == 3
    assert first["glucose_min"] == 100.0
    assert first["glucose_max"] == 601.0
    assert first["glucose_avg"] == 272.0
    assert first["out_of_range_count"] == 1
    assert out.iloc[1]["out_of_range_count"] == 0
