"""Resumen diario de las lecturas normalizadas (count/min/max/avg)."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import pandas as pd

from glucolink.model import GlucoseEvent, UploadEvent
from glucolink.timezone import DEVICE_TIME_FORMAT

MMOL_TO_MG_DL = 18.01559

SUMMARY_COLUMNS = [
    "date",
    "glucose_count",
    "glucose_min",
    "glucose_max",
    "glucose_avg",
    "out_of_range_count",
]


def events_to_frame(events: Sequence[UploadEvent]) -> pd.DataFrame:
    """Convert glucose events to a DataFrame keyed by device time.

    Clock and settings events are ignored.
    """
    rows = []
    for event in events:
        if not isinstance(event, GlucoseEvent):
            continue
        device_time = datetime.strptime(event.device_time, DEVICE_TIME_FORMAT)
        mg_dl = event.value * MMOL_TO_MG_DL if event.units == "mmol/L" else event.value
        rows.append(
            {
                "device_time": device_time,
                "date": device_time.date(),
                "glucose_mg_dl": float(mg_dl),
                "out_of_range": bool(event.annotations),
            }
        )
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    return df.sort_values("device_time").reset_index(drop=True)


def daily_glucose_summary(glucose_events: pd.DataFrame) -> pd.DataFrame:
    """Aggregate glucose by day."""
    if glucose_events.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)
    g = glucose_events.groupby("date", as_index=False).agg(
        glucose_count=("glucose_mg_dl", "count"),
        glucose_min=("glucose_mg_dl", "min"),
        glucose_max=("glucose_mg_dl", "max"),
        glucose_avg=("glucose_mg_dl", "mean"),
        out_of_range_count=("out_of_range", "sum"),
    )
    g["glucose_avg"] = g["glucose_avg"].round(2)
    return g[SUMMARY_COLUMNS].sort_values("date").reset_index(drop=True)
