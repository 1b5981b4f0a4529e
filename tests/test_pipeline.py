"""Tests for the driver pipelines."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import pytest

from glucolink.errors import (
    ConnectionTimeoutError,
    NoDataToUploadError,
    TransportError,
    UnsupportedDeviceError,
    UploadError,
)
from glucolink.model import (
    ClockChangeEvent,
    ConfigChangeEvent,
    DeviceInfo,
    GlucoseEvent,
    PackedTransmitterId,
    RawRecord,
    RawSettingsSnapshot,
    UploadEvent,
)
from glucolink.pipeline import (
    CgmDriverPipeline,
    DriverPipeline,
    PipelineState,
    RunData,
    SessionContext,
)
from glucolink.transports.base import CgmTransport, Transport
from glucolink.upload import ProgressSink, SessionManifest, UploadClient

METER = DeviceInfo(
    manufacturers=("i-SENS",),
    model="CareSens Dual",
    serial="SN123",
    name="CareSens 0042",
)
RECEIVER = DeviceInfo(
    manufacturers=("Dexcom",),
    model="G4",
    serial="RX1",
    name="Dexcom G4 Receiver",
)
TS = datetime(2026, 1, 31, 8, 0)


def _reading(value: float, seq: int = 1, record_type: int = 0) -> RawRecord:
    return RawRecord(
        value=value,
        units="mg/dL",
        timestamp=TS + timedelta(minutes=seq),
        seq_num=seq,
        type=record_type,
    )


class _FakeTransport(Transport):
    def __init__(
        self,
        records: Sequence[RawRecord] = (),
        info: DeviceInfo = METER,
        connect_error: Exception | None = None,
        connect_delay: float = 0.0,
        disconnect_error: Exception | None = None,
    ) -> None:
        self.records = list(records)
        self.info = info
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.disconnect_error = disconnect_error
        self.calls: list[str] = []

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error:
            raise self.connect_error

    async def get_device_info(self) -> DeviceInfo:
        self.calls.append("info")
        return self.info

    async def fetch_all_records(self) -> list[RawRecord]:
        self.calls.append("fetch")
        return list(self.records)

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        if self.disconnect_error:
            raise self.disconnect_error


class _FakeCgmTransport(_FakeTransport, CgmTransport):
    def __init__(self, settings: Sequence[RawSettingsSnapshot] = (), **kwargs: Any) -> None:
        kwargs.setdefault("info", RECEIVER)
        super().__init__(**kwargs)
        self.settings = list(settings)

    async def fetch_settings_snapshots(self) -> list[RawSettingsSnapshot]:
        self.calls.append("settings")
        return list(self.settings)


class _FakeUploadClient(UploadClient):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.submissions: list[tuple[list[UploadEvent], SessionManifest, str, str]] = []

    async def submit(
        self,
        events: Sequence[UploadEvent],
        manifest: SessionManifest,
        progress: ProgressSink,
        group_id: str,
        source: str = "dataservices",
    ) -> dict[str, bool]:
        self.submissions.append((list(events), manifest, group_id, source))
        if self.error:
            raise self.error
        return {"accepted": True}


def _session(
    transport: Transport,
    upload: UploadClient | None = None,
    **kwargs: Any,
) -> SessionContext:
    return SessionContext(
        transport=transport,
        upload_client=upload or _FakeUploadClient(),
        timezone=kwargs.pop("timezone", "UTC"),
        group_id="group-1",
        version="0.1.0",
        bluetooth_id="bt-77",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_high_reading_is_clamped_and_uploaded_once() -> None:
    transport = _FakeTransport([_reading(650)])
    upload = _FakeUploadClient()
    session = _session(transport, upload)

    result = await DriverPipeline().run(session)

    assert result.ok
    assert result.state is PipelineState.DONE
    assert len(upload.submissions) == 1
    events, manifest, group_id, source = upload.submissions[0]
    assert len(events) == 1
    event = events[0]
    assert isinstance(event, GlucoseEvent)
    assert event.value == 601
    assert event.annotations[0].value == "high"
    assert event.annotations[0].threshold == 600
    assert group_id == "group-1"
    assert source == "dataservices"
    assert result.data.uploaded
    assert result.data.disconnected
    assert result.data.cleaned
    assert transport.calls == ["connect", "info", "fetch", "disconnect"]


@pytest.mark.asyncio
async def test_control_solution_only_fails_with_no_data_and_still_cleans_up() -> None:
    transport = _FakeTransport(
        [_reading(100, 1, record_type=10), _reading(90, 2, record_type=10)]
    )
    upload = _FakeUploadClient()

    result = await DriverPipeline().run(_session(transport, upload))

    assert result.state is PipelineState.FAILED
    assert result.failed_stage is PipelineState.NORMALIZE
    assert isinstance(result.error, NoDataToUploadError)
    assert not result.error.retryable
    assert upload.submissions == []
    assert result.data.cleaned
    assert transport.calls.count("disconnect") == 1


@pytest.mark.asyncio
async def test_manifest_and_device_id() -> None:
    upload = _FakeUploadClient()
    session = _session(_FakeTransport([_reading(100)]), upload, timezone="Europe/Madrid")

    await DriverPipeline().run(session)

    assert session.device_id == "i-SENS-CareSens Dual-bt-77"
    events, manifest, _, _ = upload.submissions[0]
    assert events[0].device_id == "i-SENS-CareSens Dual-bt-77"
    payload = manifest.to_payload()
    assert set(payload) == {
        "deviceTags",
        "deviceManufacturers",
        "deviceModel",
        "deviceId",
        "deviceSerialNumber",
        "start",
        "timeProcessing",
        "tzName",
        "version",
    }
    assert payload["deviceTags"] == ["bgm"]
    assert payload["deviceManufacturers"] == ["i-SENS"]
    assert payload["deviceModel"] == "CareSens Dual"
    assert payload["deviceSerialNumber"] == "SN123"
    assert payload["timeProcessing"] == "across-the-board-timezone"
    assert payload["tzName"] == "Europe/Madrid"
    assert payload["version"] == "0.1.0"
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", payload["start"])


@pytest.mark.asyncio
async def test_events_keep_fetch_order() -> None:
    records = [_reading(110, 3), _reading(120, 1), _reading(130, 2)]
    upload = _FakeUploadClient()

    result = await DriverPipeline().run(_session(_FakeTransport(records), upload))

    assert [e.value for e in result.data.post_records] == [110, 120, 130]
    assert [e.index for e in result.data.post_records] == [3, 1, 2]


@pytest.mark.asyncio
async def test_unsupported_device_fails_identify() -> None:
    other = DeviceInfo(("Acme",), "X1", "1", "Acme Meter")
    transport = _FakeTransport([_reading(100)], info=other)

    result = await DriverPipeline().run(_session(transport))

    assert result.failed_stage is PipelineState.IDENTIFY
    assert isinstance(result.error, UnsupportedDeviceError)
    assert "fetch" not in transport.calls
    assert transport.calls[-1] == "disconnect"


@pytest.mark.asyncio
async def test_connect_timeout_skips_transport_teardown() -> None:
    transport = _FakeTransport([_reading(100)], connect_delay=1.0)
    session = _session(transport, connect_timeout=0.01)

    result = await DriverPipeline().run(session)

    assert result.failed_stage is PipelineState.CONNECT
    assert isinstance(result.error, ConnectionTimeoutError)
    assert isinstance(result.error, TransportError)
    assert "disconnect" not in transport.calls
    assert result.data.cleaned
    assert not session.connected


@pytest.mark.asyncio
async def test_transport_error_on_connect() -> None:
    transport = _FakeTransport(connect_error=TransportError("radio off"))

    result = await DriverPipeline().run(_session(transport))

    assert result.failed_stage is PipelineState.CONNECT
    assert str(result.error) == "radio off"


@pytest.mark.asyncio
async def test_os_error_on_connect_becomes_transport_error() -> None:
    transport = _FakeTransport(connect_error=OSError("adapter gone"))

    result = await DriverPipeline().run(_session(transport))

    assert isinstance(result.error, TransportError)
    assert isinstance(result.error.__cause__, OSError)


@pytest.mark.asyncio
async def test_upload_error_keeps_payload() -> None:
    transport = _FakeTransport([_reading(100), _reading(700, 2)])
    upload = _FakeUploadClient(error=RuntimeError("503 Service Unavailable"))

    result = await DriverPipeline().run(_session(transport, upload))

    assert result.failed_stage is PipelineState.UPLOAD
    assert isinstance(result.error, UploadError)
    assert "503" in str(result.error)
    assert result.error.payload is result.data
    assert [e.value for e in result.data.post_records] == [100, 601]
    assert not result.data.uploaded
    assert not result.data.disconnected
    assert result.data.cleaned
    assert transport.calls[-1] == "disconnect"


@pytest.mark.asyncio
async def test_progress_is_reported() -> None:
    progress: list[int] = []

    await DriverPipeline().run(_session(_FakeTransport([_reading(100)])), progress.append)

    assert progress[0] == 100  # setup
    assert progress[-1] == 100  # cleanup
    assert progress.count(0) >= 2


@pytest.mark.asyncio
async def test_teardown_failure_does_not_fail_the_run() -> None:
    transport = _FakeTransport([_reading(100)], disconnect_error=OSError("busy"))

    result = await DriverPipeline().run(_session(transport))

    assert result.ok
    assert isinstance(result.data.cleanup_error, OSError)
    assert result.data.cleaned


@pytest.mark.asyncio
async def test_unexpected_error_propagates_after_cleanup() -> None:
    class _Broken(_FakeTransport):
        async def fetch_all_records(self) -> list[RawRecord]:
            raise KeyError("bug")

    transport = _Broken([_reading(100)])
    with pytest.raises(KeyError):
        await DriverPipeline().run(_session(transport))
    assert transport.calls.count("disconnect") == 1


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown timezone"):
        _session(_FakeTransport(), timezone="Nowhere/Atlantis")


def _settings(seconds: int, offset: int) -> RawSettingsSnapshot:
    return RawSettingsSnapshot(
        system_seconds=seconds,
        system_time=datetime(2026, 1, 1) + timedelta(seconds=seconds),
        display_offset=offset,
        internal_time="2026-01-01T00:00:00",
        set_up_state=5,
        transmitter_id=PackedTransmitterId(1117317),
        low_alarm_enabled=True,
        low_alarm_value=70,
    )


@pytest.mark.asyncio
async def test_cgm_pipeline_uploads_readings_and_settings_changes() -> None:
    transport = _FakeCgmTransport(
        settings=[_settings(10, 0), _settings(20, 0), _settings(30, 60)],
        records=[_reading(100)],
    )
    upload = _FakeUploadClient()

    result = await CgmDriverPipeline().run(
        _session(transport, upload, timezone="America/New_York")
    )

    assert result.ok
    events, manifest, _, _ = upload.submissions[0]
    assert manifest.device_tags == ("cgm",)
    assert [type(e) for e in events] == [GlucoseEvent, ClockChangeEvent, ConfigChangeEvent]
    assert events[0].to_payload()["type"] == "cbg"
    clock = events[1]
    assert isinstance(clock, ClockChangeEvent)
    assert clock.change_to == "2026-01-01T00:01:30"
    assert clock.utc is not None
    assert clock.utc.timezone_offset == -300
    config = events[2]
    assert isinstance(config, ConfigChangeEvent)
    assert config.transmitter_id == "12345"
    assert config.device_id == "Dexcom-G4-bt-77"
    assert "settings" in transport.calls


@pytest.mark.asyncio
async def test_cgm_pipeline_needs_settings_capable_transport() -> None:
    transport = _FakeTransport([_reading(100)], info=RECEIVER)

    result = await CgmDriverPipeline().run(_session(transport))

    assert result.failed_stage is PipelineState.FETCH
    assert isinstance(result.error, TransportError)


@pytest.mark.asyncio
async def test_stages_can_be_driven_one_by_one() -> None:
    transport = _FakeTransport([_reading(100)])
    session = _session(transport)
    pipeline = DriverPipeline()
    progress: list[int] = []

    data = RunData()
    for stage in (pipeline.connect, pipeline.identify, pipeline.fetch, pipeline.normalize):
        data = await stage(session, progress.append, data)
    assert session.connected
    assert len(data.post_records) == 1

    data = await pipeline.cleanup(session, progress.append, data)
    assert not session.connected
    assert transport.calls == ["connect", "info", "fetch", "disconnect"]


@pytest.mark.asyncio
async def test_builtin_timeout_on_connect_is_a_connection_timeout() -> None:
    transport = _FakeTransport(connect_error=TimeoutError("no advertisement"))

    result = await DriverPipeline().run(_session(transport))

    assert result.failed_stage is PipelineState.CONNECT
    assert isinstance(result.error, ConnectionTimeoutError)
