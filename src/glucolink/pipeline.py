"""Pipeline del driver: conexión, identificación, lectura, normalización y carga."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from glucolink.builder import RecordBuilder
from glucolink.errors import (
    ConnectionTimeoutError,
    DriverError,
    NoDataToUploadError,
    TransportError,
    UnsupportedDeviceError,
    UploadError,
)
from glucolink.logging_config import get_logger
from glucolink.model import (
    DeviceInfo,
    RawRecord,
    RawSettingsSnapshot,
    UploadEvent,
)
from glucolink.normalize import normalize_record
from glucolink.settings_changes import detect_settings_changes
from glucolink.timezone import (
    DEVICE_TIME_FORMAT,
    TimezoneOffsetResolver,
    utc_date_string,
)
from glucolink.transports.base import CgmTransport, Transport
from glucolink.upload import DEFAULT_SOURCE, ProgressSink, SessionManifest, UploadClient

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0


class PipelineState(Enum):
    DETECT = "detect"
    SETUP = "setup"
    CONNECT = "connect"
    IDENTIFY = "identify"
    FETCH = "fetch"
    NORMALIZE = "normalize"
    UPLOAD = "upload"
    DISCONNECT = "disconnect"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SessionContext:
    """State of one driver run, owned by the pipeline until the run ends.

    Device identity fields start empty and are filled in by the identify
    stage.
    """

    transport: Transport
    upload_client: UploadClient
    timezone: str
    group_id: str = ""
    version: str = ""
    bluetooth_id: str = ""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    builder: RecordBuilder = field(default_factory=RecordBuilder)
    device_tags: tuple[str, ...] = ()
    device_info: DeviceInfo | None = None
    device_id: str | None = None
    connected: bool = False
    resolver: TimezoneOffsetResolver = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = TimezoneOffsetResolver(self.timezone)


@dataclass
class RunData:
    """Payload handed from stage to stage."""

    device_model: str | None = None
    records: list[RawRecord] = field(default_factory=list)
    settings: list[RawSettingsSnapshot] = field(default_factory=list)
    post_records: list[UploadEvent] = field(default_factory=list)
    upload_result: Any = None
    uploaded: bool = False
    disconnected: bool = False
    cleaned: bool = False
    cleanup_error: Exception | None = None


@dataclass(frozen=True)
class PipelineResult:
    state: PipelineState
    data: RunData
    error: DriverError | None = None
    failed_stage: PipelineState | None = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE


Stage = Callable[[SessionContext, ProgressSink, RunData], Awaitable[RunData]]


def _ignore_progress(_: int) -> None:
    return None


class DriverPipeline:
    """Driver for Bluetooth LE blood glucose meters.

    Stages run strictly in order; the first failing stage ends the run and
    cleanup always runs last.
    """

    supported_prefix = "CareSens"
    device_tags: tuple[str, ...] = ("bgm",)
    event_type = "smbg"

    async def run(
        self, session: SessionContext, progress: ProgressSink = _ignore_progress
    ) -> PipelineResult:
        """Run every stage, then cleanup.

        Driver errors end the run in the FAILED state; any other exception
        propagates after cleanup.
        """
        session.device_tags = self.device_tags
        data = RunData()
        stages: list[tuple[PipelineState, Stage]] = [
            (PipelineState.DETECT, self.detect),
            (PipelineState.SETUP, self.setup),
            (PipelineState.CONNECT, self.connect),
            (PipelineState.IDENTIFY, self.identify),
            (PipelineState.FETCH, self.fetch),
            (PipelineState.NORMALIZE, self.normalize),
            (PipelineState.UPLOAD, self.upload),
            (PipelineState.DISCONNECT, self.disconnect),
        ]
        current = PipelineState.DETECT
        try:
            for current, stage in stages:
                logger.debug("Entering stage", stage=current.value)
                data = await stage(session, progress, data)
        except DriverError as exc:
            logger.error(
                "Driver run failed",
                stage=current.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return PipelineResult(
                state=PipelineState.FAILED,
                data=data,
                error=exc,
                failed_stage=current,
            )
        finally:
            data = await self.cleanup(session, progress, data)

        logger.info("Driver run finished", events=len(data.post_records))
        return PipelineResult(state=PipelineState.DONE, data=data)

    async def detect(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        # device presence is established by the host
        return data

    async def setup(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        progress(100)
        return data

    async def connect(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        try:
            await asyncio.wait_for(
                session.transport.connect(), timeout=session.connect_timeout
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise ConnectionTimeoutError(
                f"Device did not connect within {session.connect_timeout} seconds"
            ) from exc
        except OSError as exc:
            raise TransportError(f"Could not connect to device: {exc}") from exc
        session.connected = True
        logger.info("Connected to device")
        return data

    async def identify(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        """Check the device family and derive the device id."""
        progress(0)
        try:
            info = await session.transport.get_device_info()
        except OSError as exc:
            raise TransportError(f"Could not read device info: {exc}") from exc

        if not info.name.startswith(self.supported_prefix):
            raise UnsupportedDeviceError(
                f"We don't currently support this device: {info.name}"
            )

        manufacturers = ",".join(info.manufacturers)
        device_id = f"{manufacturers}-{info.model}-{session.bluetooth_id}"
        session.device_info = info
        session.device_id = device_id
        session.builder = session.builder.with_device_id(device_id)
        data.device_model = info.model
        logger.info("Identified device", device_id=device_id, model=info.model)
        return data

    async def fetch(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        try:
            data.records = await session.transport.fetch_all_records()
        except OSError as exc:
            raise TransportError(f"Could not fetch records: {exc}") from exc
        logger.info("Fetched records", count=len(data.records))
        return data

    async def normalize(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        progress(0)
        events = self.normalize_events(session, data)
        if not events:
            raise NoDataToUploadError("Device has no records to upload")
        data.post_records = events
        progress(100)
        return data

    def normalize_events(self, session: SessionContext, data: RunData) -> list[UploadEvent]:
        """Normalize fetched readings in fetch order, skipping excluded ones."""
        events: list[UploadEvent] = []
        for record in data.records:
            event = normalize_record(
                record, session.builder, session.resolver, self.event_type
            )
            if event is not None:
                events.append(event)
        return events

    def session_manifest(self, session: SessionContext) -> SessionManifest:
        info = session.device_info
        if info is None or session.device_id is None:
            raise UnsupportedDeviceError("Device was not identified")
        return SessionManifest(
            device_tags=session.device_tags,
            device_manufacturers=info.manufacturers,
            device_model=info.model,
            device_id=session.device_id,
            device_serial_number=info.serial,
            start=utc_date_string(),
            time_processing=session.resolver.type,
            tz_name=session.timezone,
            version=session.version,
        )

    async def upload(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        """Submit all normalized events in one session."""
        manifest = self.session_manifest(session)
        progress(0)
        try:
            result = await session.upload_client.submit(
                data.post_records, manifest, progress, session.group_id, DEFAULT_SOURCE
            )
        except Exception as exc:
            progress(100)
            raise UploadError(f"Upload failed: {exc}", payload=data) from exc
        progress(100)
        data.upload_result = result
        data.uploaded = True
        logger.info("Uploaded events", count=len(data.post_records))
        return data

    async def disconnect(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        # teardown happens in cleanup
        data.disconnected = True
        return data

    async def cleanup(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        """Release the transport if it was connected; never raises."""
        if session.connected:
            try:
                await session.transport.disconnect()
            except Exception as exc:
                logger.exception("Transport teardown failed")
                data.cleanup_error = exc
            else:
                session.connected = False
        progress(100)
        data.cleaned = True
        return data


class CgmDriverPipeline(DriverPipeline):
    """Driver for CGM receivers that also report their settings log.

    Besides glucose readings, the upload carries the clock changes and
    configuration changes found in the receiver settings.
    """

    supported_prefix = "Dexcom"
    device_tags = ("cgm",)
    event_type = "cbg"

    async def fetch(
        self, session: SessionContext, progress: ProgressSink, data: RunData
    ) -> RunData:
        data = await super().fetch(session, progress, data)
        transport = session.transport
        if not isinstance(transport, CgmTransport):
            raise TransportError("Transport does not provide receiver settings")
        try:
            data.settings = await transport.fetch_settings_snapshots()
        except OSError as exc:
            raise TransportError(f"Could not fetch settings: {exc}") from exc
        logger.info("Fetched settings", count=len(data.settings))
        return data

    def normalize_events(self, session: SessionContext, data: RunData) -> list[UploadEvent]:
        events = super().normalize_events(session, data)
        changes = detect_settings_changes(data.settings, session.builder)
        logger.info(
            "Detected settings changes",
            clock_changes=len(changes.clock_changes),
            config_changes=len(changes.config_changes),
        )
        derived: list[UploadEvent] = [*changes.clock_changes, *changes.config_changes]
        for event in derived:
            local_time = datetime.strptime(event.device_time, DEVICE_TIME_FORMAT)
            events.append(replace(event, utc=session.resolver.utc_info(local_time)))
        return events
