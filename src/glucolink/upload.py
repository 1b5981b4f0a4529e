"""Contrato con la plataforma remota de carga."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from glucolink.model import UploadEvent

ProgressSink = Callable[[int], None]

DEFAULT_SOURCE = "dataservices"


@dataclass(frozen=True)
class SessionManifest:
    """Upload session metadata sent along with the events."""

    device_tags: tuple[str, ...]
    device_manufacturers: tuple[str, ...]
    device_model: str
    device_id: str
    device_serial_number: str
    start: str
    time_processing: str
    tz_name: str
    version: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "deviceTags": list(self.device_tags),
            "deviceManufacturers": list(self.device_manufacturers),
            "deviceModel": self.device_model,
            "deviceId": self.device_id,
            "deviceSerialNumber": self.device_serial_number,
            "start": self.start,
            "timeProcessing": self.time_processing,
            "tzName": self.tz_name,
            "version": self.version,
        }


class UploadClient(ABC):
    """Client for the remote data platform."""

    @abstractmethod
    async def submit(
        self,
        events: Sequence[UploadEvent],
        manifest: SessionManifest,
        progress: ProgressSink,
        group_id: str,
        source: str = DEFAULT_SOURCE,
    ) -> Any:
        """Submit every event of a run in one session.

        Either all events are accepted or the call raises.
        """
