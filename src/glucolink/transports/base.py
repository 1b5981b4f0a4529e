"""Clases base para transportes hacia el dispositivo."""

from __future__ import annotations

from abc import ABC, abstractmethod

from glucolink.model import DeviceInfo, RawRecord, RawSettingsSnapshot


class Transport(ABC):
    """Point-to-point link to a device.

    The pipeline is the only user of a transport for the duration of a run.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the session with the device.

        Raises:
            TransportError: If the link cannot be established.
        """

    @abstractmethod
    async def get_device_info(self) -> DeviceInfo:
        """Query device identity."""

    @abstractmethod
    async def fetch_all_records(self) -> list[RawRecord]:
        """Stream every stored record and resolve once with the full batch."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear the link down. Safe to call more than once."""


class CgmTransport(Transport):
    """Transport for receivers that also keep a settings log."""

    @abstractmethod
    async def fetch_settings_snapshots(self) -> list[RawSettingsSnapshot]:
        """Read every stored settings record."""
