"""Transport interfaces used by the DFU protocol."""

from __future__ import annotations

from abc import ABC, abstractmethod
from uuid import UUID


class DfuTransport(ABC):
    """A connection to a DFU target that exchanges bytes with its characteristics."""

    @abstractmethod
    async def write(self, char: UUID, data: bytes) -> None:
        """Write ``data`` to ``char`` without waiting for a response."""

    @abstractmethod
    async def subscribe(self, char: UUID) -> None:
        """Subscribe to notifications from ``char``."""

    @abstractmethod
    async def request(self, char: UUID, data: bytes) -> bytes:
        """Write ``data`` to ``char`` with response, then return the notification it triggers."""


class DfuTransportManager(ABC):
    """Finds DFU targets and opens transports to them."""

    @abstractmethod
    async def connect(self, target: str) -> DfuTransport:
        """Connect to the target device by name or address."""