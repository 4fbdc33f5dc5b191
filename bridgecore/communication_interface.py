# ⚠️ DISCLAIMER
# This software communicates directly with live vehicle systems.
# You use this software entirely at your own risk.
#
# The developers, contributors, and any associated parties accept no liability for:
# - Damage to vehicles, ECUs, batteries, or electronics
# - Data loss, unintended resets, or corrupted configurations
# - Physical injury, legal consequences, or financial loss
#
# This tool is intended only for qualified professionals who
# understand the risks of direct OBD/CAN access.

"""
Bridge Communication Interface Module

Abstract link layer between the bridge service and a wireless adapter.

A link never calls back into the service directly. Every asynchronous
result (scan hit, connection change, service discovery, MTU, write
acknowledgment, notification data) is posted as a LinkMessage onto the
channel handed to attach(); the service drains that channel from a single
consumer thread.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .constants import GATT_SUCCESS


class CommunicationError(Exception):
    """Base exception for communication errors"""
    pass


class TransportError(CommunicationError):
    """Link establishment, discovery, MTU or characteristic I/O failure"""

    def __init__(self, message: str, status: Union[int, str, None] = None):
        super().__init__(message)
        self.status = status


class IdentityMismatch(CommunicationError):
    """Callback arrived for a link that is not the bound one"""
    pass


class WriteFault(CommunicationError):
    """Exception raised on the transmit path"""
    pass


class ReadFault(CommunicationError):
    """Exception raised while dispatching an inbound frame"""
    pass


@dataclass(frozen=True)
class AdapterDevice:
    """
    Remote adapter identity.

    link_id is stamped by the service on each connection attempt; messages
    are matched on address and link_id, so callbacks from an abandoned link
    to the same adapter do not compare equal to the bound one.
    """
    address: str
    name: str = field(default="", compare=False)
    rssi: Optional[int] = field(default=None, compare=False)
    link_id: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.name or '?'} ({self.address})"


@dataclass(frozen=True)
class LinkMessage:
    device: Optional[AdapterDevice]


@dataclass(frozen=True)
class ScanResult(LinkMessage):
    pass


@dataclass(frozen=True)
class ScanFailed(LinkMessage):
    error_code: Union[int, str] = "scan-failed"


@dataclass(frozen=True)
class LinkStateChanged(LinkMessage):
    status: Union[int, str] = GATT_SUCCESS
    connected: bool = False


@dataclass(frozen=True)
class ServicesDiscovered(LinkMessage):
    status: Union[int, str] = GATT_SUCCESS
    service_count: int = 0


@dataclass(frozen=True)
class MtuChanged(LinkMessage):
    mtu: int = 0
    status: Union[int, str] = GATT_SUCCESS


@dataclass(frozen=True)
class WriteAck(LinkMessage):
    status: Union[int, str] = GATT_SUCCESS


@dataclass(frozen=True)
class NotifyData(LinkMessage):
    data: bytes = b""


PostCallback = Callable[[LinkMessage], None]


class BaseLink(ABC):
    """Abstract base class for adapter links"""

    def __init__(self):
        self._post: Optional[PostCallback] = None

    def attach(self, post: PostCallback) -> None:
        """Set the channel every asynchronous result is posted to"""
        self._post = post

    def post(self, message: LinkMessage) -> None:
        if self._post is not None:
            self._post(message)

    @abstractmethod
    def start_scan(self, service_uuid: str) -> None:
        """Start scanning for adapters advertising service_uuid"""
        pass

    @abstractmethod
    def stop_scan(self) -> None:
        pass

    @abstractmethod
    def connect(self, device: AdapterDevice) -> None:
        """
        Open a link; completion arrives as LinkStateChanged.

        Every message about this link must carry this exact device object
        (link_id included) until close().
        """
        pass

    @abstractmethod
    def discover_services(self, device: AdapterDevice) -> None:
        pass

    @abstractmethod
    def request_mtu(self, device: AdapterDevice, mtu: int) -> None:
        pass

    @abstractmethod
    def request_priority(self, device: AdapterDevice) -> None:
        """Ask for the high priority (low latency) connection parameters"""
        pass

    @abstractmethod
    def enable_notifications(self, device: AdapterDevice) -> None:
        pass

    @abstractmethod
    def disable_notifications(self, device: AdapterDevice) -> None:
        pass

    @abstractmethod
    def write(self, device: AdapterDevice, data: bytes) -> None:
        """Fire-and-forget write; the acknowledgment arrives as WriteAck"""
        pass

    @abstractmethod
    def close(self, device: AdapterDevice) -> None:
        """Close the link to device; safe to call on an unknown device"""
        pass

    def shutdown(self) -> None:
        """Release backend resources (event loops, adapters)"""
        pass
