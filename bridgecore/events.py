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
Typed events published by the bridge service and an in-process bus to
deliver them to UI, logging or API collaborators.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .constants import ecu_info_name

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection states of the bridge service"""
    ERROR = -1
    NONE = 0
    CONNECTING = 1
    CONNECTED = 2


class TaskState(Enum):
    """Diagnostic tasks run on an open connection"""
    NONE = 0
    LOGGING = 2
    READ_VIN = 3
    CLEAR_DTC = 4
    GET_ECU_INFO = 5
    FLASH_CALIBRATION = 6


@dataclass(frozen=True)
class BridgeEvent:
    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": type(self).__name__}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.name
            elif isinstance(value, (bytes, bytearray)):
                value = bytes(value).hex()
            data[name] = value
        return data


@dataclass(frozen=True)
class StateChanged(BridgeEvent):
    state: ConnectionState
    device_name: Optional[str] = None
    error_code: Union[int, str, None] = None


@dataclass(frozen=True)
class TaskChanged(BridgeEvent):
    task: TaskState


@dataclass(frozen=True)
class DataRead(BridgeEvent):
    payload: bytes


@dataclass(frozen=True)
class VinRead(BridgeEvent):
    payload: bytes

    @property
    def vin(self) -> str:
        return self.payload.decode("ascii", errors="replace")


@dataclass(frozen=True)
class DtcRead(BridgeEvent):
    payload: bytes


@dataclass(frozen=True)
class EcuInfo(BridgeEvent):
    """Positive read-by-identifier response, UDS header included"""
    payload: bytes

    @property
    def did(self) -> bytes:
        return self.payload[1:3]

    @property
    def name(self) -> Optional[str]:
        return ecu_info_name(self.did)

    @property
    def value(self) -> bytes:
        return self.payload[3:]


@dataclass(frozen=True)
class LogProgress(BridgeEvent):
    count: int
    elapsed_ms: int
    result: int


@dataclass(frozen=True)
class LogWriteStateChanged(BridgeEvent):
    enabled: bool


EventCallback = Callable[[BridgeEvent], None]


class EventBus:
    """Fan-out of bridge events to subscribers"""

    def __init__(self):
        self._subscribers: List[EventCallback] = []
        self._lock = threading.RLock()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it"""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: BridgeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        logger.debug(f"Event: {event}")
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")


class EventQueue:
    """Subscriber that buffers events for polling consumers"""

    def __init__(self, bus: Optional[EventBus] = None):
        self._queue: "queue.Queue[BridgeEvent]" = queue.Queue()
        self._unsubscribe: Optional[Callable[[], None]] = None
        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self._unsubscribe = bus.subscribe(self._queue.put)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def get(self, timeout: Optional[float] = None) -> Optional[BridgeEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[BridgeEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def wait_for(self, predicate: Callable[[BridgeEvent], bool],
                 timeout: float = 5.0) -> Optional[BridgeEvent]:
        """Block until an event matching predicate arrives (others are dropped)"""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            event = self.get(timeout=remaining)
            if event is not None and predicate(event):
                return event


def event_message(event: BridgeEvent) -> Dict[str, Any]:
    """JSON-ready form of an event, with derived fields for VIN and ECU info"""
    message = event.to_dict()
    if isinstance(event, VinRead):
        message["vin"] = event.vin
    elif isinstance(event, EcuInfo):
        message["did"] = event.did.hex()
        message["name"] = event.name
        message["value"] = event.value.hex()
    message["timestamp"] = datetime.now().isoformat()
    return message
