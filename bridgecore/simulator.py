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
BLE_TO_ISOTP Simulator

Simulates the bridge adapter for testing without real hardware.

Features:
- Advertises as BLE_TO_ISOTP and accepts connects
- Reports services and MTU, acknowledges every write
- Answers VIN, ECU info, clear DTC and logging requests
- Persist list: PER_ADD / PER_ENABLE / PER_CLEAR like the adapter
- Failure injection: not discoverable, MTU failure, held write acks

Usage:
    link = SimulatedLink(vin="WVWZZZ1KZAW000001")
    service = BridgeService(link)
    service.start_service()
    service.connect()
"""

import logging
import threading
from typing import Dict, List, Optional

from .communication_interface import (
    AdapterDevice, BaseLink, LinkStateChanged, MtuChanged, NotifyData,
    ScanResult, ServicesDiscovered, TransportError, WriteAck,
)
from .constants import (
    BLE_DEVICE_NAME, BLE_GATT_MTU_SIZE, BLE_HEADER_RX,
    ECU_INFO_LIST, GATT_SUCCESS, UDS_CLEAR_DTC, UDS_READ_BY_ID,
    UDS_READ_BY_ID_POSITIVE, VIN_DID, CommandFlag,
)
from .frame_codec import Frame, encode, split_concatenated

logger = logging.getLogger(__name__)

DEFAULT_VIN = "WVWZZZ1KZAW000001"

# GATT_ERROR as reported by Android for a failed MTU exchange
SIM_GATT_ERROR = 133

_NEGATIVE_RESPONSE = 0x7F
_REQUEST_OUT_OF_RANGE = 0x31


def _default_ecu_values(vin: str) -> Dict[bytes, bytes]:
    values = {did: f"SIM-{name[:12]}".encode("ascii") for name, did in ECU_INFO_LIST.items()}
    values[VIN_DID] = vin.encode("ascii")
    values[ECU_INFO_LIST["Vehicle Speed"]] = bytes([0x00])
    return values


class SimulatedLink(BaseLink):
    """In-memory adapter; every result is posted synchronously"""

    def __init__(self, vin: str = DEFAULT_VIN,
                 device: Optional[AdapterDevice] = None,
                 ecu_values: Optional[Dict[bytes, bytes]] = None,
                 discoverable: bool = True,
                 fail_mtu: bool = False,
                 hold_acks: bool = False,
                 respond: bool = True,
                 persist_period: Optional[float] = None):
        super().__init__()
        self.vin = vin
        self.device = device or AdapterDevice("SI:MU:LA:TE:D0:01", BLE_DEVICE_NAME, -42)
        self.ecu_values = ecu_values if ecu_values is not None else _default_ecu_values(vin)

        # failure injection
        self.discoverable = discoverable
        self.fail_mtu = fail_mtu
        self.hold_acks = hold_acks
        self.respond = respond

        self.scanning = False
        self.connected = False
        self.notifying = False
        self.writes: List[bytes] = []
        self.closed: List[AdapterDevice] = []
        self._held_acks: List[AdapterDevice] = []
        # device object of the open link, as handed to connect()
        self._bound: Optional[AdapterDevice] = None

        # adapter persist mode
        self.persist_period = persist_period
        self._persist: List[Frame] = []
        self._persist_enabled = False
        self._persist_thread: Optional[threading.Thread] = None
        self._persist_stop = threading.Event()
        self._lock = threading.Lock()

    # ---- scanning / connection ----

    def start_scan(self, service_uuid: str) -> None:
        self.scanning = True
        logger.debug(f"Simulated scan for {service_uuid}")
        if self.discoverable:
            self.post(ScanResult(self.device))

    def stop_scan(self) -> None:
        self.scanning = False

    def connect(self, device: AdapterDevice) -> None:
        if device.address != self.device.address:
            self.post(LinkStateChanged(device, status=SIM_GATT_ERROR, connected=False))
            return
        self._bound = device
        self.connected = True
        self.post(LinkStateChanged(device, status=GATT_SUCCESS, connected=True))

    def discover_services(self, device: AdapterDevice) -> None:
        self.post(ServicesDiscovered(device, status=GATT_SUCCESS, service_count=3))

    def request_mtu(self, device: AdapterDevice, mtu: int) -> None:
        if self.fail_mtu:
            self.post(MtuChanged(device, mtu=23, status=SIM_GATT_ERROR))
        else:
            self.post(MtuChanged(device, mtu=min(mtu, BLE_GATT_MTU_SIZE), status=GATT_SUCCESS))

    def request_priority(self, device: AdapterDevice) -> None:
        logger.debug("Simulated connection priority: high")

    def enable_notifications(self, device: AdapterDevice) -> None:
        self.notifying = True

    def disable_notifications(self, device: AdapterDevice) -> None:
        if device == self._bound:
            self.notifying = False

    def close(self, device: AdapterDevice) -> None:
        self.closed.append(device)
        if device == self._bound:
            self._bound = None
            self.connected = False
            self.notifying = False
            self._stop_persist()

    def shutdown(self) -> None:
        self._stop_persist()

    def _link_device(self) -> AdapterDevice:
        return self._bound or self.device

    # ---- test hooks ----

    def drop_link(self) -> None:
        """Simulate the adapter going out of range"""
        device = self._link_device()
        self.connected = False
        self._bound = None
        self._stop_persist()
        self.post(LinkStateChanged(device, status=GATT_SUCCESS, connected=False))

    def inject(self, data: bytes, device: Optional[AdapterDevice] = None) -> None:
        """Post raw notification bytes as if received from the adapter"""
        self.post(NotifyData(device or self._link_device(), bytes(data)))

    def release_acks(self) -> int:
        held, self._held_acks = self._held_acks, []
        for device in held:
            self.post(WriteAck(device, status=GATT_SUCCESS))
        return len(held)

    # ---- data ----

    def write(self, device: AdapterDevice, data: bytes) -> None:
        if not self.connected or device != self._bound:
            raise TransportError(f"Simulated adapter not connected: {device}", status="not-connected")

        data = bytes(data)
        self.writes.append(data)

        if self.hold_acks:
            self._held_acks.append(device)
        else:
            self.post(WriteAck(device, status=GATT_SUCCESS))

        if not self.respond:
            return
        responses = [r for frame in split_concatenated(data) for r in self._handle(frame)]
        if responses:
            self.post(NotifyData(device, b"".join(encode(r) for r in responses)))

    def _handle(self, frame: Frame) -> List[Frame]:
        if frame.flags & CommandFlag.SETTINGS:
            logger.debug(f"Simulated setting {frame.flags & 0x3F}: {frame.payload.hex()}")
            return []

        if frame.flags & CommandFlag.PER_CLEAR:
            with self._lock:
                self._persist.clear()
                self._persist_enabled = False
            self._stop_persist()

        if frame.flags & CommandFlag.PER_ADD:
            with self._lock:
                self._persist.append(frame)
            response = [self._answer(frame)]
            if frame.flags & CommandFlag.PER_ENABLE:
                with self._lock:
                    self._persist_enabled = True
                self._start_persist()
            return response

        if not frame.payload:
            return []
        return [self._answer(frame)]

    def _answer(self, frame: Frame) -> Frame:
        payload = frame.payload
        service = payload[0] if payload else 0

        if service == UDS_READ_BY_ID:
            dids = [payload[i:i + 2] for i in range(1, len(payload) - 1, 2)]
            body = bytearray([UDS_READ_BY_ID_POSITIVE])
            for did in dids:
                if did not in self.ecu_values:
                    return self._negative(frame, service)
                body += did + self.ecu_values[did]
            return Frame(rx_id=frame.rx_id, tx_id=frame.tx_id, payload=bytes(body))

        if service == UDS_CLEAR_DTC:
            return Frame(rx_id=BLE_HEADER_RX, tx_id=frame.tx_id, payload=bytes([UDS_CLEAR_DTC + 0x40]))

        return self._negative(frame, service)

    def _negative(self, frame: Frame, service: int) -> Frame:
        return Frame(rx_id=frame.rx_id, tx_id=frame.tx_id,
                     payload=bytes([_NEGATIVE_RESPONSE, service, _REQUEST_OUT_OF_RANGE]))

    # ---- persist mode ----

    def emit_persist(self) -> int:
        """Answer every persisted request once, returning the frame count"""
        with self._lock:
            if not self._persist_enabled or not self.connected:
                return 0
            requests = list(self._persist)

        responses = [self._answer(request) for request in requests]

        if responses:
            self.post(NotifyData(self._link_device(), b"".join(encode(r) for r in responses)))
        return len(responses)

    def _start_persist(self):
        if self.persist_period is None:
            return
        if self._persist_thread is not None and self._persist_thread.is_alive():
            return
        self._persist_stop.clear()
        self._persist_thread = threading.Thread(target=self._persist_loop, name="SimulatedPersist", daemon=True)
        self._persist_thread.start()

    def _stop_persist(self):
        self._persist_stop.set()

    def _persist_loop(self):
        while not self._persist_stop.wait(self.persist_period):
            self.emit_persist()

    @property
    def persisting(self) -> bool:
        with self._lock:
            return self._persist_enabled

