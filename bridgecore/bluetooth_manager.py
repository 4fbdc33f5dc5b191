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
Bluetooth Manager Module

bleak backed GATT link to the BLE_TO_ISOTP adapter. Open links are keyed by
the device object the service connected with, link_id included, so calls
and callbacks for an abandoned link never reach its successor.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Coroutine, Dict, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .communication_interface import (
    AdapterDevice, BaseLink, LinkStateChanged, MtuChanged, NotifyData,
    ScanFailed, ScanResult, ServicesDiscovered, TransportError, WriteAck,
)
from .constants import (
    BLE_DATA_RX_UUID, BLE_DATA_TX_UUID, BLE_SERVICE_UUID, GATT_SUCCESS,
)

_BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


class BluetoothManager(BaseLink):
    """
    BLE link to the BLE_TO_ISOTP adapter built on bleak.

    bleak is asyncio-only, so every GATT operation runs on a private event
    loop thread. Calls from the service return immediately; results are
    posted back as link messages. GATT operations are serialized in the
    order they were requested.
    """

    def __init__(self, connect_timeout: float = 10.0):
        super().__init__()
        self.connect_timeout = connect_timeout

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self._gatt_lock: Optional[asyncio.Lock] = None

        self._scanner: Optional[BleakScanner] = None
        self._seen: Dict[str, BLEDevice] = {}
        self._clients: Dict[AdapterDevice, BleakClient] = {}

        self.logger = logging.getLogger(__name__)

    # ---- event loop plumbing ----

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        self._gatt_lock = asyncio.Lock()
        self._loop_ready.set()
        self._loop.run_forever()

    def _ensure_loop(self):
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._loop = asyncio.new_event_loop()
        self._loop_ready.clear()
        self._loop_thread = threading.Thread(target=self._run_loop, name="BluetoothManagerLoop", daemon=True)
        self._loop_thread.start()
        self._loop_ready.wait(timeout=5.0)

    def _submit(self, coro: Coroutine) -> concurrent.futures.Future:
        self._ensure_loop()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(self._log_future_error)
        return future

    def _log_future_error(self, future: concurrent.futures.Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(f"BLE operation failed: {error}")

    def _client(self, device: AdapterDevice) -> BleakClient:
        client = self._clients.get(device)
        if client is None:
            raise TransportError(f"No link open to {device}", status="not-connected")
        return client

    # ---- scanning ----

    def start_scan(self, service_uuid: str = BLE_SERVICE_UUID) -> None:
        self.logger.info(f"Scanning for adapters advertising {service_uuid}")
        self._submit(self._start_scan(service_uuid))

    async def _start_scan(self, service_uuid: str):
        if self._scanner is not None:
            return
        self._scanner = BleakScanner(detection_callback=self._on_detection, service_uuids=[service_uuid])
        try:
            await self._scanner.start()
        except _BLE_ERRORS as e:
            self.logger.error(f"Scan start failed: {e}")
            self._scanner = None
            self.post(ScanFailed(None, error_code=str(e) or "scan-failed"))

    def _on_detection(self, ble_device: BLEDevice, advertisement: AdvertisementData):
        name = advertisement.local_name or ble_device.name or ""
        self._seen[ble_device.address] = ble_device
        self.post(ScanResult(AdapterDevice(ble_device.address, name, advertisement.rssi)))

    def stop_scan(self) -> None:
        self._submit(self._stop_scan())

    async def _stop_scan(self):
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except _BLE_ERRORS as e:
            self.logger.warning(f"Scan stop failed: {e}")

    # ---- connection ----

    def connect(self, device: AdapterDevice) -> None:
        self.logger.info(f"Connecting to {device}...")
        self._submit(self._connect(device))

    async def _connect(self, device: AdapterDevice):
        target = self._seen.get(device.address, device.address)
        client = BleakClient(
            target,
            disconnected_callback=lambda _client: self._on_disconnected(device),
            timeout=self.connect_timeout,
        )
        self._clients[device] = client

        async with self._gatt_lock:
            try:
                await client.connect()
            except _BLE_ERRORS as e:
                self.logger.error(f"Bluetooth connection error: {e}")
                self._clients.pop(device, None)
                self.post(LinkStateChanged(device, status=str(e) or "connect-failed", connected=False))
                return

        self.post(LinkStateChanged(device, status=GATT_SUCCESS, connected=True))

    def _on_disconnected(self, device: AdapterDevice):
        # close() already dropped the client for links we shut ourselves
        if self._clients.pop(device, None) is None:
            return
        self.logger.info(f"Link lost: {device}")
        self.post(LinkStateChanged(device, status=GATT_SUCCESS, connected=False))

    def discover_services(self, device: AdapterDevice) -> None:
        client = self._client(device)
        self._submit(self._discover(device, client))

    async def _discover(self, device: AdapterDevice, client: BleakClient):
        # bleak resolves the GATT table while connecting
        async with self._gatt_lock:
            services = client.services
            if services.get_service(BLE_SERVICE_UUID) is None:
                self.logger.error(f"Bridge service missing on {device}")
                self.post(ServicesDiscovered(device, status="service-missing"))
                return
            for service in services:
                self.logger.debug(f"Service {service.uuid}: "
                                  f"{', '.join(c.uuid for c in service.characteristics)}")
            self.post(ServicesDiscovered(device, status=GATT_SUCCESS, service_count=len(list(services))))

    def request_mtu(self, device: AdapterDevice, mtu: int) -> None:
        client = self._client(device)
        self._submit(self._mtu(device, client, mtu))

    async def _mtu(self, device: AdapterDevice, client: BleakClient, mtu: int):
        # MTU exchange is done by the platform; report what it settled on
        async with self._gatt_lock:
            negotiated = client.mtu_size
        if negotiated < mtu:
            self.logger.info(f"Requested MTU {mtu}, platform negotiated {negotiated}")
        self.post(MtuChanged(device, mtu=negotiated, status=GATT_SUCCESS))

    def request_priority(self, device: AdapterDevice) -> None:
        self._client(device)
        self.logger.debug("Connection priority is managed by the platform BLE stack")

    def enable_notifications(self, device: AdapterDevice) -> None:
        client = self._client(device)
        self._submit(self._enable_notifications(device, client))

    async def _enable_notifications(self, device: AdapterDevice, client: BleakClient):
        def _handler(_sender, data: bytearray):
            self.post(NotifyData(device, bytes(data)))

        async with self._gatt_lock:
            try:
                await client.start_notify(BLE_DATA_RX_UUID, _handler)
                self.logger.debug(f"Notifications enabled on {BLE_DATA_RX_UUID}")
            except _BLE_ERRORS as e:
                self.logger.error(f"Enable notifications failed: {e}")
                self.post(LinkStateChanged(device, status=str(e) or "notify-failed", connected=False))

    def disable_notifications(self, device: AdapterDevice) -> None:
        client = self._clients.get(device)
        if client is not None:
            self._submit(self._disable_notifications(client))

    async def _disable_notifications(self, client: BleakClient):
        async with self._gatt_lock:
            if not client.is_connected:
                return
            try:
                await client.stop_notify(BLE_DATA_RX_UUID)
            except _BLE_ERRORS as e:
                self.logger.debug(f"Disable notifications failed: {e}")

    # ---- data ----

    def write(self, device: AdapterDevice, data: bytes) -> None:
        client = self._client(device)
        self._submit(self._write(device, client, bytes(data)))

    async def _write(self, device: AdapterDevice, client: BleakClient, data: bytes):
        async with self._gatt_lock:
            try:
                await client.write_gatt_char(BLE_DATA_TX_UUID, data, response=True)
                status = GATT_SUCCESS
            except _BLE_ERRORS as e:
                self.logger.warning(f"Characteristic write failed for {BLE_DATA_TX_UUID}, error: {e}")
                status = str(e) or "write-failed"
        self.post(WriteAck(device, status=status))

    def close(self, device: AdapterDevice) -> None:
        client = self._clients.pop(device, None)
        if client is None:
            return
        self._submit(self._close(client))

    async def _close(self, client: BleakClient):
        try:
            await client.disconnect()
        except _BLE_ERRORS as e:
            self.logger.error(f"Error closing link: {e}")

    def shutdown(self) -> None:
        if self._loop is None or self._loop_thread is None:
            return

        pending = [self._submit(self._stop_scan())]
        for device in list(self._clients):
            pending.append(self._submit(self._close(self._clients.pop(device))))
        concurrent.futures.wait(pending, timeout=5.0)

        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=2.0)
        self._loop_thread = None
        self.logger.info("Bluetooth manager shut down")
