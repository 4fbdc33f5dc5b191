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
Bridge Service Module

Owns the connection to one BLE_TO_ISOTP adapter.

Features:
- Scan with a service filter and a case-insensitive name match
- Connect, service discovery, MTU and priority negotiation, notifications
- Scan timeout reverting to NONE when no adapter reached CONNECTED
- Identity gate closing links that are not the bound adapter
- Full teardown on disconnect or any negotiation failure
- One ConnectionWorker per CONNECTED interval driving the TaskEngine
- Link messages handled one at a time by a dispatcher thread
"""

import logging
import queue
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Union

from .communication_interface import (
    AdapterDevice, BaseLink, CommunicationError, IdentityMismatch,
    LinkMessage, LinkStateChanged, MtuChanged, NotifyData, ScanFailed,
    ScanResult, ServicesDiscovered, TransportError, WriteAck, WriteFault,
)
from .config import BridgeSettings
from .constants import BLE_SERVICE_UUID, GATT_SUCCESS
from .events import ConnectionState, EventBus, StateChanged, TaskState
from .frame_codec import split_concatenated
from .frame_logger import FrameLogger
from .link_queues import LinkQueues
from .task_engine import ConnectionWorker, TaskEngine

logger = logging.getLogger(__name__)

ErrorCode = Union[int, str, None]

_STOP = object()


class BridgeService:
    """Connection state machine and command surface for one adapter"""

    def __init__(self, link: BaseLink, settings: Optional[BridgeSettings] = None,
                 bus: Optional[EventBus] = None,
                 frame_logger: Optional[FrameLogger] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.link = link
        self.settings = settings or BridgeSettings()
        self.bus = bus or EventBus()

        self._lock = threading.RLock()
        self._state = ConnectionState.NONE
        self._device: Optional[AdapterDevice] = None
        self._scanning = False
        self._scan_timer: Optional[threading.Timer] = None
        self._scan_generation = 0
        self._link_generation = 0
        self._worker: Optional[ConnectionWorker] = None

        self.queues = LinkQueues(ack_timeout=self.settings.write_ack_timeout, clock=clock)
        self.engine = TaskEngine(
            self.queues, self.bus,
            transmit=self._transmit,
            is_connected=self.is_connected,
            settings=self.settings,
            frame_logger=frame_logger,
            lock=self._lock,
            clock=clock,
        )

        self._channel: "queue.Queue[object]" = queue.Queue()
        self._dispatcher: Optional[threading.Thread] = None

        self.link.attach(self.post)

    # ---- properties ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device(self) -> Optional[AdapterDevice]:
        return self._device

    @property
    def task(self) -> TaskState:
        return self.engine.task

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def status(self) -> Dict:
        with self._lock:
            snap = self.engine.snapshot()
            writes, reads = self.queues.pending()
            return {
                "state": self._state.name,
                "device": self._device.name if self._device else None,
                "address": self._device.address if self._device else None,
                "task": snap.task.name,
                "pending_task": snap.pending.name,
                "task_count": snap.count,
                "task_elapsed_ms": snap.elapsed_ms,
                "log_write_state": snap.log_write_state,
                "write_queue": writes,
                "read_queue": reads,
                "write_in_flight": self.queues.gate.in_flight,
            }

    # ---- service lifecycle ----

    def start_service(self) -> None:
        """Start the dispatcher thread draining link messages"""
        with self._lock:
            if self._dispatcher is not None and self._dispatcher.is_alive():
                return
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="BridgeDispatcher", daemon=True
            )
            self._dispatcher.start()
            logger.info("Bridge service started")

    def stop_service(self) -> None:
        with self._lock:
            worker = self._worker
            self.disconnect()
            dispatcher = self._dispatcher
            self._dispatcher = None

        if dispatcher is not None:
            self._channel.put(_STOP)
            if dispatcher is not threading.current_thread():
                dispatcher.join(timeout=2.0)

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=2.0)

        self.link.shutdown()
        logger.info("Bridge service stopped")

    # ---- link message channel ----

    def post(self, message: LinkMessage) -> None:
        """Channel entry point handed to the link"""
        self._channel.put(message)

    def process_pending(self) -> int:
        """Handle every queued link message on the calling thread"""
        handled = 0
        while True:
            try:
                message = self._channel.get_nowait()
            except queue.Empty:
                return handled
            if message is _STOP:
                continue
            self.handle_link_message(message)
            handled += 1

    def _dispatch_loop(self) -> None:
        logger.debug("BEGIN BridgeDispatcher")
        while True:
            message = self._channel.get()
            if message is _STOP:
                break
            try:
                self.handle_link_message(message)
            except Exception as e:
                logger.error(f"Link message handler error: {e}", exc_info=True)
        logger.debug("END BridgeDispatcher")

    def handle_link_message(self, message: LinkMessage) -> None:
        with self._lock:
            if isinstance(message, ScanResult):
                self._on_scan_result(message.device)
                return
            if isinstance(message, ScanFailed):
                self._on_scan_failed(message.error_code)
                return

            try:
                self._check_identity(message.device)
            except IdentityMismatch as e:
                logger.warning(str(e))
                if message.device is not None:
                    self.link.close(message.device)
                return

            if isinstance(message, LinkStateChanged):
                self._on_link_state(message)
            elif isinstance(message, ServicesDiscovered):
                self._on_services_discovered(message)
            elif isinstance(message, MtuChanged):
                self._on_mtu_changed(message)
            elif isinstance(message, WriteAck):
                self._on_write_ack(message)
            elif isinstance(message, NotifyData):
                self._on_notify(message)
            else:
                logger.warning(f"Unhandled link message: {message}")

    def _check_identity(self, device: Optional[AdapterDevice]) -> None:
        if self._device is None or device != self._device:
            raise IdentityMismatch(f"Callback from unbound device {device}, closing stray link")

    def _on_scan_result(self, device: Optional[AdapterDevice]) -> None:
        if device is None:
            return
        logger.debug(f"Found BLE device! {device}")

        if self._device is not None or self._state is not ConnectionState.CONNECTING:
            return
        if self.settings.device_name.lower() not in (device.name or "").lower():
            return

        self._link_generation += 1
        device = replace(device, link_id=self._link_generation)
        self._device = device
        self._stop_scan()

        logger.info(f"Initiating connection to {device}")
        try:
            self.link.connect(device)
        except TransportError as e:
            logger.error(f"Connect request failed: {e}")
            self.disconnect(ConnectionState.ERROR, e.status if e.status is not None else "connect-failed")

    def _on_scan_failed(self, error_code: ErrorCode) -> None:
        logger.warning(f"onScanFailed: code {error_code}")
        self._scanning = False
        if self._state is ConnectionState.CONNECTING and self._device is None:
            self.disconnect(ConnectionState.ERROR, error_code)

    def _on_link_state(self, message: LinkStateChanged) -> None:
        device = self._device
        if message.status != GATT_SUCCESS:
            logger.info(f"Error {message.status} encountered for {device}! Disconnecting...")
            self.disconnect(ConnectionState.ERROR, message.status)
            return

        if message.connected:
            logger.info(f"Successfully connected to {device}")
            self._negotiate(lambda: self.link.discover_services(device))
        else:
            logger.info(f"Successfully disconnected from {device}")
            self.disconnect(ConnectionState.NONE)

    def _on_services_discovered(self, message: ServicesDiscovered) -> None:
        device = self._device
        if message.status != GATT_SUCCESS:
            logger.info(f"Failed to discover services for {device}")
            self.disconnect(ConnectionState.ERROR, message.status)
            return

        logger.info(f"Discovered {message.service_count} services for {device}")
        self._negotiate(lambda: self.link.request_mtu(device, self.settings.mtu_size))

    def _on_mtu_changed(self, message: MtuChanged) -> None:
        device = self._device
        logger.info(f"ATT MTU changed to {message.mtu}, success: {message.status == GATT_SUCCESS}")
        if message.status != GATT_SUCCESS:
            self.disconnect(ConnectionState.ERROR, message.status)
            return

        def _finish():
            self.link.request_priority(device)
            self.link.enable_notifications(device)

        if self._negotiate(_finish):
            self.set_connection_state(ConnectionState.CONNECTED)

    def _negotiate(self, step: Callable[[], None]) -> bool:
        """Run one negotiation call; a failure tears the link down to ERROR"""
        try:
            step()
            return True
        except TransportError as e:
            logger.error(f"Link negotiation failed: {e}")
            self.disconnect(ConnectionState.ERROR, e.status if e.status is not None else "transport")
            return False

    def _on_write_ack(self, message: WriteAck) -> None:
        self.queues.gate.release()
        if message.status != GATT_SUCCESS:
            logger.warning(f"Characteristic write failed, error: {message.status}")
            self.disconnect(ConnectionState.ERROR, message.status)

    def _on_notify(self, message: NotifyData) -> None:
        for frame in split_concatenated(message.data):
            self.queues.queue_read(frame)

    # ---- connection state machine ----

    def connect(self) -> None:
        with self._lock:
            self.disconnect()

            logger.info("Searching for BLE device.")
            self._scan_generation += 1
            generation = self._scan_generation
            self._scan_timer = threading.Timer(
                self.settings.scan_period, self._on_scan_timeout, args=(generation,)
            )
            self._scan_timer.daemon = True
            self._scan_timer.start()

            self.set_connection_state(ConnectionState.CONNECTING)

            try:
                self.link.start_scan(BLE_SERVICE_UUID)
                self._scanning = True
            except TransportError as e:
                logger.error(f"Unable to start scan: {e}")
                self.disconnect(ConnectionState.ERROR, e.status if e.status is not None else "scan-failed")

    def disconnect(self, new_state: ConnectionState = ConnectionState.NONE,
                   error_code: ErrorCode = None) -> None:
        with self._lock:
            device = self._device
            logger.info(f"Disconnecting from BLE device: {device or 'Not connected'}")

            self._cancel_scan_timer()
            self._stop_scan()
            self._stop_worker()

            if device is not None:
                try:
                    self.link.disable_notifications(device)
                except CommunicationError as e:
                    logger.debug(f"Disable notifications failed: {e}")
                try:
                    self.link.close(device)
                except CommunicationError as e:
                    logger.warning(f"Close failed for {device}: {e}")

            self._device = None
            self.queues.reset()
            self.engine.reset()

            self.set_connection_state(
                new_state,
                device_name=device.name if device else None,
                error_code=error_code,
            )

    def scan_timeout(self) -> None:
        """Scan period elapsed"""
        with self._lock:
            self._scan_timer = None
            self._stop_scan()
            if self._state is not ConnectionState.CONNECTED:
                logger.info("Scan period elapsed without a connection")
                self.disconnect(ConnectionState.NONE)

    def _on_scan_timeout(self, generation: int) -> None:
        with self._lock:
            if generation != self._scan_generation:
                return
            self.scan_timeout()

    def set_connection_state(self, new_state: ConnectionState,
                             device_name: Optional[str] = None,
                             error_code: ErrorCode = None) -> None:
        with self._lock:
            # Worker lifetime is bounded by one CONNECTED interval
            self._stop_worker()
            self._state = new_state

            if new_state is ConnectionState.CONNECTED:
                self.engine.reset()
                self._start_worker()

            if device_name is None and self._device is not None:
                device_name = self._device.name

            logger.info(f"Connection state: {new_state.name}")
            self.bus.publish(StateChanged(new_state, device_name, error_code))

    def _stop_scan(self) -> None:
        if self._scanning:
            logger.info("Stop Scanning")
            self._scanning = False
            try:
                self.link.stop_scan()
            except CommunicationError as e:
                logger.warning(f"Stop scan failed: {e}")

    def _cancel_scan_timer(self) -> None:
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None
        self._scan_generation += 1

    def _start_worker(self) -> None:
        self._worker = ConnectionWorker(
            self.engine, self._lock,
            is_connected=self.is_connected,
            on_fault=self._on_worker_fault,
            idle_sleep=self.settings.worker_idle_sleep,
        )
        self._worker.start()

    def _stop_worker(self) -> None:
        # Cooperative: the worker re-checks its token under the lock we hold
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None

    def _on_worker_fault(self, fault: CommunicationError) -> None:
        with self._lock:
            if threading.current_thread() is not self._worker:
                return
            code = "write-fault" if isinstance(fault, WriteFault) else "read-fault"
            self.disconnect(ConnectionState.ERROR, code)

    def _transmit(self, data: bytes) -> None:
        if self._device is None:
            raise TransportError("No adapter bound")
        self.link.write(self._device, data)

    # ---- commands ----

    def set_task_state(self, task: TaskState) -> None:
        self.engine.set_task_state(task)

    def check_vin(self) -> None:
        self.set_task_state(TaskState.READ_VIN)

    def get_ecu_info(self) -> None:
        self.set_task_state(TaskState.GET_ECU_INFO)

    def check_pid(self) -> None:
        self.set_task_state(TaskState.LOGGING)

    def stop_pid(self) -> None:
        self.set_task_state(TaskState.NONE)

    def clear_dtc(self) -> None:
        self.set_task_state(TaskState.CLEAR_DTC)

    def flash_ecu_cal(self) -> None:
        self.set_task_state(TaskState.FLASH_CALIBRATION)

    COMMANDS = (
        "start-service", "stop-service", "connect", "disconnect",
        "check-vin", "get-ecu-info", "check-pid", "stop-pid",
        "clear-dtc", "flash-ecu-cal",
    )

    def execute(self, command: str) -> None:
        """Run a command by name, e.g. "check-vin" or "check_vin" """
        name = command.strip().lower().replace("_", "-")
        if name not in self.COMMANDS:
            raise ValueError(f"Unknown command: {command}")

        logger.info(f"Command: {name}")
        getattr(self, name.replace("-", "_"))()
