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
Bridge Task Engine Module

Sequences diagnostic tasks over an open adapter connection.

Task swap protocol: a new task is never started immediately. It is parked
as the pending task with two deadlines, a short completion grace and a
longer hard timeout, and any running task is stopped at once. Each inbound
frame seen while a swap is pending pushes the grace deadline out (the old
task is still draining); the hard timeout never moves. The worker promotes
the pending task when either deadline has passed.

All public methods run under the owning service's lock.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .communication_interface import CommunicationError, ReadFault, WriteFault
from .config import BridgeSettings
from .constants import UDS_READ_BY_ID_POSITIVE, BridgeSetting, UDSResult
from .events import (
    DataRead, DtcRead, EcuInfo, EventBus, LogProgress, LogWriteStateChanged,
    TaskChanged, TaskState, VinRead,
)
from .frame_codec import (
    Frame, clear_dtc_request, ecu_info_requests, encode, led_color_frame,
    stop_task_command, u16_setting_frame, vin_request,
)
from .frame_logger import FrameLogger
from .link_queues import LinkQueues
from .logger import log_frame

logger = logging.getLogger(__name__)

# Bytes ahead of the VIN in a positive response: service id + identifier echo
_VIN_OFFSET = 3


@dataclass
class TaskSnapshot:
    task: TaskState
    pending: TaskState
    count: int
    elapsed_ms: int
    log_write_state: bool


class TaskEngine:
    """Task state machine driven one worker iteration at a time"""

    def __init__(self, queues: LinkQueues, bus: EventBus,
                 transmit: Callable[[bytes], None],
                 is_connected: Callable[[], bool],
                 settings: Optional[BridgeSettings] = None,
                 frame_logger: Optional[FrameLogger] = None,
                 lock: Optional[threading.RLock] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.queues = queues
        self.bus = bus
        self.settings = settings or BridgeSettings()
        self.frame_logger = frame_logger
        self._transmit = transmit
        self._is_connected = is_connected
        self._lock = lock or threading.RLock()
        self._clock = clock

        self._task = TaskState.NONE
        self._task_next = TaskState.NONE
        self._task_count = 0
        self._task_time = 0.0
        self._task_time_next = 0.0
        self._task_time_out = 0.0
        self._log_write_state = False

    # ---- state ----

    @property
    def task(self) -> TaskState:
        return self._task

    @property
    def pending(self) -> TaskState:
        return self._task_next

    def snapshot(self) -> TaskSnapshot:
        with self._lock:
            elapsed = 0
            if self._task is not TaskState.NONE:
                elapsed = int((self._clock() - self._task_time) * 1000)
            return TaskSnapshot(
                task=self._task,
                pending=self._task_next,
                count=self._task_count,
                elapsed_ms=elapsed,
                log_write_state=self._log_write_state,
            )

    def reset(self) -> None:
        """Forget all task state (connection torn down)"""
        with self._lock:
            self._task = TaskState.NONE
            self._task_next = TaskState.NONE
            self._task_count = 0
            self._log_write_state = False

    def set_task_state(self, new_task: TaskState) -> None:
        with self._lock:
            # if we are not connected abort
            if not self._is_connected():
                self._task = TaskState.NONE
                self._task_next = TaskState.NONE
                logger.debug(f"Task request {new_task.name} ignored, not connected")
                return

            now = self._clock()
            self._task_time_next = now + self.settings.task_end_delay
            self._task_time_out = now + self.settings.task_end_timeout
            self._task_next = new_task

            if self._task is not TaskState.NONE:
                logger.info(f"Task stopped: {self._task.name}")
                self._task = TaskState.NONE
                self.bus.publish(TaskChanged(TaskState.NONE))
                self.queues.queue_write(stop_task_command())

    # ---- worker iteration ----

    def step(self) -> bool:
        """One worker pass: one write, one read, one deadline check"""
        with self._lock:
            worked = self._step_write()

            frame = self.queues.next_read()
            if frame is not None:
                worked = True
                self._step_read(frame)

            if self._task_next is not TaskState.NONE:
                now = self._clock()
                if self._task_time_next < now:
                    logger.info("Task finished.")
                    self._start_next_task()
                elif self._task_time_out < now:
                    logger.warning(f"Task failed to finish, forcing {self._task_next.name}")
                    self._start_next_task()

            return worked

    def _step_write(self) -> bool:
        data = self.queues.next_write()
        if data is None:
            return False

        log_frame(data, outgoing=True)
        try:
            self._transmit(data)
        except Exception as e:
            self.queues.gate.cancel()
            raise WriteFault(f"Exception during write: {e}") from e
        return True

    def _step_read(self, frame: Frame) -> None:
        log_frame(frame.to_bytes(), outgoing=False)
        try:
            self._dispatch(frame)
        except CommunicationError:
            raise
        except Exception as e:
            raise ReadFault(f"Exception during read: {e}") from e

        if self._task_next is not TaskState.NONE:
            self._task_time_next = self._clock() + self.settings.task_end_delay
            logger.debug("Packet extended task start delay.")

        self._task_count += 1

    def _dispatch(self, frame: Frame) -> None:
        payload = frame.payload
        positive = payload[:1] == bytes([UDS_READ_BY_ID_POSITIVE])

        if self._task is TaskState.NONE:
            self.bus.publish(DataRead(payload))

        elif self._task is TaskState.READ_VIN:
            if positive:
                self.bus.publish(VinRead(payload[_VIN_OFFSET:]))
            else:
                logger.warning(f"VIN read failed: {payload.hex(' ')}")
            self.set_task_state(TaskState.NONE)

        elif self._task is TaskState.GET_ECU_INFO:
            if positive:
                self.bus.publish(EcuInfo(payload))
            else:
                logger.debug(f"ECU info request rejected: {payload.hex(' ')}")

        elif self._task is TaskState.CLEAR_DTC:
            self.bus.publish(DtcRead(payload))
            self.set_task_state(TaskState.NONE)

        elif self._task is TaskState.FLASH_CALIBRATION:
            self.bus.publish(DataRead(payload))

        elif self._task is TaskState.LOGGING:
            self._logging_cycle(frame)

    def _logging_cycle(self, frame: Frame) -> None:
        frame_logger = self.frame_logger
        result = frame_logger.process_frame(self._task_count, frame)
        frame_count = frame_logger.frame_count()

        # Are we still sending initial frames?
        if self._task_count < frame_count:
            if result != UDSResult.OK:
                logger.info(f"Unable to initialize logging, UDS Error: {result}")
                self.set_task_state(TaskState.NONE)
            elif self._task_count + 1 < frame_count:
                self.queues.queue_write(frame_logger.build_frame(self._task_count + 1))

        if self._task_count % self.settings.update_rate == 0:
            elapsed = int((self._clock() - self._task_time) * 1000)
            self.bus.publish(LogProgress(self._task_count, elapsed, int(result)))

        enabled = bool(frame_logger.is_enabled())
        if enabled != self._log_write_state:
            self.bus.publish(LogWriteStateChanged(enabled))
            self.queues.queue_write(encode(led_color_frame(enabled)))
            self._log_write_state = enabled

    def _start_next_task(self) -> None:
        self._task = self._task_next
        self._task_next = TaskState.NONE
        self._task_count = 0
        self._task_time = self._clock()

        logger.info(f"Task started: {self._task.name}")
        self.bus.publish(TaskChanged(self._task))

        if self._task is TaskState.LOGGING:
            if self.frame_logger is None:
                logger.error("Logging requested without a frame logger")
                self._task = TaskState.NONE
                self.bus.publish(TaskChanged(TaskState.NONE))
                return
            self.queues.queue_write(encode(
                u16_setting_frame(BridgeSetting.PERSIST_DELAY, self.settings.persist_delay)))
            self.queues.queue_write(encode(
                u16_setting_frame(BridgeSetting.PERSIST_Q_DELAY, self.settings.persist_q_delay)))
            self.queues.queue_write(self.frame_logger.build_frame(0))

        elif self._task is TaskState.READ_VIN:
            self.queues.queue_write(vin_request())

        elif self._task is TaskState.GET_ECU_INFO:
            for request in ecu_info_requests():
                self.queues.queue_write(request)

        elif self._task is TaskState.CLEAR_DTC:
            self.queues.queue_write(clear_dtc_request())

        elif self._task is TaskState.FLASH_CALIBRATION:
            # Only the DTC clear preamble is implemented. Session control,
            # security access and the transfer loop are not.
            self.queues.queue_write(clear_dtc_request())


class ConnectionWorker(threading.Thread):
    """Worker thread bound to a single CONNECTED interval"""

    def __init__(self, engine: TaskEngine, lock: threading.RLock,
                 is_connected: Callable[[], bool],
                 on_fault: Callable[[CommunicationError], None],
                 idle_sleep: float = 0.002):
        super().__init__(name="ConnectionWorker", daemon=True)
        self.engine = engine
        self._lock = lock
        self._is_connected = is_connected
        self._on_fault = on_fault
        self._idle_sleep = idle_sleep
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> None:
        logger.info("BEGIN ConnectionWorker")

        while not self._cancel.is_set():
            fault: Optional[CommunicationError] = None
            worked = False

            with self._lock:
                if self._cancel.is_set() or not self._is_connected():
                    break
                try:
                    worked = self.engine.step()
                except CommunicationError as e:
                    fault = e

            if fault is not None:
                logger.error(f"Worker fault: {fault}")
                self.cancel()
                self._on_fault(fault)
                break

            if not worked:
                time.sleep(self._idle_sleep)

        logger.info("END ConnectionWorker")
