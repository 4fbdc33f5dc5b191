"""
Task engine tests

Task swap deadlines, per-task entry frames and response handling, the
logging cycle, and worker fault escalation. Time is driven by a fake clock;
every write is acknowledged by the harness as soon as it is transmitted.
"""

import threading
import unittest

from bridgecore.communication_interface import ReadFault, WriteFault
from bridgecore.config import BridgeSettings
from bridgecore.constants import BridgeSetting
from bridgecore.events import (
    DataRead, DtcRead, EcuInfo, EventBus, LogProgress, LogWriteStateChanged,
    TaskChanged, TaskState, VinRead,
)
from bridgecore.frame_codec import (
    Frame, clear_dtc_request, ecu_info_requests, encode, led_color_frame,
    stop_task_command, u16_setting_frame, vin_request,
)
from bridgecore.frame_logger import ReadByIdentifierLogger
from bridgecore.link_queues import LinkQueues
from bridgecore.task_engine import ConnectionWorker, TaskEngine

VIN = b"WVWZZZ1KZAW000001"


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class EngineTestCase(unittest.TestCase):

    frame_logger = None

    def setUp(self):
        self.clock = FakeClock()
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.sent = []
        self.connected = True
        self.lock = threading.RLock()
        self.queues = LinkQueues(clock=self.clock)
        self.engine = TaskEngine(
            self.queues, self.bus, self.transmit, lambda: self.connected,
            settings=BridgeSettings(), frame_logger=self.frame_logger,
            lock=self.lock, clock=self.clock,
        )

    def transmit(self, data):
        self.sent.append(data)

    def pump(self, limit=100):
        """Step until idle, acknowledging each transmitted write"""
        for _ in range(limit):
            before = len(self.sent)
            worked = self.engine.step()
            if len(self.sent) > before:
                self.queues.gate.release()
            if not worked and self.queues.pending() == (0, 0):
                return

    def start_task(self, task):
        """Request task and let the completion grace run out"""
        self.engine.set_task_state(task)
        self.clock.advance(1.5)
        self.pump()
        self.assertIs(self.engine.task, task)

    def respond(self, payload):
        self.queues.queue_read(Frame(payload=payload))
        self.pump()

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


class TestTaskSwap(EngineTestCase):

    def test_request_discarded_when_not_connected(self):
        self.connected = False
        self.engine.set_task_state(TaskState.READ_VIN)
        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertIs(self.engine.pending, TaskState.NONE)

        self.clock.advance(10)
        self.pump()
        self.assertEqual(self.sent, [])
        self.assertEqual(self.events, [])

    def test_promotion_after_grace(self):
        self.engine.set_task_state(TaskState.READ_VIN)
        self.assertIs(self.engine.pending, TaskState.READ_VIN)

        self.clock.advance(0.5)
        self.pump()
        self.assertIs(self.engine.task, TaskState.NONE)

        # deadline is exclusive
        self.clock.advance(0.5)
        self.pump()
        self.assertIs(self.engine.task, TaskState.NONE)

        self.clock.advance(0.25)
        with self.assertLogs("bridgecore.task_engine", level="INFO") as captured:
            self.pump()
        self.assertIn("Task finished.", "\n".join(captured.output))
        self.assertIs(self.engine.task, TaskState.READ_VIN)
        self.assertIs(self.engine.pending, TaskState.NONE)
        self.assertEqual(self.events, [TaskChanged(TaskState.READ_VIN)])
        self.assertEqual(self.sent, [vin_request()])

    def test_inbound_frames_extend_grace_until_hard_timeout(self):
        self.engine.set_task_state(TaskState.CLEAR_DTC)

        for _ in range(10):
            self.clock.advance(0.5)
            self.queues.queue_read(Frame(payload=b"\x01"))
            self.pump()
            self.assertIs(self.engine.task, TaskState.NONE)

        self.clock.advance(0.25)
        self.queues.queue_read(Frame(payload=b"\x01"))
        with self.assertLogs("bridgecore.task_engine", level="WARNING"):
            self.pump()
        self.assertIs(self.engine.task, TaskState.CLEAR_DTC)
        self.assertEqual(self.sent, [clear_dtc_request()])

    def test_new_request_stops_active_task(self):
        self.start_task(TaskState.FLASH_CALIBRATION)
        self.events.clear()
        self.sent.clear()

        self.engine.set_task_state(TaskState.NONE)
        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertEqual(self.events, [TaskChanged(TaskState.NONE)])

        self.pump()
        self.assertEqual(self.sent, [stop_task_command()])

        # nothing is promoted for a NONE request
        self.clock.advance(10)
        self.pump()
        self.assertEqual(self.events, [TaskChanged(TaskState.NONE)])

    def test_request_replaces_pending_task(self):
        self.engine.set_task_state(TaskState.READ_VIN)
        self.clock.advance(0.5)
        self.engine.set_task_state(TaskState.CLEAR_DTC)

        # the grace restarted with the second request
        self.clock.advance(0.75)
        self.pump()
        self.assertIs(self.engine.task, TaskState.NONE)

        self.clock.advance(0.5)
        self.pump()
        self.assertIs(self.engine.task, TaskState.CLEAR_DTC)

    def test_snapshot(self):
        self.start_task(TaskState.GET_ECU_INFO)
        self.clock.advance(0.25)
        snapshot = self.engine.snapshot()
        self.assertIs(snapshot.task, TaskState.GET_ECU_INFO)
        self.assertIs(snapshot.pending, TaskState.NONE)
        self.assertEqual(snapshot.count, 0)
        self.assertEqual(snapshot.elapsed_ms, 250)
        self.assertFalse(snapshot.log_write_state)

    def test_reset(self):
        self.start_task(TaskState.GET_ECU_INFO)
        self.engine.set_task_state(TaskState.READ_VIN)
        self.engine.reset()
        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertIs(self.engine.pending, TaskState.NONE)


class TestTasks(EngineTestCase):

    def test_idle_passthrough(self):
        self.respond(b"\x01\x02")
        self.assertEqual(self.events, [DataRead(b"\x01\x02")])
        self.assertEqual(self.engine.snapshot().count, 1)

    def test_read_vin(self):
        self.start_task(TaskState.READ_VIN)
        self.assertEqual(self.sent, [vin_request()])

        self.respond(b"\x62\xF1\x90" + VIN)

        vins = self.of_type(VinRead)
        self.assertEqual(len(vins), 1)
        self.assertEqual(vins[0].vin, VIN.decode())
        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertEqual(self.of_type(TaskChanged)[-1], TaskChanged(TaskState.NONE))
        self.assertEqual(self.sent[-1], stop_task_command())

    def test_read_vin_negative_response(self):
        self.start_task(TaskState.READ_VIN)
        with self.assertLogs("bridgecore.task_engine", level="WARNING"):
            self.respond(b"\x7F\x22\x31")
        self.assertEqual(self.of_type(VinRead), [])
        self.assertIs(self.engine.task, TaskState.NONE)

    def test_get_ecu_info(self):
        self.start_task(TaskState.GET_ECU_INFO)
        self.assertEqual(self.sent, ecu_info_requests())
        self.assertEqual(len(self.sent), 14)

        self.respond(b"\x62\xF1\xAD" + b"CJX")
        self.respond(b"\x7F\x22\x31")

        infos = self.of_type(EcuInfo)
        self.assertEqual(len(infos), 1)
        self.assertEqual(infos[0].name, "Engine Code")
        self.assertEqual(infos[0].value, b"CJX")
        self.assertIs(self.engine.task, TaskState.GET_ECU_INFO)

    def test_clear_dtc(self):
        self.start_task(TaskState.CLEAR_DTC)
        self.assertEqual(self.sent, [clear_dtc_request()])

        self.respond(b"\x44")
        self.assertEqual(self.of_type(DtcRead), [DtcRead(b"\x44")])
        self.assertIs(self.engine.task, TaskState.NONE)

    def test_flash_calibration_preamble(self):
        self.start_task(TaskState.FLASH_CALIBRATION)
        self.assertEqual(self.sent, [clear_dtc_request()])

        self.respond(b"\x44")
        self.assertEqual(self.of_type(DataRead), [DataRead(b"\x44")])
        self.assertIs(self.engine.task, TaskState.FLASH_CALIBRATION)

    def test_logging_without_frame_logger(self):
        self.engine.set_task_state(TaskState.LOGGING)
        self.clock.advance(1.5)
        with self.assertLogs("bridgecore.task_engine", level="ERROR"):
            self.pump()
        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertEqual(self.of_type(TaskChanged),
                         [TaskChanged(TaskState.LOGGING), TaskChanged(TaskState.NONE)])
        self.assertEqual(self.sent, [])


class TestLoggingTask(EngineTestCase):

    def setUp(self):
        self.frame_logger = ReadByIdentifierLogger(
            [b"\xF4\x00", b"\xF4\x01", b"\xF4\x02"], dids_per_frame=1)
        super().setUp()

    def test_entry_frames(self):
        self.start_task(TaskState.LOGGING)
        self.assertEqual(self.sent, [
            encode(u16_setting_frame(BridgeSetting.PERSIST_DELAY, 20)),
            encode(u16_setting_frame(BridgeSetting.PERSIST_Q_DELAY, 10)),
            self.frame_logger.build_frame(0),
        ])

    def test_initialization_and_progress(self):
        self.start_task(TaskState.LOGGING)
        self.sent.clear()

        for _ in range(8):
            self.respond(b"\x62\xF4\x00\x10")

        # one init frame per response until every group is sent
        self.assertEqual(self.sent, [self.frame_logger.build_frame(1),
                                     self.frame_logger.build_frame(2)])
        progress = self.of_type(LogProgress)
        self.assertEqual([p.count for p in progress], [0, 4])
        self.assertEqual({p.result for p in progress}, {0})
        self.assertEqual(self.engine.snapshot().count, 8)
        self.assertIs(self.engine.task, TaskState.LOGGING)

    def test_initialization_failure_stops_task(self):
        self.start_task(TaskState.LOGGING)
        self.sent.clear()

        self.respond(b"\x7F\x22\x31")

        self.assertIs(self.engine.task, TaskState.NONE)
        self.assertEqual(self.sent, [stop_task_command()])
        self.assertEqual(self.of_type(LogProgress), [LogProgress(0, 0, 1)])

    def test_write_state_change_sets_led(self):
        self.start_task(TaskState.LOGGING)
        self.respond(b"\x62\xF4\x00\x10")
        self.respond(b"\x62\xF4\x01\x10")
        self.respond(b"\x62\xF4\x02\x10")
        self.sent.clear()

        self.frame_logger.set_enabled(True)
        self.respond(b"\x62\xF4\x00\x11")
        self.assertEqual(self.of_type(LogWriteStateChanged), [LogWriteStateChanged(True)])
        self.assertEqual(self.sent, [encode(led_color_frame(True))])
        self.assertTrue(self.engine.snapshot().log_write_state)

        self.frame_logger.set_enabled(False)
        self.respond(b"\x62\xF4\x00\x12")
        self.assertEqual(self.sent[-1], encode(led_color_frame(False)))


class BrokenLogger(ReadByIdentifierLogger):

    def process_frame(self, index, frame):
        raise RuntimeError("decoder bug")


class TestFaults(EngineTestCase):

    def test_single_write_in_flight(self):
        self.queues.queue_write(b"\x01")
        self.queues.queue_write(b"\x02")

        self.engine.step()
        self.engine.step()
        self.assertEqual(self.sent, [b"\x01"])

        self.queues.gate.release()
        self.engine.step()
        self.assertEqual(self.sent, [b"\x01", b"\x02"])

    def test_write_fault_releases_permit(self):
        def failing(_data):
            raise OSError("link gone")

        self.engine._transmit = failing
        self.queues.queue_write(b"\x01")
        with self.assertRaises(WriteFault) as ctx:
            self.engine.step()
        self.assertIsInstance(ctx.exception.__cause__, OSError)
        self.assertFalse(self.queues.gate.in_flight)

    def test_read_fault_wraps_handler_error(self):
        self.engine.frame_logger = BrokenLogger([b"\xF4\x00"])
        self.start_task(TaskState.LOGGING)

        self.queues.queue_read(Frame(payload=b"\x62\xF4\x00\x10"))
        with self.assertRaises(ReadFault) as ctx:
            self.engine.step()
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)


class TestConnectionWorker(EngineTestCase):

    def test_fault_reported_and_worker_stops(self):
        def failing(_data):
            raise OSError("link gone")

        self.engine._transmit = failing
        faults = []
        reported = threading.Event()

        def on_fault(fault):
            faults.append(fault)
            reported.set()

        worker = ConnectionWorker(self.engine, self.lock, lambda: self.connected, on_fault)
        self.queues.queue_write(b"\x01")
        worker.start()

        self.assertTrue(reported.wait(2.0))
        worker.join(2.0)
        self.assertFalse(worker.is_alive())
        self.assertTrue(worker.cancelled)
        self.assertIsInstance(faults[0], WriteFault)

    def test_worker_exits_when_disconnected(self):
        worker = ConnectionWorker(self.engine, self.lock, lambda: self.connected, lambda f: None)
        worker.start()
        self.connected = False
        worker.join(2.0)
        self.assertFalse(worker.is_alive())

    def test_cancel(self):
        worker = ConnectionWorker(self.engine, self.lock, lambda: self.connected, lambda f: None)
        worker.start()
        worker.cancel()
        worker.join(2.0)
        self.assertFalse(worker.is_alive())

    def test_worker_runs_engine(self):
        worker = ConnectionWorker(self.engine, self.lock, lambda: self.connected, lambda f: None)
        worker.start()
        try:
            self.queues.queue_read(Frame(payload=b"\x01"))
            for _ in range(200):
                with self.lock:
                    if self.events:
                        break
                threading.Event().wait(0.01)
            self.assertEqual(self.events, [DataRead(b"\x01")])
        finally:
            worker.cancel()
            worker.join(2.0)


if __name__ == "__main__":
    unittest.main()
