"""
Configuration and logging setup tests
"""

import logging
import os
import unittest
from unittest.mock import patch

from bridgecore.config import BridgeSettings
from bridgecore import config
from bridgecore.logger import COMM_LOGGER_NAME, log_frame, setup_logging


class TestBridgeSettings(unittest.TestCase):

    def test_defaults(self):
        settings = BridgeSettings()
        self.assertEqual(settings.device_name, "BLE_TO_ISOTP")
        self.assertEqual(settings.mtu_size, 512)
        self.assertEqual(settings.scan_period, 5.0)
        self.assertEqual(settings.task_end_delay, 1.0)
        self.assertEqual(settings.task_end_timeout, 5.0)
        self.assertEqual(settings.update_rate, 4)
        self.assertEqual((settings.persist_delay, settings.persist_q_delay), (20, 10))
        self.assertIsNone(settings.write_ack_timeout)

    def test_validation(self):
        with self.assertRaises(ValueError):
            BridgeSettings(update_rate=0)
        with self.assertRaises(ValueError):
            BridgeSettings(task_end_delay=2.0, task_end_timeout=1.0)
        with self.assertRaises(ValueError):
            BridgeSettings(persist_delay=0x10000)

    def test_from_env(self):
        env = {
            "BRIDGE_DEVICE_NAME": "MY_BRIDGE",
            "BRIDGE_TASK_END_DELAY_MS": "250",
            "BRIDGE_TASK_END_TIMEOUT_MS": "2000",
            "BRIDGE_UPDATE_RATE": "10",
            "BRIDGE_WRITE_ACK_TIMEOUT": "1.5",
        }
        with patch.dict(os.environ, env):
            settings = BridgeSettings.from_env()
        self.assertEqual(settings.device_name, "MY_BRIDGE")
        self.assertEqual(settings.task_end_delay, 0.25)
        self.assertEqual(settings.task_end_timeout, 2.0)
        self.assertEqual(settings.update_rate, 10)
        self.assertEqual(settings.write_ack_timeout, 1.5)

    def test_from_env_bad_values_fall_back(self):
        with patch.dict(os.environ, {"BRIDGE_UPDATE_RATE": "fast", "BRIDGE_WRITE_ACK_TIMEOUT": "never"}):
            settings = BridgeSettings.from_env()
        self.assertEqual(settings.update_rate, 4)
        self.assertIsNone(settings.write_ack_timeout)


class TestFrameLogging(unittest.TestCase):

    def test_log_frame_hex_dump(self):
        with self.assertLogs(COMM_LOGGER_NAME, level="DEBUG") as captured:
            log_frame(b"\xF1\x02\xE8\x07", outgoing=True)
            log_frame(b"\x62", outgoing=False)
        self.assertEqual(captured.output, [
            f"DEBUG:{COMM_LOGGER_NAME}:TX [4]: f1 02 e8 07",
            f"DEBUG:{COMM_LOGGER_NAME}:RX [1]: 62",
        ])

    def test_log_frame_silent_above_debug(self):
        comm = logging.getLogger(COMM_LOGGER_NAME)
        previous = comm.level
        comm.setLevel(logging.INFO)
        try:
            with patch.object(comm, "debug") as debug:
                log_frame(b"\x01", outgoing=True)
            debug.assert_not_called()
        finally:
            comm.setLevel(previous)

    def test_console_level_follows_debug_mode(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        comm = logging.getLogger(COMM_LOGGER_NAME)
        saved_comm = comm.level
        try:
            for debug_mode, expected in ((True, logging.DEBUG), (False, logging.INFO)):
                with patch("bridgecore.logger._INITIALIZED", False), \
                        patch.object(config, "DEBUG_MODE", debug_mode):
                    setup_logging(to_file=False)
                    console = [h for h in root.handlers if h.get_name() == "console"]
                    self.assertEqual(len(console), 1)
                    self.assertEqual(console[0].level, expected)
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
            comm.setLevel(saved_comm)


if __name__ == "__main__":
    unittest.main()
