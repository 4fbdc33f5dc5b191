"""
Frame codec tests

Header layout, sentinel rejection, splitting of concatenated notifications
and the byte-exact adapter command builders.
"""

import unittest

from bridgecore.constants import BridgeSetting, CommandFlag, ECU_INFO_LIST
from bridgecore.frame_codec import (
    Frame, FramingError, clear_dtc_request, decode, decode_strict, ecu_info_requests,
    encode, encode_many, led_color_frame, peek_payload_size, split_concatenated,
    stop_task_command, u16_setting_frame, vin_request,
)


class TestFrameEncoding(unittest.TestCase):
    """Wire layout of a single frame"""

    def test_encode_layout_little_endian(self):
        frame = Frame(flags=CommandFlag.PER_CLEAR, rx_id=0x7E8, tx_id=0x7E0, payload=b"\x22\xF1\x90")
        self.assertEqual(
            encode(frame),
            bytes([0xF1, 0x02, 0xE8, 0x07, 0xE0, 0x07, 0x03, 0x00, 0x22, 0xF1, 0x90]),
        )

    def test_encode_length(self):
        for size in (0, 1, 255, 256, 4095):
            with self.subTest(size=size):
                self.assertEqual(len(encode(Frame(payload=bytes(size)))), 8 + size)

    def test_round_trip(self):
        frames = [
            Frame(),
            Frame(flags=0xFF, rx_id=0xFFFF, tx_id=0x0000, payload=b"\x00"),
            Frame(flags=CommandFlag.SETTINGS | BridgeSetting.LED_COLOR, payload=b"\x00\x00\x80\x00"),
            Frame(rx_id=0x1234, tx_id=0xABCD, payload=bytes(range(256)) * 4),
            Frame(payload=b"\xAA" * 0xFFFF),
        ]
        for frame in frames:
            with self.subTest(size=frame.payload_size):
                self.assertEqual(decode(encode(frame)), frame)

    def test_payload_too_large(self):
        with self.assertRaises(FramingError):
            encode(Frame(payload=bytes(0x10000)))

    def test_tick_count_view(self):
        frame = Frame(rx_id=0x0001, tx_id=0x0002)
        self.assertEqual(frame.tick_count, 0x00010002)


class TestFrameDecoding(unittest.TestCase):
    """Rejection of invalid and incomplete input"""

    def test_wrong_sentinel_returns_none(self):
        data = bytearray(encode(Frame(payload=b"\x01\x02")))
        data[0] = 0xF2
        self.assertIsNone(decode(bytes(data)))

    def test_wrong_sentinel_strict_raises(self):
        data = bytearray(encode(Frame()))
        data[0] = 0x00
        with self.assertRaises(FramingError):
            decode_strict(bytes(data))

    def test_short_header(self):
        self.assertIsNone(decode(b"\xF1\x00\xE8"))
        self.assertIsNone(peek_payload_size(b"\xF1\x00"))

    def test_incomplete_payload(self):
        data = encode(Frame(payload=b"\x01\x02\x03\x04"))
        self.assertIsNone(decode(data[:-1]))
        self.assertEqual(peek_payload_size(data), 4)

    def test_decode_ignores_trailing_bytes(self):
        frame = Frame(payload=b"\x62\xF1\x90")
        self.assertEqual(decode(encode(frame) + b"\xF1\x00"), frame)


class TestSplitConcatenated(unittest.TestCase):
    """One notification carrying several frames"""

    def setUp(self):
        self.frames = [
            Frame(payload=b"\x62\xF1\x90" + b"W" * 17),
            Frame(flags=CommandFlag.PER_ADD, payload=b""),
            Frame(rx_id=0x7E9, payload=b"\x44"),
        ]
        self.data = encode_many(self.frames)

    def test_split_exact(self):
        self.assertEqual(split_concatenated(self.data), self.frames)

    def test_split_single(self):
        self.assertEqual(split_concatenated(encode(self.frames[0])), self.frames[:1])

    def test_split_empty(self):
        self.assertEqual(split_concatenated(b""), [])

    def test_split_drops_partial_tail(self):
        tail = encode(Frame(payload=b"\x01\x02\x03\x04\x05"))[:10]
        with self.assertLogs("bridgecore.frame_codec", level="WARNING"):
            frames = split_concatenated(self.data + tail)
        self.assertEqual(frames, self.frames)

    def test_split_drops_short_header_tail(self):
        with self.assertLogs("bridgecore.frame_codec", level="WARNING"):
            frames = split_concatenated(self.data + b"\xF1\x00\xE8")
        self.assertEqual(frames, self.frames)

    def test_split_stops_on_bad_sentinel(self):
        bad = bytearray(encode(Frame(payload=b"\x01")))
        bad[0] = 0x00
        data = encode(self.frames[0]) + bytes(bad) + encode(self.frames[2])
        with self.assertLogs("bridgecore.frame_codec", level="WARNING"):
            frames = split_concatenated(data)
        self.assertEqual(frames, self.frames[:1])


class TestCommandBuilders(unittest.TestCase):
    """Adapter command frames, byte for byte"""

    def test_vin_request(self):
        self.assertEqual(vin_request(), bytes.fromhex("f102e807e007030022f190"))

    def test_clear_dtc_request(self):
        self.assertEqual(clear_dtc_request(), bytes.fromhex("f102e8070007010004"))

    def test_stop_task_command(self):
        self.assertEqual(
            stop_task_command(),
            bytes.fromhex("f102e807e0070000") + bytes.fromhex("f182e807e007040000008000"),
        )

    def test_led_colors(self):
        self.assertEqual(led_color_frame(False).payload, b"\x00\x00\x80\x00")
        self.assertEqual(led_color_frame(True).payload, b"\x00\x80\x00\x00")
        self.assertEqual(led_color_frame(True).flags, 0x82)

    def test_persist_delay_settings(self):
        self.assertEqual(
            encode(u16_setting_frame(BridgeSetting.PERSIST_DELAY, 20)),
            bytes.fromhex("f183e807e00702001400"),
        )
        self.assertEqual(
            encode(u16_setting_frame(BridgeSetting.PERSIST_Q_DELAY, 10)),
            bytes.fromhex("f184e807e00702000a00"),
        )

    def test_ecu_info_requests(self):
        requests = ecu_info_requests()
        self.assertEqual(len(requests), 14)
        for request, did in zip(requests, ECU_INFO_LIST.values()):
            frame = decode(request)
            self.assertEqual(frame.flags, CommandFlag.PER_CLEAR)
            self.assertEqual(frame.payload, b"\x22" + did)
        self.assertEqual(decode(requests[0]).payload, b"\x22\xF1\x90")
        self.assertEqual(decode(requests[-1]).payload, b"\x22\x06\x00")


if __name__ == "__main__":
    unittest.main()
