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
Bridge Frame Codec Module

Every unit exchanged with the adapter is an 8-byte little-endian header
followed by payload_size payload bytes:

    byte 0      header id (0xF1)
    byte 1      command flags
    bytes 2-3   rx id
    bytes 4-5   tx id
    bytes 6-7   payload size
    bytes 8..   payload

One BLE notification may carry several frames back to back. A frame cut
across two notifications is not reassembled: the partial tail is dropped.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .communication_interface import CommunicationError
from .constants import (
    BLE_HEADER_ID, BLE_HEADER_RX, BLE_HEADER_TX, BLE_HEADER_SIZE,
    CLEAR_DTC_TX, ECU_INFO_LIST, LED_COLOR_IDLE, LED_COLOR_WRITING,
    UDS_CLEAR_DTC, UDS_READ_BY_ID, VIN_DID,
    BridgeSetting, CommandFlag,
)

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<BBHHH")


class FramingError(CommunicationError):
    """Header sentinel mismatch or truncated frame"""
    pass


@dataclass
class Frame:
    """Structured bridge frame"""
    flags: int = 0
    rx_id: int = BLE_HEADER_RX
    tx_id: int = BLE_HEADER_TX
    payload: bytes = b""
    header_id: int = BLE_HEADER_ID

    @property
    def payload_size(self) -> int:
        return len(self.payload)

    @property
    def tick_count(self) -> int:
        """rx/tx ids viewed as one 32-bit counter (diagnostics only)"""
        return ((self.rx_id & 0xFFFF) << 16) + (self.tx_id & 0xFFFF)

    def is_valid(self) -> bool:
        return self.header_id == BLE_HEADER_ID

    def to_bytes(self) -> bytes:
        return encode(self)

    def hex(self) -> str:
        return encode(self).hex(" ")


def encode(frame: Frame) -> bytes:
    """Serialize a frame to exactly 8 + payload_size bytes"""
    size = len(frame.payload)
    if size > 0xFFFF:
        raise FramingError(f"Payload too large: {size} bytes")
    header = _HEADER.pack(
        frame.header_id & 0xFF,
        frame.flags & 0xFF,
        frame.rx_id & 0xFFFF,
        frame.tx_id & 0xFFFF,
        size,
    )
    return header + bytes(frame.payload)


def encode_many(frames: Iterable[Frame]) -> bytes:
    """Concatenate several frames into one write item"""
    return b"".join(encode(f) for f in frames)


def peek_payload_size(data: bytes) -> Optional[int]:
    """Declared payload size of the leading header, None if no full header"""
    if len(data) < BLE_HEADER_SIZE:
        return None
    return _HEADER.unpack_from(data)[4]


def decode_strict(data: bytes) -> Frame:
    """Decode the leading frame of data or raise FramingError"""
    if len(data) < BLE_HEADER_SIZE:
        raise FramingError(f"Short header: {len(data)} bytes")

    header_id, flags, rx_id, tx_id, size = _HEADER.unpack_from(data)
    if header_id != BLE_HEADER_ID:
        raise FramingError(f"Invalid header id 0x{header_id:02X}")

    end = BLE_HEADER_SIZE + size
    if len(data) < end:
        raise FramingError(f"Incomplete frame: need {end} bytes, have {len(data)}")

    return Frame(
        flags=flags,
        rx_id=rx_id,
        tx_id=tx_id,
        payload=bytes(data[BLE_HEADER_SIZE:end]),
        header_id=header_id,
    )


def decode(data: bytes) -> Optional[Frame]:
    """Decode the leading frame of data; None when invalid or incomplete"""
    try:
        return decode_strict(data)
    except FramingError as e:
        logger.debug(f"Frame rejected: {e}")
        return None


def split_concatenated(data: bytes) -> List[Frame]:
    """
    Split one notification into its frames.

    Decodes leading frames while the remaining length covers the declared
    payload size. A trailing partial frame is dropped; a bad sentinel stops
    the split and drops everything from that point.
    """
    frames: List[Frame] = []
    view = memoryview(bytes(data))
    offset = 0

    while offset < len(view):
        remaining = view[offset:]
        size = peek_payload_size(remaining)
        if size is None or len(remaining) < size + BLE_HEADER_SIZE:
            logger.warning(f"Dropping {len(remaining)} trailing bytes of incomplete frame")
            break
        try:
            frame = decode_strict(remaining)
        except FramingError as e:
            logger.warning(f"Framing desync, dropping {len(remaining)} bytes: {e}")
            break
        frames.append(frame)
        offset += BLE_HEADER_SIZE + size

    return frames


# ---- Adapter command builders ----

def settings_frame(setting: BridgeSetting, payload: bytes) -> Frame:
    return Frame(flags=CommandFlag.SETTINGS | setting, payload=bytes(payload))


def u16_setting_frame(setting: BridgeSetting, value: int) -> Frame:
    return settings_frame(setting, struct.pack("<H", value & 0xFFFF))


def led_color_frame(writing: bool) -> Frame:
    return settings_frame(
        BridgeSetting.LED_COLOR,
        LED_COLOR_WRITING if writing else LED_COLOR_IDLE,
    )


def persist_clear_frame() -> Frame:
    return Frame(flags=CommandFlag.PER_CLEAR)


def stop_task_command() -> bytes:
    """Persist clear followed by the idle LED color, sent as one write"""
    return encode_many([persist_clear_frame(), led_color_frame(False)])


def read_by_id_frame(did: bytes) -> Frame:
    return Frame(flags=CommandFlag.PER_CLEAR, payload=bytes([UDS_READ_BY_ID]) + bytes(did))


def vin_request() -> bytes:
    return encode(read_by_id_frame(VIN_DID))


def ecu_info_requests() -> List[bytes]:
    return [encode(read_by_id_frame(did)) for did in ECU_INFO_LIST.values()]


def clear_dtc_request() -> bytes:
    return encode(Frame(
        flags=CommandFlag.PER_CLEAR,
        rx_id=BLE_HEADER_RX,
        tx_id=CLEAR_DTC_TX,
        payload=bytes([UDS_CLEAR_DTC]),
    ))
