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
Bridge Constants Module

Wire-level constants for the BLE_TO_ISOTP bridge adapter: GATT identifiers,
frame header defaults, command flags, adapter settings and the UDS
identifier table used for the ECU info dump.
"""

from enum import IntEnum
from typing import Dict, Optional

# ---- BLE / GATT ----
BLE_DEVICE_NAME = "BLE_TO_ISOTP"
BLE_GATT_MTU_SIZE = 512
BLE_SCAN_PERIOD = 5.0  # seconds

BLE_SERVICE_UUID = "0000abf0-0000-1000-8000-00805f9b34fb"
BLE_DATA_TX_UUID = "0000abf1-0000-1000-8000-00805f9b34fb"
BLE_DATA_RX_UUID = "0000abf2-0000-1000-8000-00805f9b34fb"

GATT_SUCCESS = 0

# ---- Frame header ----
BLE_HEADER_ID = 0xF1
BLE_HEADER_RX = 0x7E8
BLE_HEADER_TX = 0x7E0
BLE_HEADER_SIZE = 8

# Clear DTC goes out on the functional broadcast id
CLEAR_DTC_TX = 0x700


class CommandFlag(IntEnum):
    """Bits of the header command flags byte"""
    PER_ENABLE = 1
    PER_CLEAR = 2
    PER_ADD = 4
    SPLIT_PK = 8
    SETTINGS_GET = 64
    SETTINGS = 128


class BridgeSetting(IntEnum):
    """Adapter settings, OR-ed into the flags byte with CommandFlag.SETTINGS"""
    ISOTP_STMIN = 1
    LED_COLOR = 2
    PERSIST_DELAY = 3
    PERSIST_Q_DELAY = 4
    BLE_SEND_DELAY = 5
    BLE_MULTI_DELAY = 6


# LED payloads for BridgeSetting.LED_COLOR
LED_COLOR_IDLE = bytes([0x00, 0x00, 0x80, 0x00])
LED_COLOR_WRITING = bytes([0x00, 0x80, 0x00, 0x00])

# ---- UDS ----
UDS_READ_BY_ID = 0x22
UDS_READ_BY_ID_POSITIVE = 0x62
UDS_CLEAR_DTC = 0x04

VIN_DID = bytes([0xF1, 0x90])


class UDSResult(IntEnum):
    """Result codes returned by the logging frame processor"""
    OK = 0
    ERROR_RESPONSE = 1
    ERROR_NULL = 2
    ERROR_HEADER = 3
    ERROR_CMDSIZE = 4
    ERROR_UNKNOWN = 5


# Identifiers requested by the ECU info dump (insertion order is send order)
ECU_INFO_LIST: Dict[str, bytes] = {
    "VIN": bytes([0xF1, 0x90]),
    "ASAM/ODX File Identifier": bytes([0xF1, 0x9E]),
    "ASAM/ODX File Version": bytes([0xF1, 0xA2]),
    "Vehicle Speed": bytes([0xF4, 0x0D]),
    "Calibration Version Numbers": bytes([0xF8, 0x06]),
    "VW Spare part Number": bytes([0xF1, 0x87]),
    "VW ASW Version": bytes([0xF1, 0x89]),
    "ECU Hardware Number": bytes([0xF1, 0x91]),
    "ECU Hardware Version Number": bytes([0xF1, 0xA3]),
    "System Name/Engine type": bytes([0xF1, 0x97]),
    "Engine Code": bytes([0xF1, 0xAD]),
    "VW Workshop Name": bytes([0xF1, 0xAA]),
    "State of Flash Mem": bytes([0x04, 0x05]),
    "VW Coding Value": bytes([0x06, 0x00]),
}


def ecu_info_name(did: bytes) -> Optional[str]:
    """Map a 2-byte identifier back to its ECU_INFO_LIST name"""
    for name, value in ECU_INFO_LIST.items():
        if value == bytes(did):
            return name
    return None


# ---- Task timing (milliseconds) ----
TASK_END_DELAY = 1000
TASK_END_TIMEOUT = 5000

# ---- Logging defaults ----
DEFAULT_UPDATE_RATE = 4
DEFAULT_PERSIST_DELAY = 20
DEFAULT_PERSIST_Q_DELAY = 10
