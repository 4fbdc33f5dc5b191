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

# File: bridgecore/config.py
# bridgecore: runtime configuration

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .constants import (
    BLE_DEVICE_NAME, BLE_GATT_MTU_SIZE, BLE_SCAN_PERIOD,
    DEFAULT_PERSIST_DELAY, DEFAULT_PERSIST_Q_DELAY, DEFAULT_UPDATE_RATE,
    TASK_END_DELAY, TASK_END_TIMEOUT,
)

# optional: allows overrides from a .env file
load_dotenv()


# -------- helpers --------
def _env(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v not in (None, "") else default

def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)))
    except ValueError:
        return default

def _env_bool(name: str, default: bool) -> bool:
    v = _env(name, str(default)).strip().lower()
    return v in ("1", "true", "yes", "y", "on") if v else default

def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


# ---- Feature Flags ----
DEBUG_MODE = _env_bool("BRIDGE_DEBUG_MODE", False)           # verbose console logs
LOG_COMMUNICATIONS = _env_bool("BRIDGE_LOG_COMMUNICATIONS", False)  # TX/RX hex dumps

# ---- Paths ----
LOG_DIR = Path(_env("BRIDGE_LOG_DIR", "logs")).expanduser()

# ---- API server ----
API_HOST = _env("BRIDGE_API_HOST", "127.0.0.1")
API_PORT = _env_int("BRIDGE_API_PORT", 8765)


@dataclass
class BridgeSettings:
    """Tunables for one bridge service instance"""
    device_name: str = BLE_DEVICE_NAME
    scan_period: float = BLE_SCAN_PERIOD           # seconds
    mtu_size: int = BLE_GATT_MTU_SIZE
    task_end_delay: float = TASK_END_DELAY / 1000.0      # completion grace, seconds
    task_end_timeout: float = TASK_END_TIMEOUT / 1000.0  # hard timeout, seconds
    update_rate: int = DEFAULT_UPDATE_RATE         # log progress every N cycles
    persist_delay: int = DEFAULT_PERSIST_DELAY
    persist_q_delay: int = DEFAULT_PERSIST_Q_DELAY
    worker_idle_sleep: float = 0.002               # seconds, only when a loop pass did nothing
    write_ack_timeout: Optional[float] = None      # None keeps a stuck write stuck

    def __post_init__(self):
        if self.update_rate < 1:
            raise ValueError("update_rate must be at least 1")
        if self.task_end_timeout < self.task_end_delay:
            raise ValueError("task_end_timeout must not be shorter than task_end_delay")
        if not (0 <= self.persist_delay <= 0xFFFF and 0 <= self.persist_q_delay <= 0xFFFF):
            raise ValueError("persist delays must fit in 16 bits")

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        return cls(
            device_name=_env("BRIDGE_DEVICE_NAME", BLE_DEVICE_NAME),
            scan_period=_env_float("BRIDGE_SCAN_PERIOD", BLE_SCAN_PERIOD),
            mtu_size=_env_int("BRIDGE_MTU_SIZE", BLE_GATT_MTU_SIZE),
            task_end_delay=_env_int("BRIDGE_TASK_END_DELAY_MS", TASK_END_DELAY) / 1000.0,
            task_end_timeout=_env_int("BRIDGE_TASK_END_TIMEOUT_MS", TASK_END_TIMEOUT) / 1000.0,
            update_rate=_env_int("BRIDGE_UPDATE_RATE", DEFAULT_UPDATE_RATE),
            persist_delay=_env_int("BRIDGE_PERSIST_DELAY", DEFAULT_PERSIST_DELAY),
            persist_q_delay=_env_int("BRIDGE_PERSIST_Q_DELAY", DEFAULT_PERSIST_Q_DELAY),
            worker_idle_sleep=_env_float("BRIDGE_WORKER_IDLE_SLEEP", 0.002),
            write_ack_timeout=_env_optional_float("BRIDGE_WRITE_ACK_TIMEOUT"),
        )
