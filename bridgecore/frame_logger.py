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
Logging frame builder/parser used by the LOGGING task.

The task engine only needs the FrameLogger contract. PID definitions,
unit conversion and CSV output belong to the concrete logger.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .constants import (
    BLE_HEADER_RX, BLE_HEADER_TX, UDS_READ_BY_ID, UDS_READ_BY_ID_POSITIVE,
    CommandFlag, UDSResult,
)
from .frame_codec import Frame, encode

logger = logging.getLogger(__name__)


class FrameLogger(ABC):
    """Per-cycle logging collaborator"""

    @abstractmethod
    def frame_count(self) -> int:
        """Number of initialization frames sent before steady-state logging"""
        pass

    @abstractmethod
    def build_frame(self, index: int) -> bytes:
        """Encoded initialization frame number index"""
        pass

    @abstractmethod
    def process_frame(self, index: int, frame: Optional[Frame]) -> int:
        """Interpret the response for cycle index, returning a UDSResult code"""
        pass

    @abstractmethod
    def is_enabled(self) -> bool:
        """Whether the logger currently writes its output"""
        pass


class ReadByIdentifierLogger(FrameLogger):
    """
    Polls a list of 2-byte data identifiers with ReadDataByIdentifier.

    Identifiers are grouped dids_per_frame at a time. Every group is added to
    the adapter's persist list; the last group also enables persist mode so
    the adapter keeps repeating the requests on its own.
    """

    def __init__(self, dids: Sequence[bytes], dids_per_frame: int = 8,
                 rx_id: int = BLE_HEADER_RX, tx_id: int = BLE_HEADER_TX):
        if not dids:
            raise ValueError("At least one identifier is required")
        if dids_per_frame < 1:
            raise ValueError("dids_per_frame must be positive")

        for did in dids:
            if len(did) != 2:
                raise ValueError(f"Identifier must be 2 bytes: {bytes(did).hex()}")

        self.dids: List[bytes] = [bytes(d) for d in dids]
        self.rx_id = rx_id
        self.tx_id = tx_id
        self._groups = [self.dids[i:i + dids_per_frame]
                        for i in range(0, len(self.dids), dids_per_frame)]
        self._enabled = False
        self._lock = threading.Lock()
        self.last_response: Optional[bytes] = None
        self.responses = 0

    def frame_count(self) -> int:
        return len(self._groups)

    def build_frame(self, index: int) -> bytes:
        group = self._groups[index]
        flags = CommandFlag.PER_ADD
        if index == len(self._groups) - 1:
            flags |= CommandFlag.PER_ENABLE

        payload = bytes([UDS_READ_BY_ID]) + b"".join(group)
        return encode(Frame(flags=flags, rx_id=self.rx_id, tx_id=self.tx_id, payload=payload))

    def process_frame(self, index: int, frame: Optional[Frame]) -> int:
        if frame is None:
            return UDSResult.ERROR_NULL
        if not frame.is_valid():
            return UDSResult.ERROR_HEADER
        if frame.payload_size < 1:
            return UDSResult.ERROR_CMDSIZE

        service = frame.payload[0]
        if service == 0x7F:
            logger.debug(f"Negative response on cycle {index}: {frame.payload.hex(' ')}")
            return UDSResult.ERROR_RESPONSE
        if service != UDS_READ_BY_ID_POSITIVE:
            return UDSResult.ERROR_UNKNOWN
        if frame.payload_size < 3:
            return UDSResult.ERROR_CMDSIZE

        self.last_response = frame.payload
        self.responses += 1
        return UDSResult.OK

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = bool(enabled)
