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
bridgecore command line

Examples:
  bridgecore run vin
  bridgecore run ecu-info --simulate
  bridgecore run log --did F40D --did F40C --duration 30
  bridgecore serve --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from . import config
from .bridge_service import BridgeService
from .communication_interface import BaseLink
from .config import BridgeSettings
from .events import (
    ConnectionState, EventBus, EventQueue, StateChanged, TaskChanged,
    TaskState, event_message,
)
from .frame_logger import ReadByIdentifierLogger
from .logger import setup_logging

log = logging.getLogger("bridgecore.cli")

# task name -> service command
TASKS = {
    "vin": "check-vin",
    "ecu-info": "get-ecu-info",
    "clear-dtc": "clear-dtc",
    "log": "check-pid",
    "flash": "flash-ecu-cal",
}

# tasks that return to NONE by themselves
SELF_ENDING = {"vin", "clear-dtc"}

DEFAULT_DIDS = ["F40D"]


def _parse_did(text: str) -> bytes:
    try:
        did = bytes.fromhex(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not a hex identifier: {text}")
    if len(did) != 2:
        raise argparse.ArgumentTypeError(f"Identifier must be 2 bytes: {text}")
    return did


def _build_link(simulate: bool) -> BaseLink:
    if simulate:
        from .simulator import SimulatedLink
        return SimulatedLink(persist_period=0.25)
    from .bluetooth_manager import BluetoothManager
    return BluetoothManager()


def _install_signal_handlers(stop: threading.Event) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, lambda *_: stop.set())
        except (ValueError, OSError):
            # not on the main thread, or unsupported on this platform
            pass


def action_run(task: str, simulate: bool, dids: List[bytes], duration: float,
               settings: BridgeSettings) -> int:
    bus = EventBus()
    events = EventQueue(bus)
    frame_logger = ReadByIdentifierLogger(dids) if task == "log" else None
    if frame_logger is not None:
        frame_logger.set_enabled(True)

    service = BridgeService(_build_link(simulate), settings=settings, bus=bus, frame_logger=frame_logger)
    stop = threading.Event()
    _install_signal_handlers(stop)

    service.start_service()
    try:
        service.connect()
        state = _wait_connect_result(events, settings.scan_period + 15.0)
        if state is None or state.state is not ConnectionState.CONNECTED:
            print(f"Unable to connect: {state.to_dict() if state else 'timeout'}", file=sys.stderr)
            return 1
        log.info(f"Connected to {service.device}, running {task}")

        service.execute(TASKS[task])
        return _print_events(events, task, duration, stop)
    finally:
        service.stop_service()


def _wait_connect_result(events: EventQueue, timeout: float) -> Optional[StateChanged]:
    """First state after CONNECTING: CONNECTED, NONE (scan timeout) or ERROR"""
    seen_connecting = False

    def _settled(event) -> bool:
        nonlocal seen_connecting
        if not isinstance(event, StateChanged):
            return False
        if event.state is ConnectionState.CONNECTING:
            seen_connecting = True
            return False
        return seen_connecting

    return events.wait_for(_settled, timeout=timeout)


def _print_events(events: EventQueue, task: str, duration: float, stop: threading.Event) -> int:
    started = False
    deadline = None if duration <= 0 else time.monotonic() + duration

    while not stop.is_set():
        if deadline is not None and time.monotonic() >= deadline:
            break

        event = events.get(timeout=0.2)
        if event is None:
            continue
        print(json.dumps(event_message(event)), flush=True)

        if isinstance(event, StateChanged) and event.state is not ConnectionState.CONNECTED:
            return 0 if event.state is ConnectionState.NONE else 1
        if isinstance(event, TaskChanged):
            if event.task is not TaskState.NONE:
                started = True
            elif started and task in SELF_ENDING:
                return 0
    return 0


def action_serve(host: str, port: int, simulate: bool, settings: BridgeSettings) -> int:
    from .api.server import create_api_server, run_api_server

    service = BridgeService(_build_link(simulate), settings=settings)
    service.start_service()
    api_server = create_api_server(service)
    try:
        run_api_server(api_server, host=host, port=port)
    finally:
        api_server.close()
        service.stop_service()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="bridgecore",
        description="BLE_TO_ISOTP bridge client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--simulate", action="store_true", help="Use the in-memory simulated adapter")
    p.add_argument("--debug", action="store_true", help="Verbose console logging")
    p.add_argument("--no-log-file", action="store_true", help="Console logging only")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Connect, run one task and print its events")
    p_run.add_argument("task", choices=sorted(TASKS), help="Task to run")
    p_run.add_argument("--did", action="append", type=_parse_did,
                       help="Identifier to log, hex (repeatable, log task only)")
    p_run.add_argument("--duration", type=float, default=10.0,
                       help="Seconds to stream events for tasks that do not end by themselves (0 = until Ctrl-C)")

    p_serve = sub.add_parser("serve", help="Run the REST/WebSocket API server")
    p_serve.add_argument("--host", default=config.API_HOST)
    p_serve.add_argument("--port", type=int, default=config.API_PORT)

    args = p.parse_args(argv)

    setup_logging(debug=args.debug or None, to_file=not args.no_log_file)
    settings = BridgeSettings.from_env()

    if args.cmd == "run":
        dids = args.did or [_parse_did(d) for d in DEFAULT_DIDS]
        return action_run(args.task, args.simulate, dids, args.duration, settings)
    if args.cmd == "serve":
        return action_serve(args.host, args.port, args.simulate, settings)

    return 2


if __name__ == "__main__":
    sys.exit(main())
