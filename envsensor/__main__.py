"""Command line consumer: scan for sensors or monitor one of them.

    python -m envsensor --scan
    python -m envsensor --ble AA:BB:CC:DD:EE:FF --poll 5 --retries 3
"""

import argparse
import logging
import sys
import threading
import time
from typing import Iterable, List, Optional

from pubsub import pub
from tabulate import tabulate

from envsensor.ble import (
    TOPIC_READING,
    TOPIC_STATE,
    TOPIC_STATUS,
    BLEConfig,
    ConnectionState,
    ConnectionStateMachine,
    DeviceScanner,
    DiscoveredDevice,
    MeasurementChannel,
    PermissionDenied,
    Reading,
    ReadingPublisher,
    bluetooth_group_authorized,
    connect_retry,
)

logger = logging.getLogger(__name__)


def format_device_table(devices: Iterable[DiscoveredDevice]) -> str:
    """Render discovered devices, strongest signal first."""
    rows: List[dict] = []
    for i, found in enumerate(sorted(devices, key=lambda d: d.rssi, reverse=True)):
        rows.append(
            {
                "N": i + 1,
                "Name": found.name,
                "Address": found.address,
                "RSSI": f"{found.rssi} dBm",
                "Seen": found.sightings,
            }
        )
    if not rows:
        return "No sensors found."
    return tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid")


def format_reading(reading: Reading, fahrenheit: bool = False) -> str:
    if fahrenheit and reading.channel == MeasurementChannel.TEMPERATURE:
        return f"{reading.channel.label}: {reading.value * 9 / 5 + 32:.2f} °F"
    return str(reading)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="envsensor",
        description="Scan for and monitor BLE environmental sensors.",
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "--scan", action="store_true", help="List nearby sensors and exit."
    )
    mode.add_argument(
        "--ble", metavar="ADDRESS", help="Connect to the sensor at ADDRESS and print readings."
    )
    parser.add_argument(
        "--scan-time",
        type=float,
        default=BLEConfig.BLE_SCAN_TIMEOUT,
        metavar="SECONDS",
        help=f"Length of the scan window (default: {BLEConfig.BLE_SCAN_TIMEOUT:.0f}).",
    )
    parser.add_argument(
        "--poll",
        type=float,
        nargs="?",
        const=BLEConfig.DEFAULT_POLL_INTERVAL,
        default=None,
        metavar="SECONDS",
        help="Also read every channel explicitly at this interval "
        f"(default when given without a value: {BLEConfig.DEFAULT_POLL_INTERVAL:.0f}).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Reconnect up to this many times after the link is lost (default: 0).",
    )
    parser.add_argument(
        "--fahrenheit", action="store_true", help="Print temperatures in °F."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def scan(args) -> int:
    publisher = ReadingPublisher()
    scanner = DeviceScanner(
        publisher,
        authorization_check=bluetooth_group_authorized,
        scan_period=args.scan_time,
    )
    if not scanner.start_scan():
        return 1
    try:
        while scanner.is_scanning:
            time.sleep(0.25)
    except KeyboardInterrupt:
        scanner.stop_scan()
    print(format_device_table(scanner.devices))
    return 0


def monitor(args) -> int:
    publisher = ReadingPublisher()
    machine = ConnectionStateMachine(
        publisher, authorization_check=bluetooth_group_authorized
    )
    policy = connect_retry(args.retries)
    link_down = threading.Event()
    reached_ready = threading.Event()

    def on_state(source, state, error):  # pylint: disable=unused-argument
        logger.info("Connection state: %s", state.value)
        if state == ConnectionState.READY:
            reached_ready.set()
        elif state == ConnectionState.DISCONNECTED:
            link_down.set()

    def on_reading(source, reading):  # pylint: disable=unused-argument
        print(format_reading(reading, args.fahrenheit), flush=True)

    def on_status(source, message, error):  # pylint: disable=unused-argument
        if error is not None:
            logger.warning("%s", message)
        else:
            logger.info("%s", message)

    pub.subscribe(on_state, TOPIC_STATE)
    pub.subscribe(on_reading, TOPIC_READING)
    pub.subscribe(on_status, TOPIC_STATUS)
    try:
        while True:
            link_down.clear()
            reached_ready.clear()
            machine.connect(args.ble)
            while not link_down.wait(args.poll):
                machine.refresh()
            if reached_ready.is_set():
                policy.reset()
            if not policy.wait():
                if machine.last_error is not None:
                    logger.error("Giving up: %s", machine.last_error)
                    return 1
                return 0
            logger.info("Reconnecting to %s (attempt %d)...", args.ble, policy.attempts)
    except PermissionDenied as e:
        print(e, file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        logger.info("Exiting...")
        return 0
    finally:
        machine.close_connection()
        pub.unsubscribe(on_state, TOPIC_STATE)
        pub.unsubscribe(on_reading, TOPIC_READING)
        pub.unsubscribe(on_status, TOPIC_STATUS)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.scan_time <= 0:
        parser.error("--scan-time must be > 0")
    if args.poll is not None and args.poll <= 0:
        parser.error("--poll must be > 0")
    if args.retries < 0:
        parser.error("--retries must be >= 0")
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.scan:
        try:
            return scan(args)
        except PermissionDenied as e:
            print(e, file=sys.stderr)
            return 2
    return monitor(args)


if __name__ == "__main__":
    sys.exit(main())
