"""Time-boxed discovery of nearby sensors."""

from abc import ABC, abstractmethod
from dataclasses import replace
from functools import partial
from threading import RLock, Timer
from typing import Callable, Dict, Optional, Tuple

from bleak import BleakScanner

from envsensor.ble.authorization import AuthorizationCheck, always_authorized
from envsensor.ble.client import BLEClient
from envsensor.ble.constants import BLEConfig, ERROR_SCAN_IN_PROGRESS, logger
from envsensor.ble.errors import BLEErrorHandler, PermissionDenied, ScanFailed
from envsensor.ble.models import Device, DiscoveredDevice
from envsensor.ble.publisher import ReadingPublisher

DeviceCallback = Callable[[str, Optional[str], int], None]
FailureCallback = Callable[[Optional[int]], None]

__all__ = ["BleakScanBackend", "DeviceScanner", "ScanBackend"]


class ScanBackend(ABC):
    """One platform scan session reporting detections through callbacks."""

    def __init__(self, on_device: DeviceCallback, on_failure: FailureCallback):
        self._on_device = on_device
        self._on_failure = on_failure

    @abstractmethod
    def start(self) -> None:
        """Begin an unfiltered scan without blocking."""

    @abstractmethod
    def stop(self) -> None:
        """Stop scanning and release the session. Idempotent."""


class BleakScanBackend(ScanBackend):
    """Scan session driven by a ``BleakScanner`` detection callback."""

    def __init__(
        self,
        on_device: DeviceCallback,
        on_failure: FailureCallback,
        *,
        scanner_factory=BleakScanner,
    ):
        super().__init__(on_device, on_failure)
        self._scanner_factory = scanner_factory
        self._scanner = None
        self._client = BLEClient(name="BLEScanner")

    async def _start(self) -> None:
        self._scanner = self._scanner_factory(detection_callback=self._on_detection)
        await self._scanner.start()

    def start(self) -> None:
        self._client.run_then(self._start(), self._on_start_done)

    def _on_start_done(self, _result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.warning("BLE scan could not be started: %s", error)
            self._on_failure(getattr(error, "code", None))

    def _on_detection(self, device, advertisement_data) -> None:
        name = device.name or getattr(advertisement_data, "local_name", None)
        rssi = getattr(advertisement_data, "rssi", None)
        if rssi is None:
            rssi = getattr(device, "rssi", 0)
        self._on_device(device.address, name, rssi)

    async def _stop(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await scanner.stop()

    def stop(self) -> None:
        if self._client.closed:
            return
        self._client.close(self._stop())


class DeviceScanner:
    """
    Collects named devices seen during a bounded scan window.

    The candidate list is cleared at the start of every scan and published on
    each change. Repeated advertisements from an address update its RSSI,
    sighting count and last-seen position in place. The scan stops by itself
    after ``scan_period`` seconds.
    """

    def __init__(
        self,
        publisher: ReadingPublisher,
        *,
        authorization_check: AuthorizationCheck = always_authorized,
        backend_factory: Callable[[DeviceCallback, FailureCallback], ScanBackend] = BleakScanBackend,
        scan_period: float = BLEConfig.BLE_SCAN_TIMEOUT,
        timer_factory=Timer,
    ):
        self.publisher = publisher
        self._authorization_check = authorization_check
        self._backend_factory = backend_factory
        self._scan_period = scan_period
        self._timer_factory = timer_factory
        self._lock = RLock()
        self._devices: Dict[str, DiscoveredDevice] = {}
        self._backend: Optional[ScanBackend] = None
        self._session: Optional[object] = None
        self._timer = None
        self._sequence = 0

    @property
    def is_scanning(self) -> bool:
        with self._lock:
            return self._backend is not None

    @property
    def devices(self) -> Tuple[DiscoveredDevice, ...]:
        with self._lock:
            return tuple(self._devices.values())

    def start_scan(self) -> bool:
        """
        Start a scan window.

        Returns False if a scan is already running or could not be started.

        Raises:
            PermissionDenied: Bluetooth access has not been granted.
        """
        granted = bool(
            BLEErrorHandler.safe_execute(
                self._authorization_check,
                default_return=False,
                error_msg="Bluetooth authorization check failed",
            )
        )
        self.publisher.set_permission_granted(granted)
        if not granted:
            error = PermissionDenied("scan")
            logger.error("%s", error)
            self.publisher.publish_error(error)
            raise error

        with self._lock:
            if self._backend is not None:
                logger.warning(ERROR_SCAN_IN_PROGRESS)
                self.publisher.publish_status(ERROR_SCAN_IN_PROGRESS)
                return False
            self._devices.clear()
            self._sequence = 0
            self.publisher.publish_devices(())

            session = object()
            backend = self._backend_factory(
                partial(self._on_device, session), partial(self._on_failure, session)
            )
            self._session = session
            self._backend = backend
            try:
                backend.start()
            except Exception as e:
                logger.warning("Failed to start BLE scan: %s", e, exc_info=True)
                self._end_session()
                self.publisher.publish_error(ScanFailed(None))
                return False

            timer = self._timer_factory(self._scan_period, self.stop_scan)
            timer.daemon = True
            self._timer = timer
            timer.start()
            logger.info("Scanning for BLE devices (takes %.0f seconds)...", self._scan_period)
            self.publisher.publish_status("Scanning for sensors...")
            return True

    def stop_scan(self) -> None:
        """End the current scan window. Idempotent."""
        with self._lock:
            if self._backend is None:
                return
            self._end_session()
            logger.info("Scan finished: %d device(s) found", len(self._devices))
            self.publisher.publish_status(f"Scan finished: {len(self._devices)} device(s) found")

    def _end_session(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        backend, self._backend = self._backend, None
        self._session = None
        if backend is not None:
            BLEErrorHandler.safe_cleanup(backend.stop, "scan stop")

    def _on_device(self, session: object, address: str, name: Optional[str], rssi: int) -> None:
        if not name:
            return
        with self._lock:
            if session is not self._session:
                return
            self._sequence += 1
            existing = self._devices.get(address)
            if existing is None:
                logger.debug("Discovered %s (%s) rssi=%s", name, address, rssi)
                self._devices[address] = DiscoveredDevice(
                    Device(address, name), rssi, 1, self._sequence
                )
            else:
                self._devices[address] = replace(
                    existing,
                    rssi=rssi,
                    sightings=existing.sightings + 1,
                    last_seen=self._sequence,
                )
            self.publisher.publish_devices(self._devices.values())

    def _on_failure(self, session: object, code: Optional[int]) -> None:
        with self._lock:
            if session is not self._session:
                return
            error = ScanFailed(code)
            logger.error("%s", error)
            self._end_session()
            self.publisher.publish_error(error)

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.stop_scan()
