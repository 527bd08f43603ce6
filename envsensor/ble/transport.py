"""Transport sessions: the callback-driven GATT surface used by the state machine.

A transport session wraps one physical link. Every method that talks to the
radio only initiates the operation and returns; the outcome is delivered
later through the event handler bound with ``set_event_handler``.
"""

import asyncio
from abc import ABC, abstractmethod
from functools import partial
from concurrent.futures import CancelledError, Future
from threading import Lock
from typing import Any, Callable, Dict, Optional, Set

from bleak import BleakClient

from envsensor.ble.client import BLEClient
from envsensor.ble.constants import (
    BLEConfig,
    CCCD_UUID,
    ENABLE_NOTIFICATION_VALUE,
    logger,
)
from envsensor.ble.errors import BLEErrorHandler
from envsensor.ble.events import (
    GATT_CONN_TERMINATE_PEER_USER,
    GATT_CONN_TIMEOUT,
    GATT_ERROR,
    GATT_FAILURE,
    GATT_SUCCESS,
    CharacteristicChanged,
    CharacteristicRead,
    ConnectionStateChanged,
    DescriptorWritten,
    ServicesDiscovered,
)

EventHandler = Callable[[Any], None]

__all__ = ["BleakTransport", "EventHandler", "Transport", "status_for_error"]

_AUTH_MARKERS = ("auth", "not permitted", "notpermitted", "insufficient")


def status_for_error(error: Optional[BaseException]) -> int:
    """Map an exception raised by a bleak operation onto a GATT status code."""
    if error is None:
        return GATT_SUCCESS
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return GATT_CONN_TIMEOUT
    text = str(error).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return GATT_ERROR
    if "disconnected" in text:
        return GATT_CONN_TERMINATE_PEER_USER
    return GATT_FAILURE


class Transport(ABC):
    """One GATT session with a single peer."""

    def __init__(self, address: str):
        self.address = address
        self._handler: Optional[EventHandler] = None

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        """Bind the consumer of this session's events (``None`` detaches it)."""
        self._handler = handler

    def _post(self, event: Any) -> None:
        handler = self._handler
        if handler is None:
            logger.debug("Dropping %s: no event handler bound", type(event).__name__)
            return
        BLEErrorHandler.safe_execute(
            lambda: handler(event),
            error_msg=f"Error handling {type(event).__name__}",
        )

    @abstractmethod
    def connect(self) -> None:
        """Start establishing the link; reports ConnectionStateChanged."""

    @abstractmethod
    def request_high_priority(self) -> bool:
        """Ask for a faster connection interval. Best effort."""

    @abstractmethod
    def discover_services(self) -> None:
        """Start service discovery; reports ServicesDiscovered."""

    @abstractmethod
    def set_notification(self, characteristic_uuid: str, enabled: bool) -> bool:
        """Enable or disable local delivery of notifications for a characteristic."""

    @abstractmethod
    def write_descriptor(
        self, characteristic_uuid: str, descriptor_uuid: str, value: bytes
    ) -> bool:
        """Start a descriptor write; reports DescriptorWritten. False if it could not be initiated."""

    @abstractmethod
    def read_characteristic(self, characteristic_uuid: str) -> bool:
        """Start a characteristic read; reports CharacteristicRead."""

    @abstractmethod
    def disconnect(self) -> None:
        """Start tearing the link down; reports ConnectionStateChanged(connected=False)."""

    @abstractmethod
    def close(self) -> None:
        """Release every resource held by the session. Idempotent."""


class BleakTransport(Transport):
    """
    Transport session backed by bleak.

    bleak coroutines run on a private event loop thread (see BLEClient); their
    completions are translated into transport events. Local delivery is a
    per-characteristic gate in front of bleak's notification callback, and the
    CCCD write is carried out by bleak's ``start_notify``; disabling local
    delivery of a subscribed characteristic also issues ``stop_notify``.
    """

    def __init__(self, address: str, *, client_factory=BleakClient, **kwargs) -> None:
        super().__init__(address)
        self.error_handler = BLEErrorHandler()
        self._client = BLEClient(name=f"BLETransport-{address}")
        self.bleak_client = client_factory(
            address,
            disconnected_callback=self._on_bleak_disconnect,
            timeout=BLEConfig.CONNECTION_TIMEOUT,
            **kwargs,
        )
        self._lock = Lock()
        self._local_delivery: Set[str] = set()
        self._subscriptions: Dict[str, Future] = {}
        self._connect_future: Optional[Future] = None
        self._disconnect_reported = False
        self._closed = False

    def connect(self) -> None:
        logger.debug("Connecting to %s", self.address)
        self._connect_future = self._client.run_then(
            self.bleak_client.connect(), self._on_connect_done
        )

    def _on_connect_done(self, _result, error: Optional[BaseException]) -> None:
        if error is None:
            self._post(ConnectionStateChanged(GATT_SUCCESS, connected=True))
            return
        logger.debug("Connect to %s failed: %s", self.address, error)
        with self._lock:
            self._disconnect_reported = True
        self._post(ConnectionStateChanged(status_for_error(error), connected=False))

    def request_high_priority(self) -> bool:
        # bleak exposes no portable connection-priority request
        logger.debug("Connection priority requests are not supported by bleak")
        return False

    async def _collect_services(self):
        services = self.bleak_client.services
        return tuple(str(service.uuid).lower() for service in services)

    def discover_services(self) -> None:
        self._client.run_then(self._collect_services(), self._on_services_done)

    def _on_services_done(self, uuids, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Service discovery on %s failed: %s", self.address, error)
            self._post(ServicesDiscovered(GATT_FAILURE))
            return
        self._post(ServicesDiscovered(GATT_SUCCESS, uuids))

    def _characteristic(self, characteristic_uuid: str):
        services = self.error_handler.safe_execute(
            lambda: self.bleak_client.services,
            error_msg="GATT services not available",
        )
        if services is None:
            return None
        return services.get_characteristic(characteristic_uuid)

    def set_notification(self, characteristic_uuid: str, enabled: bool) -> bool:
        key = characteristic_uuid.lower()
        characteristic = self._characteristic(key)
        if characteristic is None:
            logger.warning("Characteristic not found: %s", key)
            return False
        if enabled:
            properties = set(getattr(characteristic, "properties", ()))
            if not properties & {"notify", "indicate"}:
                logger.warning(
                    "Characteristic %s does not support notifications (properties: %s)",
                    key,
                    sorted(properties),
                )
                return False
            with self._lock:
                self._local_delivery.add(key)
        else:
            with self._lock:
                self._local_delivery.discard(key)
                subscription = self._subscriptions.pop(key, None)
            if subscription is not None:
                self._unsubscribe(key, characteristic, subscription)
        return True

    def _unsubscribe(self, key: str, characteristic, subscription: Future) -> None:
        async def _stop():
            # start_notify may still be in flight after a timed out acknowledgment
            await asyncio.wrap_future(subscription)
            await self.bleak_client.stop_notify(characteristic)

        try:
            self._client.run_then(_stop(), partial(self._on_unsubscribe_done, key))
        except BLEClient.BLEError as e:
            logger.debug("Unsubscribe from %s not initiated: %s", key, e)

    def _on_unsubscribe_done(self, key: str, _result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("stop_notify on %s failed: %s", key, error)
            return
        logger.debug("Unsubscribed from %s", key)

    def write_descriptor(
        self, characteristic_uuid: str, descriptor_uuid: str, value: bytes
    ) -> bool:
        key = characteristic_uuid.lower()
        characteristic = self._characteristic(key)
        if characteristic is None:
            return False
        if descriptor_uuid.lower() != CCCD_UUID or bytes(value) != ENABLE_NOTIFICATION_VALUE:
            logger.warning(
                "Unsupported descriptor write on %s: %s = %s",
                key,
                descriptor_uuid,
                bytes(value).hex(),
            )
            return False
        try:
            subscription = self._client.run_then(
                self.bleak_client.start_notify(characteristic, self._on_notify),
                partial(self._on_descriptor_done, key),
            )
        except BLEClient.BLEError as e:
            logger.debug("Descriptor write on %s not initiated: %s", key, e)
            return False
        with self._lock:
            self._subscriptions[key] = subscription
        return True

    def _on_descriptor_done(self, key: str, _result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Descriptor write on %s failed: %s", key, error)
        self._post(DescriptorWritten(key, GATT_SUCCESS if error is None else GATT_FAILURE))

    def read_characteristic(self, characteristic_uuid: str) -> bool:
        key = characteristic_uuid.lower()
        characteristic = self._characteristic(key)
        if characteristic is None:
            return False
        try:
            self._client.run_then(
                self._with_io_timeout(self.bleak_client.read_gatt_char(characteristic), "read"),
                partial(self._on_read_done, key),
            )
        except BLEClient.BLEError as e:
            logger.debug("Read of %s not initiated: %s", key, e)
            return False
        return True

    @staticmethod
    async def _with_io_timeout(awaitable, label: str):
        return await BLEClient._with_timeout(awaitable, BLEConfig.GATT_IO_TIMEOUT, label)

    def _on_read_done(self, key: str, result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Read of %s failed: %s", key, error)
            self._post(CharacteristicRead(key, b"", status_for_error(error)))
            return
        self._post(CharacteristicRead(key, bytes(result or b""), GATT_SUCCESS))

    def _on_notify(self, sender, data: bytearray) -> None:
        key = str(getattr(sender, "uuid", sender)).lower()
        with self._lock:
            delivered = key in self._local_delivery
        if not delivered:
            logger.debug("Ignoring notification from %s: local delivery disabled", key)
            return
        self._post(CharacteristicChanged(key, bytes(data)))

    def disconnect(self) -> None:
        if self._closed:
            return
        try:
            self._client.run_then(self.bleak_client.disconnect(), self._on_disconnect_done)
        except BLEClient.BLEError:
            self._report_disconnect(GATT_SUCCESS)

    def _on_disconnect_done(self, _result, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.debug("Disconnect from %s failed: %s", self.address, error)
        self._report_disconnect(GATT_SUCCESS)

    def _on_bleak_disconnect(self, _client) -> None:
        logger.debug("bleak reported disconnect from %s", self.address)
        self._report_disconnect(GATT_SUCCESS)

    def _report_disconnect(self, status: int) -> None:
        with self._lock:
            if self._disconnect_reported:
                return
            self._disconnect_reported = True
        self._post(ConnectionStateChanged(status, connected=False))

    async def _release_link(self, pending: Future) -> None:
        """Settle an in-flight connect, then make sure the link is torn down."""
        if not pending.done():
            logger.debug("Abandoning connect to %s still in progress", self.address)
            pending.cancel()
        try:
            await asyncio.wrap_future(pending)
        except (asyncio.CancelledError, CancelledError):
            logger.debug("Pending connect to %s cancelled", self.address)
        await BLEClient._with_timeout(
            self.bleak_client.disconnect(), BLEConfig.DISCONNECT_TIMEOUT_SECONDS, "disconnect"
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.set_event_handler(None)
        with self._lock:
            self._local_delivery.clear()
            self._subscriptions.clear()
            pending = self._connect_future
        final = self._release_link(pending) if pending is not None else None
        self._client.close(final)
        logger.debug("Transport session for %s closed", self.address)

    def __repr__(self) -> str:
        return f"BleakTransport({self.address!r})"
