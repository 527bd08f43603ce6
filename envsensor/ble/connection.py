"""Connection state machine for a single environmental sensor."""

import time
from functools import partial
from typing import Callable, List, Optional, Union

from envsensor.ble.authorization import AuthorizationCheck, always_authorized
from envsensor.ble.constants import SERVICE_UUID, logger
from envsensor.ble.decoder import PayloadDecoder
from envsensor.ble.errors import (
    BLEErrorHandler,
    ConnectionBusy,
    ConnectionFailed,
    EnvSensorError,
    MalformedPayload,
    PermissionDenied,
    ServiceDiscoveryFailed,
    ServiceNotFound,
)
from envsensor.ble.events import (
    GATT_FAILURE,
    GATT_SUCCESS,
    CharacteristicChanged,
    CharacteristicRead,
    ConnectionStateChanged,
    DescriptorWriteTimedOut,
    DescriptorWritten,
    ServicesDiscovered,
    describe_status,
)
from envsensor.ble.gating import (
    _claim_connection,
    _current_connection,
    _release_connection,
)
from envsensor.ble.models import CHANNEL_ORDER, Device, MeasurementChannel
from envsensor.ble.notifications import ChannelSlots, NotificationEnabler
from envsensor.ble.publisher import ReadingPublisher
from envsensor.ble.state import BLEStateManager, ConnectionState
from envsensor.ble.transport import BleakTransport, Transport

__all__ = ["Connection", "ConnectionStateMachine"]


class Connection:
    """The live transport session together with its per-channel slots."""

    def __init__(self, device: Device, session: Transport):
        self.device = device
        self.session = session
        self.slots = ChannelSlots()
        self.dispatch: Callable[[object], None] = lambda event: None
        self.authorize: Callable[[], bool] = lambda: True

    def __repr__(self) -> str:
        return f"Connection({self.device.address!r})"


class ConnectionStateMachine:
    """
    Drives one sensor through connect, discovery and notification setup.

    Every transport event is handled under the state manager's lock, so the
    handlers below are the only writers of connection state. Events from a
    session that is no longer current are dropped. Failures are reported on
    the publisher's status stream and never raised from event handlers;
    ERROR is passed through on the way back to DISCONNECTED once the session
    has been released, so ``connect`` is always possible afterwards.
    """

    def __init__(
        self,
        publisher: ReadingPublisher,
        *,
        transport_factory: Callable[[str], Transport] = BleakTransport,
        authorization_check: AuthorizationCheck = always_authorized,
        enabler: Optional[NotificationEnabler] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.publisher = publisher
        self.error_handler = BLEErrorHandler()
        self._state_manager = BLEStateManager(listener=publisher.publish_state)
        self._lock = self._state_manager.lock
        self._transport_factory = transport_factory
        self._authorization_check = authorization_check
        self._enabler = enabler or NotificationEnabler(publisher.publish_error)
        self._decoder = PayloadDecoder(clock)
        self._connection: Optional[Connection] = None
        self._handlers = {
            ConnectionStateChanged: self._on_connection_state_changed,
            ServicesDiscovered: self._on_services_discovered,
            DescriptorWritten: self._on_descriptor_written,
            DescriptorWriteTimedOut: self._on_descriptor_timeout,
            CharacteristicChanged: self._on_characteristic_changed,
            CharacteristicRead: self._on_characteristic_read,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state_manager.state

    @property
    def last_error(self) -> Optional[EnvSensorError]:
        return self._state_manager.last_error

    @property
    def is_ready(self) -> bool:
        return self._state_manager.is_ready

    @property
    def device(self) -> Optional[Device]:
        with self._lock:
            return self._connection.device if self._connection else None

    @property
    def enabled_channels(self) -> List[MeasurementChannel]:
        """Channels whose notifications were acknowledged on the current session."""
        with self._lock:
            if self._connection is None:
                return []
            return self._connection.slots.enabled_channels()

    def _check_authorization(self, operation: str) -> Optional[PermissionDenied]:
        """Consult the authorization check; on denial publish and return the error."""
        granted = bool(
            self.error_handler.safe_execute(
                self._authorization_check,
                default_return=False,
                error_msg="Bluetooth authorization check failed",
            )
        )
        self.publisher.set_permission_granted(granted)
        if granted:
            return None
        error = PermissionDenied(operation)
        logger.error("%s", error)
        self.publisher.publish_error(error)
        return error

    def _require_authorization(self, operation: str) -> None:
        error = self._check_authorization(operation)
        if error is not None:
            raise error

    def _authorize_enable(self) -> bool:
        return self._check_authorization("enable notifications") is None

    def connect(self, device: Union[Device, str]) -> None:
        """
        Start connecting to ``device``.

        Returns as soon as the connection attempt has been initiated; progress
        is published as state changes.

        Raises:
            PermissionDenied: Bluetooth access has not been granted.
            ConnectionBusy: a connection is established or in progress.
        """
        if isinstance(device, str):
            device = Device(device)
        self._require_authorization("connect")
        with self._lock:
            if not self._state_manager.can_connect:
                raise ConnectionBusy()
            if not _claim_connection(self, device.address):
                raise ConnectionBusy(
                    "Another sensor connection is already active in this process "
                    f"({_current_connection()})"
                )
            logger.info("Connecting to %s", device)
            try:
                session = self._transport_factory(device.address)
            except Exception:
                _release_connection(self)
                logger.exception("Could not create a transport session for %s", device)
                self.publisher.publish_error(ConnectionFailed(GATT_FAILURE))
                return

            connection = Connection(device, session)
            connection.dispatch = partial(self._dispatch, connection)
            connection.authorize = self._authorize_enable
            session.set_event_handler(connection.dispatch)
            self._connection = connection
            self._state_manager.transition_to(ConnectionState.CONNECTING)
            self.publisher.publish_status(f"Connecting to {device}")
            try:
                session.connect()
            except Exception:
                logger.warning("Failed to initiate connection to %s", device, exc_info=True)
                self._fail(ConnectionFailed(GATT_FAILURE))

    def disconnect(self) -> None:
        """Ask the current session to disconnect; resources are released when it reports back."""
        self._require_authorization("disconnect")
        with self._lock:
            connection = self._connection
            if connection is None:
                logger.debug("disconnect() called with no active connection")
                return
            logger.info("Disconnecting from %s", connection.device)
            try:
                connection.session.disconnect()
            except Exception as e:
                logger.debug("Disconnect request failed (%s); closing session", e)
                self.close_connection()

    def close_connection(self) -> None:
        """Release the session, cancel pending notification work and return to DISCONNECTED. Idempotent."""
        with self._lock:
            connection, self._connection = self._connection, None
            if connection is not None:
                self._enabler.cancel(connection)
                self.error_handler.safe_cleanup(connection.session.close, "transport close")
                _release_connection(self)
                logger.debug("Connection to %s closed", connection.device)
            if self._state_manager.state != ConnectionState.DISCONNECTED:
                self._state_manager.transition_to(ConnectionState.DISCONNECTED)

    close = close_connection

    def refresh(self) -> bool:
        """Issue an explicit read of every channel. Returns False unless READY."""
        self._require_authorization("refresh")
        with self._lock:
            connection = self._connection
            if connection is None or not self._state_manager.is_ready:
                logger.debug("Skipping refresh: not ready (state %s)", self.state.value)
                return False
            for channel in CHANNEL_ORDER:
                started = self.error_handler.safe_execute(
                    partial(connection.session.read_characteristic, channel.uuid),
                    default_return=False,
                    error_msg=f"Error reading {channel.label}",
                )
                if not started:
                    logger.warning("Could not start read of %s", channel.label)
            return True

    def handle_event(self, event: object) -> None:
        """Feed ``event`` to the current session's handler."""
        with self._lock:
            connection = self._connection
            if connection is None:
                logger.debug("Ignoring %s: no active connection", type(event).__name__)
                return
            self._dispatch(connection, event)

    def _dispatch(self, connection: Connection, event: object) -> None:
        with self._lock:
            if connection is not self._connection:
                logger.debug(
                    "Ignoring %s from stale session %r", type(event).__name__, connection
                )
                return
            handler = self._handlers.get(type(event))
            if handler is None:
                logger.warning("Unhandled transport event: %r", event)
                return
            handler(connection, event)

    def _fail(self, error: EnvSensorError) -> None:
        logger.error("%s", error)
        self._state_manager.transition_to(ConnectionState.ERROR, error)
        self.publisher.publish_error(error)
        self.close_connection()

    def _on_connection_state_changed(
        self, connection: Connection, event: ConnectionStateChanged
    ) -> None:
        logger.debug(
            "Connection state change: status %s, connected %s",
            describe_status(event.status),
            event.connected,
        )
        if event.status != GATT_SUCCESS:
            self._fail(ConnectionFailed(event.status))
            return
        if not event.connected:
            logger.info("Disconnected from %s", connection.device)
            self.publisher.publish_status(f"Disconnected from {connection.device}")
            self.close_connection()
            return
        if self.state != ConnectionState.CONNECTING:
            logger.warning("Ignoring link-up event in state %s", self.state.value)
            return

        logger.info("Connected to %s, discovering services", connection.device)
        self.error_handler.safe_execute(
            connection.session.request_high_priority,
            default_return=False,
            error_msg="Connection priority request failed",
        )
        self._state_manager.transition_to(ConnectionState.SERVICE_DISCOVERY)
        try:
            connection.session.discover_services()
        except Exception:
            logger.warning("Failed to start service discovery", exc_info=True)
            self._fail(ServiceDiscoveryFailed(GATT_FAILURE))

    def _on_services_discovered(
        self, connection: Connection, event: ServicesDiscovered
    ) -> None:
        if self.state != ConnectionState.SERVICE_DISCOVERY:
            logger.warning("Ignoring service discovery result in state %s", self.state.value)
            return
        if event.status != GATT_SUCCESS:
            self._fail(ServiceDiscoveryFailed(event.status))
            return
        services = {uuid.lower() for uuid in event.service_uuids}
        if SERVICE_UUID not in services:
            logger.debug("Available services: %s", ", ".join(sorted(services)) or "none")
            self._fail(ServiceNotFound())
            return

        logger.info("Found environmental service, enabling notifications")
        self._state_manager.transition_to(ConnectionState.ENABLING_NOTIFICATIONS)
        self._enabler.start(connection, partial(self._on_notifications_configured, connection))

    def _on_notifications_configured(self, connection: Connection) -> None:
        with self._lock:
            if (
                connection is not self._connection
                or self.state != ConnectionState.ENABLING_NOTIFICATIONS
            ):
                return
            enabled = connection.slots.enabled_channels()
            self._state_manager.transition_to(ConnectionState.READY)
            if len(enabled) == len(CHANNEL_ORDER):
                message = f"Receiving live updates from {connection.device}"
            else:
                missing = [c.label for c in CHANNEL_ORDER if c not in enabled]
                message = (
                    f"Connected to {connection.device}; no live updates for "
                    f"{', '.join(missing)}"
                )
                logger.warning("%s", message)
            self.publisher.publish_status(message)

    def _on_descriptor_written(self, connection: Connection, event: DescriptorWritten) -> None:
        channel = MeasurementChannel.from_uuid(event.characteristic_uuid)
        if channel is None:
            logger.debug("Descriptor write acknowledged for unknown characteristic %s", event.characteristic_uuid)
            return
        self._enabler.on_descriptor_written(connection, channel, event.status)

    def _on_descriptor_timeout(
        self, connection: Connection, event: DescriptorWriteTimedOut
    ) -> None:
        channel = MeasurementChannel.from_uuid(event.characteristic_uuid)
        if channel is not None:
            self._enabler.on_timeout(connection, channel)

    def _on_characteristic_changed(
        self, _connection: Connection, event: CharacteristicChanged
    ) -> None:
        self._decode_and_publish(event.characteristic_uuid, event.value)

    def _on_characteristic_read(self, _connection: Connection, event: CharacteristicRead) -> None:
        if event.status != GATT_SUCCESS:
            logger.warning(
                "Read of %s failed: %s",
                event.characteristic_uuid,
                describe_status(event.status),
            )
            return
        self._decode_and_publish(event.characteristic_uuid, event.value)

    def _decode_and_publish(self, characteristic_uuid: str, value: bytes) -> None:
        channel = MeasurementChannel.from_uuid(characteristic_uuid)
        if channel is None:
            logger.debug("Ignoring data from unknown characteristic %s", characteristic_uuid)
            return
        try:
            reading = self._decoder(channel, value)
        except MalformedPayload as error:
            logger.error("Error parsing numeric value: %s", error)
            self.publisher.publish_error(error)
            return
        self.publisher.publish_reading(reading)

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close_connection()
