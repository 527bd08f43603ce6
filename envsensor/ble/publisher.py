"""Latest-value store broadcasting sensor state to subscribers over pypubsub."""

from threading import RLock
from typing import Dict, Iterable, Optional, Tuple

from pubsub import pub

from envsensor import publishingThread
from envsensor.ble import topics
from envsensor.ble.constants import logger
from envsensor.ble.errors import EnvSensorError
from envsensor.ble.models import DiscoveredDevice, MeasurementChannel, Reading
from envsensor.ble.state import ConnectionState

TOPIC_STATE = "envsensor.connection.state"
TOPIC_READING = "envsensor.reading"
TOPIC_DEVICES = "envsensor.scan.devices"
TOPIC_STATUS = "envsensor.status"
TOPIC_PERMISSION = "envsensor.permission"

pub.addTopicDefnProvider(topics, pub.TOPIC_TREE_FROM_CLASS)

# Bluetooth authorization is a property of the process, shared by every publisher
_PERMISSION_LOCK = RLock()
_permission_granted = True


def permission_granted() -> bool:
    """Return the process-wide Bluetooth authorization flag."""
    with _PERMISSION_LOCK:
        return _permission_granted


class ReadingPublisher:
    """
    Holds the latest value of every stream the core produces and broadcasts changes.

    Subscribers receive changes made after they subscribe (no replay); the
    current values are always available through the read-only properties.
    Messages are sent from the publishing thread, in the order the changes
    were made.

    Streams:
        - connection state (``envsensor.connection.state``)
        - latest reading per channel (``envsensor.reading``)
        - discovered device list (``envsensor.scan.devices``)
        - status / error messages (``envsensor.status``)
        - authorization flag (``envsensor.permission``)
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._readings: Dict[MeasurementChannel, Reading] = {}
        self._state = ConnectionState.DISCONNECTED
        self._error: Optional[EnvSensorError] = None
        self._devices: Tuple[DiscoveredDevice, ...] = ()
        self._status: Optional[str] = None

    def latest(self, channel: MeasurementChannel) -> Optional[Reading]:
        """Return the latest reading for ``channel``, or None before the first one."""
        with self._lock:
            return self._readings.get(channel)

    @property
    def readings(self) -> Dict[MeasurementChannel, Reading]:
        with self._lock:
            return dict(self._readings)

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def error(self) -> Optional[EnvSensorError]:
        with self._lock:
            return self._error

    @property
    def devices(self) -> Tuple[DiscoveredDevice, ...]:
        with self._lock:
            return self._devices

    @property
    def status(self) -> Optional[str]:
        with self._lock:
            return self._status

    @property
    def permission_granted(self) -> bool:
        return permission_granted()

    def publish_reading(self, reading: Reading) -> None:
        """Replace the latest value for the reading's channel (last write wins)."""
        with self._lock:
            self._readings[reading.channel] = reading
            self._send(TOPIC_READING, reading=reading)

    def publish_state(
        self, state: ConnectionState, error: Optional[EnvSensorError] = None
    ) -> None:
        with self._lock:
            self._state = state
            self._error = error
            self._send(TOPIC_STATE, state=state, error=error)

    def publish_devices(self, devices: Iterable[DiscoveredDevice]) -> None:
        with self._lock:
            self._devices = tuple(devices)
            self._send(TOPIC_DEVICES, devices=self._devices)

    def publish_status(
        self, message: str, error: Optional[EnvSensorError] = None
    ) -> None:
        """Publish a human readable status line, optionally tied to an error."""
        with self._lock:
            self._status = message
            self._send(TOPIC_STATUS, message=message, error=error)

    def publish_error(self, error: EnvSensorError) -> None:
        self.publish_status(str(error), error)

    def set_permission_granted(self, granted: bool) -> None:
        """Update the process-wide authorization flag; only a change is broadcast."""
        global _permission_granted  # pylint: disable=global-statement
        with _PERMISSION_LOCK:
            if _permission_granted == granted:
                return
            _permission_granted = granted
            self._send(TOPIC_PERMISSION, granted=granted)

    def _send(self, topic: str, **data) -> None:
        # Queued under the lock so the publishing thread sees changes in order
        logger.debug("Publishing %s", topic)
        publishingThread.queueWork(
            lambda: pub.sendMessage(topic, source=self, **data)
        )
