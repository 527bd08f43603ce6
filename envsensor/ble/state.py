"""BLE connection state management."""

from enum import Enum
from threading import RLock
from typing import Callable, Optional

from envsensor.ble.constants import logger
from envsensor.ble.errors import EnvSensorError

StateListener = Callable[["ConnectionState", Optional[EnvSensorError]], None]


class ConnectionState(Enum):
    """Enum for managing BLE connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SERVICE_DISCOVERY = "service discovery"
    ENABLING_NOTIFICATIONS = "enabling notifications"
    READY = "ready"
    ERROR = "error"


# Connection lifecycle. ERROR is only ever left towards DISCONNECTED, which
# requires a fresh connect().
_VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.SERVICE_DISCOVERY,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.SERVICE_DISCOVERY: {
        ConnectionState.ENABLING_NOTIFICATIONS,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.ENABLING_NOTIFICATIONS: {
        ConnectionState.READY,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.READY: {ConnectionState.ERROR, ConnectionState.DISCONNECTED},
    ConnectionState.ERROR: {ConnectionState.DISCONNECTED},
}


class BLEStateManager:
    """Thread-safe state management for the sensor connection.

    The reentrant lock doubles as the serialization point for every transport
    event: whoever holds it is the single writer of connection state.
    """

    def __init__(self, listener: Optional[StateListener] = None):
        self._state_lock = RLock()
        self._state = ConnectionState.DISCONNECTED
        self._error: Optional[EnvSensorError] = None
        self._listener = listener

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def last_error(self) -> Optional[EnvSensorError]:
        """Error kind of the most recent ERROR state, kept until the next connect."""
        with self._state_lock:
            return self._error

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def can_connect(self) -> bool:
        return self.state == ConnectionState.DISCONNECTED

    def transition_to(
        self, new_state: ConnectionState, error: Optional[EnvSensorError] = None
    ) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            error: Error kind, required context when entering ERROR

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if not self._is_valid_transition(self._state, new_state):
                logger.warning(
                    "Invalid state transition: %s → %s",
                    self._state.value,
                    new_state.value,
                )
                return False
            old_state = self._state
            self._state = new_state
            if new_state == ConnectionState.ERROR:
                self._error = error
            elif new_state == ConnectionState.CONNECTING:
                self._error = None
            logger.debug("State transition: %s → %s", old_state.value, new_state.value)
            if self._listener is not None:
                published_error = (
                    self._error if new_state == ConnectionState.ERROR else None
                )
                self._listener(new_state, published_error)
            return True

    @staticmethod
    def _is_valid_transition(
        from_state: ConnectionState, to_state: ConnectionState
    ) -> bool:
        return to_state in _VALID_TRANSITIONS.get(from_state, set())
