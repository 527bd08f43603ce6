"""Transport events and GATT status taxonomy.

Every outcome of a transport operation arrives later as one of the event
objects below. The connection state machine is the only consumer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

# Raw status codes reported by GATT stacks
GATT_SUCCESS = 0
GATT_CONN_TIMEOUT = 8
GATT_CONN_TERMINATE_PEER_USER = 19
GATT_ERROR = 133
GATT_FAILURE = 0x101


class GattStatus(Enum):
    """Closed taxonomy for connection-level status codes."""

    SUCCESS = "success"
    AUTH_FAILURE = "authentication failure"
    TIMEOUT = "timeout"
    PEER_TERMINATED = "terminated by peer"
    UNKNOWN = "unknown error"

    @classmethod
    def from_code(cls, code: int) -> "GattStatus":
        """Map a raw GATT status code onto the taxonomy."""
        return _STATUS_BY_CODE.get(code, cls.UNKNOWN)


_STATUS_BY_CODE = {
    GATT_SUCCESS: GattStatus.SUCCESS,
    GATT_ERROR: GattStatus.AUTH_FAILURE,
    GATT_CONN_TIMEOUT: GattStatus.TIMEOUT,
    GATT_CONN_TERMINATE_PEER_USER: GattStatus.PEER_TERMINATED,
}


def describe_status(code: int) -> str:
    """Return a log-friendly description such as ``timeout (8)``."""
    return f"{GattStatus.from_code(code).value} ({code})"


@dataclass(frozen=True)
class ConnectionStateChanged:
    """The link came up or went down."""

    status: int
    connected: bool


@dataclass(frozen=True)
class ServicesDiscovered:
    """Service discovery finished; ``service_uuids`` is empty on failure."""

    status: int
    service_uuids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DescriptorWritten:
    """Acknowledgment of a configuration descriptor write."""

    characteristic_uuid: str
    status: int


@dataclass(frozen=True)
class DescriptorWriteTimedOut:
    characteristic_uuid: str


@dataclass(frozen=True)
class CharacteristicChanged:
    """Unsolicited notification from the peer."""

    characteristic_uuid: str
    value: bytes


@dataclass(frozen=True)
class CharacteristicRead:
    """Acknowledgment of an explicit characteristic read."""

    characteristic_uuid: str
    value: bytes
    status: int
