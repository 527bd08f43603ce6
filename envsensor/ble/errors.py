"""Error taxonomy and error handling helpers for BLE operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Optional

from bleak.exc import BleakDBusError, BleakError

from envsensor.ble.constants import (
    ERROR_CONNECTION_BUSY,
    ERROR_CONNECTION_FAILED,
    ERROR_DESCRIPTOR_WRITE_FAILED,
    ERROR_MALFORMED_PAYLOAD,
    ERROR_PERMISSION_DENIED,
    ERROR_SCAN_FAILED,
    ERROR_SERVICE_DISCOVERY_FAILED,
    ERROR_SERVICE_NOT_FOUND,
    SERVICE_UUID,
    logger,
)
from envsensor.ble.events import GattStatus, describe_status

if TYPE_CHECKING:
    from envsensor.ble.models import MeasurementChannel

__all__ = [
    "BLEErrorHandler",
    "ConnectionBusy",
    "ConnectionFailed",
    "DescriptorWriteFailed",
    "EnvSensorError",
    "MalformedPayload",
    "PermissionDenied",
    "ScanFailed",
    "ServiceDiscoveryFailed",
    "ServiceNotFound",
]


class EnvSensorError(Exception):
    """Base class for every error surfaced by the sensor core."""


class PermissionDenied(EnvSensorError):
    """The required Bluetooth capability has not been granted."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(ERROR_PERMISSION_DENIED.format(operation))


class ConnectionBusy(EnvSensorError):
    """A connection is already established or in progress."""

    def __init__(self, message: str = ERROR_CONNECTION_BUSY):
        super().__init__(message)


class ConnectionFailed(EnvSensorError):
    """The link could not be established or was lost with an error status."""

    def __init__(self, code: int):
        self.code = code
        self.reason = GattStatus.from_code(code)
        super().__init__(ERROR_CONNECTION_FAILED.format(describe_status(code)))


class ServiceDiscoveryFailed(EnvSensorError):
    def __init__(self, code: int):
        self.code = code
        super().__init__(ERROR_SERVICE_DISCOVERY_FAILED.format(code))


class ServiceNotFound(EnvSensorError):
    """The peer does not expose the environmental sensor service."""

    def __init__(self, service_uuid: str = SERVICE_UUID):
        self.service_uuid = service_uuid
        super().__init__(ERROR_SERVICE_NOT_FOUND.format(service_uuid))


class DescriptorWriteFailed(EnvSensorError):
    """Notifications could not be enabled for one channel."""

    def __init__(self, channel: "MeasurementChannel", reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(ERROR_DESCRIPTOR_WRITE_FAILED.format(channel.label, reason))


class MalformedPayload(EnvSensorError):
    """A payload did not contain a parsable number."""

    def __init__(self, channel: "MeasurementChannel", payload: bytes):
        self.channel = channel
        self.payload = bytes(payload)
        super().__init__(ERROR_MALFORMED_PAYLOAD.format(channel.label, self.payload))


class ScanFailed(EnvSensorError):
    def __init__(self, code: Optional[int]):
        self.code = code
        super().__init__(ERROR_SCAN_FAILED.format(code))


class BLEErrorHandler:
    """Helper class for consistent error handling in BLE operations.

    Best-effort transport calls and cleanup paths go through here so that a
    failing platform call is logged rather than propagated into the state
    machine.
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """
        Execute a zero-argument callable and return its result, falling back to a provided default on failure.

        Bleak errors and future timeouts are logged at debug level; anything
        else is logged with a traceback.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.
        """
        try:
            return func()
        except (BleakError, BleakDBusError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation"):
        """Execute a cleanup callable, logging and suppressing any exception."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)
