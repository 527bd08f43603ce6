"""BLE core for the environmental sensor: discovery, connection and readings."""

from envsensor.ble.constants import (
    BLE_SCAN_TIMEOUT,
    CCCD_UUID,
    CONNECTION_TIMEOUT,
    DESCRIPTOR_WRITE_TIMEOUT,
    ENABLE_NOTIFICATION_VALUE,
    HUMIDITY_UUID,
    PRESSURE_UUID,
    SERVICE_UUID,
    TEMPERATURE_UUID,
    BLEConfig,
    logger,
)
from envsensor.ble.events import (
    CharacteristicChanged,
    CharacteristicRead,
    ConnectionStateChanged,
    DescriptorWriteTimedOut,
    DescriptorWritten,
    GattStatus,
    ServicesDiscovered,
    describe_status,
)
from envsensor.ble.errors import (
    BLEErrorHandler,
    ConnectionBusy,
    ConnectionFailed,
    DescriptorWriteFailed,
    EnvSensorError,
    MalformedPayload,
    PermissionDenied,
    ScanFailed,
    ServiceDiscoveryFailed,
    ServiceNotFound,
)
from envsensor.ble.models import (
    CHANNEL_ORDER,
    Device,
    DiscoveredDevice,
    MeasurementChannel,
    Reading,
)
from envsensor.ble.decoder import PayloadDecoder, decode_payload
from envsensor.ble.state import BLEStateManager, ConnectionState
from envsensor.ble.authorization import always_authorized, bluetooth_group_authorized
from envsensor.ble.client import BLEClient
from envsensor.ble.transport import BleakTransport, Transport
from envsensor.ble.publisher import (
    TOPIC_DEVICES,
    TOPIC_PERMISSION,
    TOPIC_READING,
    TOPIC_STATE,
    TOPIC_STATUS,
    ReadingPublisher,
    permission_granted,
)
from envsensor.ble.notifications import NotificationEnabler, NotificationStatus
from envsensor.ble.connection import ConnectionStateMachine
from envsensor.ble.discovery import BleakScanBackend, DeviceScanner
from envsensor.ble.policies import ReconnectPolicy, connect_retry

__all__ = [
    # Core classes
    "BLEClient",
    "BLEConfig",
    "BLEErrorHandler",
    "BLEStateManager",
    "BleakScanBackend",
    "BleakTransport",
    "ConnectionState",
    "ConnectionStateMachine",
    "DeviceScanner",
    "NotificationEnabler",
    "NotificationStatus",
    "PayloadDecoder",
    "ReadingPublisher",
    "ReconnectPolicy",
    "Transport",
    # Data
    "CHANNEL_ORDER",
    "Device",
    "DiscoveredDevice",
    "GattStatus",
    "MeasurementChannel",
    "Reading",
    # Transport events
    "CharacteristicChanged",
    "CharacteristicRead",
    "ConnectionStateChanged",
    "DescriptorWriteTimedOut",
    "DescriptorWritten",
    "ServicesDiscovered",
    # Errors
    "ConnectionBusy",
    "ConnectionFailed",
    "DescriptorWriteFailed",
    "EnvSensorError",
    "MalformedPayload",
    "PermissionDenied",
    "ScanFailed",
    "ServiceDiscoveryFailed",
    "ServiceNotFound",
    # Helpers
    "always_authorized",
    "bluetooth_group_authorized",
    "connect_retry",
    "decode_payload",
    "describe_status",
    "permission_granted",
    # Constants
    "BLE_SCAN_TIMEOUT",
    "CCCD_UUID",
    "CONNECTION_TIMEOUT",
    "DESCRIPTOR_WRITE_TIMEOUT",
    "ENABLE_NOTIFICATION_VALUE",
    "HUMIDITY_UUID",
    "PRESSURE_UUID",
    "SERVICE_UUID",
    "TEMPERATURE_UUID",
    "TOPIC_DEVICES",
    "TOPIC_PERMISSION",
    "TOPIC_READING",
    "TOPIC_STATE",
    "TOPIC_STATUS",
    "logger",
]
