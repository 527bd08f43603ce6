"""BLE constants and configuration."""

import logging

logger = logging.getLogger("envsensor.ble")

# GATT layout published by the sensor firmware
SERVICE_UUID = "4fafc201-1fb5-459e-8fcc-c5c9c331914b"
TEMPERATURE_UUID = "beb5483e-36e1-4688-b7f5-ea07361b26a8"
HUMIDITY_UUID = "beb5483e-36e1-4688-b7f5-ea07361b26a9"
PRESSURE_UUID = "beb5483e-36e1-4688-b7f5-ea07361b26aa"

# Client Characteristic Configuration Descriptor (0x2902)
CCCD_UUID = "00002902-0000-1000-8000-00805f9b34fb"
ENABLE_NOTIFICATION_VALUE = b"\x01\x00"


class BLEConfig:
    """Configuration constants for BLE operations."""

    BLE_SCAN_TIMEOUT = 10.0
    CONNECTION_TIMEOUT = 30.0
    DESCRIPTOR_WRITE_TIMEOUT = 2.0
    DISCONNECT_TIMEOUT_SECONDS = 5.0
    GATT_IO_TIMEOUT = 10.0
    BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT = 2.0

    # Caller-level connect retries (command line consumer)
    CONNECT_RETRY_INITIAL_DELAY = 2.0
    CONNECT_RETRY_MAX_DELAY = 20.0
    CONNECT_RETRY_BACKOFF = 2.0
    CONNECT_RETRY_JITTER_RATIO = 0.2
    DEFAULT_POLL_INTERVAL = 5.0


# Module-level aliases re-exported by envsensor.ble
BLE_SCAN_TIMEOUT = BLEConfig.BLE_SCAN_TIMEOUT
CONNECTION_TIMEOUT = BLEConfig.CONNECTION_TIMEOUT
DESCRIPTOR_WRITE_TIMEOUT = BLEConfig.DESCRIPTOR_WRITE_TIMEOUT

# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_PERMISSION_DENIED = (
    "Bluetooth permission not granted for {0}. This is often caused by missing "
    "Bluetooth permissions (e.g. not being in the 'bluetooth' group)."
)
ERROR_CONNECTION_BUSY = "Already connected or connection in progress"
ERROR_CONNECTION_FAILED = "Connection failed: {0}"
ERROR_SERVICE_DISCOVERY_FAILED = "Service discovery failed with status {0}"
ERROR_SERVICE_NOT_FOUND = "Environmental sensor service {0} not found on device"
ERROR_DESCRIPTOR_WRITE_FAILED = "Failed to enable {0} notifications: {1}"
ERROR_MALFORMED_PAYLOAD = "Malformed {0} payload: {1!r}"
ERROR_SCAN_FAILED = "Scan failed with error {0}"
ERROR_SCAN_IN_PROGRESS = "Scan already in progress"
