"""Value types shared by the BLE components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from envsensor.ble.constants import HUMIDITY_UUID, PRESSURE_UUID, TEMPERATURE_UUID


@dataclass(frozen=True)
class Device:
    """A BLE peripheral; identity is the transport address."""

    address: str
    name: Optional[str] = field(default=None, compare=False)

    def __str__(self) -> str:
        return f"{self.name} ({self.address})" if self.name else self.address


class MeasurementChannel(Enum):
    """Measurement channels exposed by the sensor service.

    Each member carries its position in the enable order, the characteristic
    UUID it is bound to, the published unit and the divisor applied to the
    raw value.
    """

    TEMPERATURE = (0, TEMPERATURE_UUID, "°C", 1.0)
    HUMIDITY = (1, HUMIDITY_UUID, "%", 1.0)
    # the sensor reports pascals, readings are published in hectopascals
    PRESSURE = (2, PRESSURE_UUID, "hPa", 100.0)

    def __init__(self, position: int, uuid: str, unit: str, divisor: float):
        self.position = position
        self.uuid = uuid
        self.unit = unit
        self.divisor = divisor

    @property
    def label(self) -> str:
        return self.name.lower()

    def transform(self, raw: float) -> float:
        """Convert a raw protocol value into the published unit."""
        if self.divisor == 1.0:
            return raw
        return raw / self.divisor

    @classmethod
    def from_uuid(cls, uuid: Optional[str]) -> Optional["MeasurementChannel"]:
        """Return the channel bound to ``uuid``, or None for unknown characteristics."""
        if not uuid:
            return None
        wanted = str(uuid).lower()
        for channel in cls:
            if channel.uuid == wanted:
                return channel
        return None


# Configuration writes are serialized by the peer, so channels are enabled in
# this order, one at a time.
CHANNEL_ORDER: Tuple[MeasurementChannel, ...] = tuple(
    sorted(MeasurementChannel, key=lambda channel: channel.position)
)


@dataclass(frozen=True)
class Reading:
    """One decoded sample for a channel."""

    channel: MeasurementChannel
    value: float
    observed_at: float

    def __str__(self) -> str:
        return f"{self.channel.label}: {self.value:.2f} {self.channel.unit}"


@dataclass(frozen=True)
class DiscoveredDevice:
    """A device seen during a scan session.

    ``sightings`` counts advertisements received for the address and
    ``last_seen`` is the scan-wide sequence number of the latest one.
    """

    device: Device
    rssi: int
    sightings: int = 1
    last_seen: int = 0

    @property
    def address(self) -> str:
        return self.device.address

    @property
    def name(self) -> Optional[str]:
        return self.device.name
