"""
Shared pytest fixtures for the sensor core tests.
"""

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401
from pubsub import pub  # type: ignore[import-untyped]  # pylint: disable=E0401

import envsensor
from envsensor.ble import gating
from envsensor.ble import publisher as publisher_module
from envsensor.ble.connection import ConnectionStateMachine
from envsensor.ble.constants import SERVICE_UUID
from envsensor.ble.events import (
    GATT_SUCCESS,
    ConnectionStateChanged,
    DescriptorWritten,
    ServicesDiscovered,
)
from envsensor.ble.models import CHANNEL_ORDER
from envsensor.ble.notifications import NotificationEnabler
from envsensor.ble.publisher import (
    TOPIC_DEVICES,
    TOPIC_PERMISSION,
    TOPIC_READING,
    TOPIC_STATE,
    TOPIC_STATUS,
    ReadingPublisher,
)

from fakes import FIXED_TIME, FakeTransport, Recorder, TimerFactory


@pytest.fixture(autouse=True)
def sync_publishing(monkeypatch):
    """
    Run publishing work immediately on the calling thread.

    Listeners subscribed during a test are removed afterwards.
    """
    monkeypatch.setattr(
        envsensor.publishingThread, "queueWork", lambda runnable: runnable()
    )
    yield
    pub.unsubAll()


@pytest.fixture(autouse=True)
def reset_gating(monkeypatch):
    """Start every test with the process-wide connection slot free."""
    monkeypatch.setattr(gating, "_OWNER", None)
    monkeypatch.setattr(gating, "_OWNED_ADDR", None)


@pytest.fixture(autouse=True)
def reset_permission(monkeypatch):
    """Start every test with Bluetooth access granted process-wide."""
    monkeypatch.setattr(publisher_module, "_permission_granted", True)


@pytest.fixture
def recorder():
    rec = Recorder()
    pub.subscribe(rec.on_state, TOPIC_STATE)
    pub.subscribe(rec.on_reading, TOPIC_READING)
    pub.subscribe(rec.on_status, TOPIC_STATUS)
    pub.subscribe(rec.on_devices, TOPIC_DEVICES)
    pub.subscribe(rec.on_permission, TOPIC_PERMISSION)
    return rec


@pytest.fixture
def publisher():
    return ReadingPublisher()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def transports():
    """Every FakeTransport created by the ``machine`` fixture, in creation order."""
    return []


@pytest.fixture
def authorization():
    """Mutable authorization flag consulted by the machine and scanner fixtures."""
    return {"granted": True}


@pytest.fixture
def machine(publisher, timers, transports, authorization):
    def transport_factory(address):
        transport = FakeTransport(address)
        transports.append(transport)
        return transport

    enabler = NotificationEnabler(publisher.publish_error, timer_factory=timers)
    return ConnectionStateMachine(
        publisher,
        transport_factory=transport_factory,
        authorization_check=lambda: authorization["granted"],
        enabler=enabler,
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture
def to_ready():
    """Return a helper that drives a connected machine through a full setup."""

    def drive(machine, transports, address="AA:BB:CC:DD:EE:FF"):
        machine.connect(address)
        transport = transports[-1]
        transport.emit(ConnectionStateChanged(GATT_SUCCESS, connected=True))
        transport.emit(ServicesDiscovered(GATT_SUCCESS, (SERVICE_UUID,)))
        for channel in CHANNEL_ORDER:
            transport.emit(DescriptorWritten(channel.uuid, GATT_SUCCESS))
        return transport

    return drive
