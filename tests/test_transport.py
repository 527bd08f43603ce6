"""Tests for the bleak-backed transport session."""

import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from bleak.exc import BleakError

from envsensor.ble.constants import (
    CCCD_UUID,
    ENABLE_NOTIFICATION_VALUE,
    HUMIDITY_UUID,
    SERVICE_UUID,
    TEMPERATURE_UUID,
    BLEConfig,
)
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
from envsensor.ble.transport import BleakTransport, status_for_error

ADDRESS = "AA:BB:CC:DD:EE:FF"


class EventSink:
    """Thread-safe event handler that tests can wait on."""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    def wait_for(self, count=1, timeout=2.0):
        with self._cond:
            self._cond.wait_for(lambda: len(self.events) >= count, timeout)
            return list(self.events)


class FakeServices:
    def __init__(self, service_uuids, characteristics):
        self._service_uuids = service_uuids
        self._characteristics = {c.uuid: c for c in characteristics}

    def __iter__(self):
        return iter(SimpleNamespace(uuid=uuid) for uuid in self._service_uuids)

    def get_characteristic(self, uuid):
        return self._characteristics.get(uuid.lower())


def characteristic(uuid, properties=("read", "notify")):
    return SimpleNamespace(uuid=uuid, properties=list(properties))


def make_bleak_client(service_uuids=(SERVICE_UUID,), characteristics=None):
    if characteristics is None:
        characteristics = [characteristic(TEMPERATURE_UUID)]
    client = MagicMock()
    client.connect = AsyncMock(return_value=True)
    client.disconnect = AsyncMock(return_value=True)
    client.start_notify = AsyncMock(return_value=None)
    client.stop_notify = AsyncMock(return_value=None)
    client.read_gatt_char = AsyncMock(return_value=bytearray(b"21.5"))
    client.services = FakeServices(service_uuids, characteristics)
    return client


@pytest.fixture
def make_transport():
    created = []

    def factory(client=None):
        client = client or make_bleak_client()
        captured = {}

        def client_factory(address, **kwargs):
            captured["address"] = address
            captured.update(kwargs)
            return client

        transport = BleakTransport(ADDRESS, client_factory=client_factory)
        transport.factory_kwargs = captured
        sink = EventSink()
        transport.set_event_handler(sink)
        created.append(transport)
        return transport, client, sink

    yield factory
    for transport in created:
        transport.close()


class TestStatusForError:
    """Mapping of bleak failures onto GATT status codes."""

    def test_no_error_is_success(self):
        assert status_for_error(None) == GATT_SUCCESS

    def test_timeout(self):
        assert status_for_error(asyncio.TimeoutError()) == GATT_CONN_TIMEOUT

    def test_authentication(self):
        assert status_for_error(BleakError("Authentication Failed")) == GATT_ERROR
        assert status_for_error(BleakError("org.bluez.Error.NotPermitted")) == GATT_ERROR

    def test_disconnected(self):
        assert status_for_error(BleakError("Device disconnected")) == GATT_CONN_TERMINATE_PEER_USER

    def test_anything_else(self):
        assert status_for_error(RuntimeError("boom")) == GATT_FAILURE


class TestBleakTransport:
    """Completions of bleak coroutines are reported as transport events."""

    def test_client_construction(self, make_transport):
        transport, _client, _sink = make_transport()
        kwargs = transport.factory_kwargs
        assert kwargs["address"] == ADDRESS
        assert kwargs["timeout"] == BLEConfig.CONNECTION_TIMEOUT
        assert kwargs["disconnected_callback"] == transport._on_bleak_disconnect

    def test_connect_success(self, make_transport):
        transport, client, sink = make_transport()
        transport.connect()

        assert sink.wait_for(1) == [ConnectionStateChanged(GATT_SUCCESS, connected=True)]
        client.connect.assert_awaited_once()

    def test_connect_timeout(self, make_transport):
        client = make_bleak_client()
        client.connect = AsyncMock(side_effect=asyncio.TimeoutError())
        transport, _client, sink = make_transport(client)
        transport.connect()

        assert sink.wait_for(1) == [
            ConnectionStateChanged(GATT_CONN_TIMEOUT, connected=False)
        ]

    def test_failed_connect_reports_single_disconnect(self, make_transport):
        client = make_bleak_client()
        client.connect = AsyncMock(side_effect=BleakError("failed"))
        transport, _client, sink = make_transport(client)
        transport.connect()
        sink.wait_for(1)

        transport._on_bleak_disconnect(client)

        assert len(sink.events) == 1

    def test_discover_services_lowercases(self, make_transport):
        client = make_bleak_client(service_uuids=(SERVICE_UUID.upper(),))
        transport, _client, sink = make_transport(client)
        transport.discover_services()

        assert sink.wait_for(1) == [ServicesDiscovered(GATT_SUCCESS, (SERVICE_UUID,))]

    def test_priority_request_is_unsupported(self, make_transport):
        transport, _client, _sink = make_transport()
        assert transport.request_high_priority() is False

    def test_read_characteristic(self, make_transport):
        transport, client, sink = make_transport()
        assert transport.read_characteristic(TEMPERATURE_UUID) is True

        assert sink.wait_for(1) == [
            CharacteristicRead(TEMPERATURE_UUID, b"21.5", GATT_SUCCESS)
        ]
        client.read_gatt_char.assert_awaited_once()

    def test_read_failure(self, make_transport):
        client = make_bleak_client()
        client.read_gatt_char = AsyncMock(side_effect=BleakError("boom"))
        transport, _client, sink = make_transport(client)
        transport.read_characteristic(TEMPERATURE_UUID)

        assert sink.wait_for(1) == [CharacteristicRead(TEMPERATURE_UUID, b"", GATT_FAILURE)]

    def test_read_unknown_characteristic(self, make_transport):
        transport, _client, _sink = make_transport()
        assert transport.read_characteristic(HUMIDITY_UUID) is False


class TestNotifications:
    """Local delivery gate and CCCD writes."""

    def test_set_notification_requires_notify_property(self, make_transport):
        client = make_bleak_client(
            characteristics=[characteristic(TEMPERATURE_UUID, properties=("read",))]
        )
        transport, _client, _sink = make_transport(client)
        assert transport.set_notification(TEMPERATURE_UUID, True) is False

    def test_set_notification_unknown_characteristic(self, make_transport):
        transport, _client, _sink = make_transport()
        assert transport.set_notification(HUMIDITY_UUID, True) is False

    def test_notifications_are_gated_by_local_delivery(self, make_transport):
        transport, _client, sink = make_transport()
        sender = SimpleNamespace(uuid=TEMPERATURE_UUID)

        transport._on_notify(sender, bytearray(b"20.0"))
        assert sink.events == []

        assert transport.set_notification(TEMPERATURE_UUID, True)
        transport._on_notify(sender, bytearray(b"20.5"))
        assert sink.events == [CharacteristicChanged(TEMPERATURE_UUID, b"20.5")]

        assert transport.set_notification(TEMPERATURE_UUID, False)
        transport._on_notify(sender, bytearray(b"21.0"))
        assert len(sink.events) == 1

    def test_cccd_enable_uses_start_notify(self, make_transport):
        transport, client, sink = make_transport()

        assert transport.write_descriptor(TEMPERATURE_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE)

        assert sink.wait_for(1) == [DescriptorWritten(TEMPERATURE_UUID, GATT_SUCCESS)]
        args = client.start_notify.await_args.args
        assert args[0].uuid == TEMPERATURE_UUID
        assert args[1] == transport._on_notify

    def test_only_cccd_enable_is_supported(self, make_transport):
        transport, client, _sink = make_transport()

        assert not transport.write_descriptor(TEMPERATURE_UUID, CCCD_UUID, b"\x00\x00")
        assert not transport.write_descriptor(
            TEMPERATURE_UUID, "00002901-0000-1000-8000-00805f9b34fb", ENABLE_NOTIFICATION_VALUE
        )
        client.start_notify.assert_not_called()

    def test_disabling_subscribed_characteristic_stops_notify(self, make_transport):
        client = make_bleak_client()
        stopped = threading.Event()
        client.stop_notify = AsyncMock(side_effect=lambda _char: stopped.set())
        transport, _client, sink = make_transport(client)
        transport.set_notification(TEMPERATURE_UUID, True)
        transport.write_descriptor(TEMPERATURE_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE)
        sink.wait_for(1)

        assert transport.set_notification(TEMPERATURE_UUID, False)

        assert stopped.wait(2.0)
        assert client.stop_notify.await_args.args[0].uuid == TEMPERATURE_UUID

    def test_unsubscribe_waits_for_late_start_notify(self, make_transport):
        order = []
        stopped = threading.Event()

        async def slow_start(_char, _callback):
            await asyncio.sleep(0.1)
            order.append("start")

        def stop(_char):
            order.append("stop")
            stopped.set()

        client = make_bleak_client()
        client.start_notify = AsyncMock(side_effect=slow_start)
        client.stop_notify = AsyncMock(side_effect=stop)
        transport, _client, _sink = make_transport(client)
        transport.write_descriptor(TEMPERATURE_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE)

        transport.set_notification(TEMPERATURE_UUID, False)

        assert stopped.wait(2.0)
        assert order == ["start", "stop"]

    def test_disable_without_subscription_skips_stop_notify(self, make_transport):
        transport, client, _sink = make_transport()
        transport.set_notification(TEMPERATURE_UUID, True)

        assert transport.set_notification(TEMPERATURE_UUID, False)

        transport.close()
        transport._client._eventThread.join(timeout=2.0)
        client.stop_notify.assert_not_called()

    def test_cccd_failure_is_reported(self, make_transport):
        client = make_bleak_client()
        client.start_notify = AsyncMock(side_effect=BleakError("write rejected"))
        transport, _client, sink = make_transport(client)
        transport.write_descriptor(TEMPERATURE_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE)

        assert sink.wait_for(1) == [DescriptorWritten(TEMPERATURE_UUID, GATT_FAILURE)]

    def test_write_on_unknown_characteristic(self, make_transport):
        transport, _client, _sink = make_transport()
        assert not transport.write_descriptor(HUMIDITY_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE)


class TestDisconnect:
    """Link teardown is reported exactly once."""

    def test_disconnect(self, make_transport):
        transport, client, sink = make_transport()
        transport.disconnect()

        assert sink.wait_for(1) == [ConnectionStateChanged(GATT_SUCCESS, connected=False)]
        client.disconnect.assert_awaited_once()

    def test_bleak_callback_reported_once(self, make_transport):
        transport, client, sink = make_transport()
        transport._on_bleak_disconnect(client)
        transport._on_bleak_disconnect(client)

        assert sink.events == [ConnectionStateChanged(GATT_SUCCESS, connected=False)]

    def test_close_detaches_handler(self, make_transport):
        transport, client, sink = make_transport()
        transport.close()
        transport.close()

        transport._on_bleak_disconnect(client)

        assert sink.events == []
        assert not transport.write_descriptor(
            TEMPERATURE_UUID, CCCD_UUID, ENABLE_NOTIFICATION_VALUE
        )

    def test_close_after_connect_disconnects(self, make_transport):
        transport, client, sink = make_transport()
        transport.connect()
        sink.wait_for(1)

        transport.close()
        transport._client._eventThread.join(timeout=2.0)

        client.disconnect.assert_awaited_once()

    def test_close_during_connect_disconnects(self, make_transport):
        client = make_bleak_client()
        started = threading.Event()

        async def slow_connect():
            started.set()
            await asyncio.sleep(0.2)
            return True

        client.connect = AsyncMock(side_effect=slow_connect)
        transport, _client, sink = make_transport(client)
        transport.connect()
        assert started.wait(2.0)

        transport.close()
        transport._client._eventThread.join(timeout=2.0)

        client.disconnect.assert_awaited_once()
        assert sink.events == []

    def test_close_without_connect_skips_disconnect(self, make_transport):
        transport, client, _sink = make_transport()
        transport.close()
        transport._client._eventThread.join(timeout=2.0)

        client.disconnect.assert_not_called()
