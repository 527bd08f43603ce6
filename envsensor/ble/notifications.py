"""Sequenced notification setup for the measurement channels."""

from dataclasses import dataclass
from enum import Enum
from threading import Timer
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional

from envsensor.ble.constants import (
    BLEConfig,
    CCCD_UUID,
    ENABLE_NOTIFICATION_VALUE,
    logger,
)
from envsensor.ble.errors import BLEErrorHandler, DescriptorWriteFailed, EnvSensorError
from envsensor.ble.events import GATT_SUCCESS, DescriptorWriteTimedOut, describe_status
from envsensor.ble.models import CHANNEL_ORDER, MeasurementChannel

if TYPE_CHECKING:
    from envsensor.ble.connection import Connection

__all__ = [
    "ChannelSlot",
    "ChannelSlots",
    "NotificationEnabler",
    "NotificationStatus",
    "PendingNotificationRequest",
]


class NotificationStatus(Enum):
    IDLE = "idle"
    PENDING = "pending"
    ENABLED = "enabled"
    FAILED = "failed"


@dataclass
class PendingNotificationRequest:
    """An in-flight descriptor write waiting for its acknowledgment."""

    continuation: Callable[[], None]
    on_halt: Callable[[], None]
    timer: Optional[Timer] = None


class ChannelSlot:
    """Per-channel notification state; holds at most one pending request."""

    def __init__(self, channel: MeasurementChannel):
        self.channel = channel
        self.status = NotificationStatus.IDLE
        self._pending: Optional[PendingNotificationRequest] = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def arm(self, request: PendingNotificationRequest) -> bool:
        """Install ``request``; refuses if one is already outstanding."""
        if self.has_pending:
            return False
        self._pending = request
        self.status = NotificationStatus.PENDING
        return True

    def take_pending(self) -> Optional[PendingNotificationRequest]:
        """Remove and return the pending request, cancelling its timer."""
        request, self._pending = self._pending, None
        if request is not None and request.timer is not None:
            request.timer.cancel()
        return request


class ChannelSlots:
    """Fixed arena of slots indexed by channel position."""

    def __init__(self) -> None:
        self._slots: List[ChannelSlot] = [ChannelSlot(channel) for channel in CHANNEL_ORDER]

    def __getitem__(self, channel: MeasurementChannel) -> ChannelSlot:
        return self._slots[channel.position]

    def __iter__(self) -> Iterator[ChannelSlot]:
        return iter(self._slots)

    def enabled_channels(self) -> List[MeasurementChannel]:
        return [s.channel for s in self._slots if s.status == NotificationStatus.ENABLED]

    def cancel_all(self) -> None:
        for slot in self._slots:
            slot.take_pending()


class NotificationEnabler:
    """
    Enables notifications channel by channel, in CHANNEL_ORDER.

    For each channel local delivery is switched on, then the CCCD write is
    issued; the next channel is only started from the write's acknowledgment.
    Any failure halts the chain and leaves the remaining channels without
    live updates; failures are reported through ``report_error`` and never
    raised. ``on_complete`` runs once per chain, whether it finished or
    halted. ``connection.authorize`` is consulted before every channel and a
    denial halts the chain; the denial itself is reported by the connection.

    Acknowledgments that never arrive are failed after ``descriptor_timeout``
    seconds; the timeout is delivered as a DescriptorWriteTimedOut event
    through the connection's serialized dispatcher.
    """

    def __init__(
        self,
        report_error: Callable[[EnvSensorError], None],
        *,
        descriptor_timeout: float = BLEConfig.DESCRIPTOR_WRITE_TIMEOUT,
        timer_factory=Timer,
    ):
        self._report_error = report_error
        self._descriptor_timeout = descriptor_timeout
        self._timer_factory = timer_factory

    def start(self, connection: "Connection", on_complete: Callable[[], None]) -> None:
        logger.debug(
            "Enabling notifications for %s",
            ", ".join(channel.label for channel in CHANNEL_ORDER),
        )
        self._enable_from(connection, 0, on_complete)

    def _enable_from(
        self, connection: "Connection", position: int, on_complete: Callable[[], None]
    ) -> None:
        if position >= len(CHANNEL_ORDER):
            on_complete()
            return
        channel = CHANNEL_ORDER[position]
        slot = connection.slots[channel]
        session = connection.session
        if not connection.authorize():
            logger.warning(
                "Bluetooth access revoked; not enabling notifications for %s onwards",
                channel.label,
            )
            on_complete()
            return
        logger.debug("Enabling notifications for characteristic: %s", channel.uuid)

        if not BLEErrorHandler.safe_execute(
            lambda: session.set_notification(channel.uuid, True),
            default_return=False,
            error_msg=f"Error enabling local notifications for {channel.label}",
        ):
            self._fail(slot, "local notification delivery could not be enabled")
            on_complete()
            return

        timer = self._timer_factory(
            self._descriptor_timeout,
            connection.dispatch,
            args=(DescriptorWriteTimedOut(channel.uuid),),
        )
        timer.daemon = True
        request = PendingNotificationRequest(
            continuation=lambda: self._enable_from(connection, position + 1, on_complete),
            on_halt=on_complete,
            timer=timer,
        )
        if not slot.arm(request):
            logger.error("Notification request for %s already in flight", channel.label)
            on_complete()
            return
        timer.start()

        if not BLEErrorHandler.safe_execute(
            lambda: session.write_descriptor(channel.uuid, CCCD_UUID, ENABLE_NOTIFICATION_VALUE),
            default_return=False,
            error_msg=f"Error writing descriptor for {channel.label}",
        ):
            slot.take_pending()
            self._revert(connection, channel)
            self._fail(slot, "descriptor write could not be initiated")
            on_complete()
            return
        logger.debug("Initiated descriptor write for %s", channel.uuid)

    def on_descriptor_written(
        self, connection: "Connection", channel: MeasurementChannel, status: int
    ) -> None:
        """Handle the peer's acknowledgment of a CCCD write."""
        slot = connection.slots[channel]
        request = slot.take_pending()
        if request is None:
            logger.debug(
                "No pending notification request for %s; ignoring acknowledgment",
                channel.label,
            )
            return
        if status == GATT_SUCCESS:
            slot.status = NotificationStatus.ENABLED
            logger.info("Notifications enabled for %s", channel.label)
            request.continuation()
            return
        self._revert(connection, channel)
        self._fail(slot, describe_status(status))
        request.on_halt()

    def on_timeout(self, connection: "Connection", channel: MeasurementChannel) -> None:
        slot = connection.slots[channel]
        request = slot.take_pending()
        if request is None:
            return
        self._revert(connection, channel)
        self._fail(
            slot, f"acknowledgment timed out after {self._descriptor_timeout:.1f}s"
        )
        request.on_halt()

    def cancel(self, connection: "Connection") -> None:
        """Drop every pending request of ``connection`` (timers included)."""
        connection.slots.cancel_all()

    @staticmethod
    def _revert(connection: "Connection", channel: MeasurementChannel) -> None:
        BLEErrorHandler.safe_execute(
            lambda: connection.session.set_notification(channel.uuid, False),
            error_msg=f"Error disabling local notifications for {channel.label}",
        )

    def _fail(self, slot: ChannelSlot, reason: str) -> None:
        slot.status = NotificationStatus.FAILED
        error = DescriptorWriteFailed(slot.channel, reason)
        logger.error("%s", error)
        self._report_error(error)
