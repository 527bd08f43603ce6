"""Decoding of characteristic payloads into readings."""

import re
import time
from typing import Callable, Union

from envsensor.ble.constants import logger
from envsensor.ble.errors import MalformedPayload
from envsensor.ble.models import MeasurementChannel, Reading

# Everything except ASCII digits, the decimal point and the minus sign
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def clean_payload(data: Union[bytes, bytearray, memoryview]) -> str:
    """Decode ``data`` as UTF-8 text and strip unit suffixes and other noise."""
    text = bytes(data).decode("utf-8", errors="replace")
    return _NON_NUMERIC.sub("", text)


def decode_payload(
    channel: MeasurementChannel,
    data: Union[bytes, bytearray, memoryview],
    *,
    clock: Callable[[], float] = time.time,
) -> Reading:
    """
    Decode a raw notification or read payload for ``channel``.

    The payload is an ASCII decimal number, possibly decorated (``"23.5°C"``).

    Raises:
        MalformedPayload: if no number can be parsed from the payload.
    """
    cleaned = clean_payload(data)
    try:
        raw = float(cleaned)
    except ValueError as exc:
        raise MalformedPayload(channel, bytes(data)) from exc
    return Reading(channel=channel, value=channel.transform(raw), observed_at=clock())


class PayloadDecoder:
    """Callable decoder bound to a clock, used by the connection state machine."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def __call__(
        self, channel: MeasurementChannel, data: Union[bytes, bytearray, memoryview]
    ) -> Reading:
        reading = decode_payload(channel, data, clock=self._clock)
        logger.debug("Decoded %r as %s", bytes(data), reading)
        return reading
