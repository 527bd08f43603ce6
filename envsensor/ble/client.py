"""Dedicated asyncio event loop thread for bleak operations."""

import asyncio
from concurrent.futures import Future
from threading import Thread, current_thread
from typing import Any, Awaitable, Callable, Coroutine, Optional

from envsensor.ble.constants import (
    BLEConfig,
    ERROR_TIMEOUT,
    logger,
)
from envsensor.ble.errors import BLEErrorHandler, EnvSensorError


class BLEClient:
    """
    Runs bleak coroutines on an event loop owned by a background thread.

    Transport and scan sessions schedule their work here and return
    immediately; outcomes are reported through callbacks invoked on the loop
    thread.
    """

    class BLEError(EnvSensorError):
        """An exception class for BLE errors in the client."""

    @staticmethod
    async def _with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], label: str):
        """
        Await an awaitable, applying an optional timeout.

        Raises:
            asyncio.TimeoutError: If the awaitable does not complete before the timeout elapses.
        """
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(ERROR_TIMEOUT.format(label, timeout))
            raise

    def __init__(self, name: str = "BLEClient") -> None:
        self.error_handler = BLEErrorHandler()
        self._closed = False
        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(target=self._run_event_loop, name=name, daemon=True)
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

    @property
    def closed(self) -> bool:
        return self._closed

    def async_run(self, coro: Coroutine[Any, Any, Any]) -> Future:
        """Schedule a coroutine on the client's event loop and return its future."""
        if self._closed:
            coro.close()
            raise self.BLEError("BLE client is closed")
        return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    def run_then(
        self,
        coro: Coroutine[Any, Any, Any],
        on_done: Callable[[Optional[Any], Optional[BaseException]], None],
    ) -> Future:
        """
        Schedule ``coro`` and invoke ``on_done(result, error)`` on the loop thread once it settles.

        Exactly one of ``result`` and ``error`` is meaningful; cancellation is
        reported as an error.
        """
        if self._closed:
            coro.close()
            raise self.BLEError("BLE client is closed")

        async def _runner():
            try:
                result = await coro
            except asyncio.CancelledError as exc:
                on_done(None, exc)
                raise
            except Exception as exc:  # noqa: BLE001 - reported to the caller
                on_done(None, exc)
                return None
            on_done(result, None)
            return result

        return self.async_run(_runner())

    def close(self, final: Optional[Coroutine[Any, Any, Any]] = None, *, wait: bool = False) -> None:
        """
        Stop the event loop, optionally after running ``final`` on it.

        Idempotent. With ``wait`` the caller blocks until the loop thread has
        exited (bounded by BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT); it is ignored
        when called from the loop thread itself.
        """
        if self._closed:
            if final is not None:
                final.close()
            return
        self._closed = True

        async def _shutdown():
            if final is not None:
                try:
                    await final
                except Exception as e:  # noqa: BLE001 - shutdown must complete
                    logger.debug("Error during BLE client shutdown: %s", e)
            self._eventLoop.stop()

        try:
            asyncio.run_coroutine_threadsafe(_shutdown(), self._eventLoop)
        except RuntimeError:
            logger.debug("BLE event loop already closed")
            return
        if wait and self._eventThread.ident is not None:
            if current_thread() is self._eventThread:
                return
            self._eventThread.join(timeout=BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT)
            if self._eventThread.is_alive():
                logger.warning(
                    "BLE event thread did not exit within %.1fs",
                    BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT,
                )

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close(wait=True)

    def _run_event_loop(self) -> None:
        """Run the loop until stopped, then close it."""
        self.error_handler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop", reraise=False
        )
        self._eventLoop.close()
