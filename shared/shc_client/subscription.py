"""Long-poll subscription session.

State machine:
    UNSUBSCRIBED → SUBSCRIBING → POLLING
                               → (poll rejected) → UNSUBSCRIBED → SUBSCRIBING → ...

Recovery policy while polling:
  - transport failure: wait, poll again with the same token
  - malformed response: wait, poll again with the same token
  - non-zero RPC error: token is presumed dead, wait, subscribe again
  - events or empty timeout: poll again immediately

The controller answers a stale token with an error that has no message, and
keeps hanging on later polls if the token is reused, so every non-zero error
code is treated as an invalidated session.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable

import structlog

from .errors import ProtocolError, RpcCallError, SessionInvalidError, ShcError, TransportError
from .models import DeviceEvent
from .rpc import (
    DEFAULT_TOPIC_FILTER,
    RPC_PATH,
    decode_call_result,
    decode_poll_result,
    encode_long_poll,
    encode_subscribe,
    encode_unsubscribe,
)
from .transport import BaseTransport

logger = structlog.get_logger()

DEFAULT_POLL_TIMEOUT_S = 30
DEFAULT_RETRY_DELAY_S = 5.0
DEFAULT_UNSUBSCRIBE_TIMEOUT_S = 5.0

EventHandler = Callable[[DeviceEvent], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class SessionState(str, Enum):
    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    POLLING = "POLLING"


class SubscriptionSession:
    """Owns one subscription token and the poll loop built around it.

    The token never leaves this object; callers drive the session through
    subscribe(), poll_once(), unsubscribe() or the start()/stop() lifecycle.

    Args:
        transport: Connected controller transport.
        poll_timeout_s: Seconds the controller may hold each long-poll open.
        retry_delay_s: Fixed wait before retrying after any failure.
        topic_filter: Event topic pattern passed to RE/subscribe.
        sleep: Awaitable used for retry waits.
    """

    def __init__(
        self,
        transport: BaseTransport,
        *,
        poll_timeout_s: int = DEFAULT_POLL_TIMEOUT_S,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        topic_filter: str = DEFAULT_TOPIC_FILTER,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._poll_timeout_s = poll_timeout_s
        self._retry_delay_s = retry_delay_s
        self._topic_filter = topic_filter
        self._sleep = sleep
        self._state = SessionState.UNSUBSCRIBED
        self._token: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_subscribed(self) -> bool:
        return self._token is not None

    def _transition(self, new_state: SessionState, **context) -> None:
        if new_state == self._state:
            return
        logger.info(
            "Subscription state changed",
            from_state=self._state.value,
            to_state=new_state.value,
            **context,
        )
        self._state = new_state

    def _drop_token(self, reason: str) -> None:
        self._token = None
        self._transition(SessionState.UNSUBSCRIBED, reason=reason)

    # ── Single operations ────────────────────────────────────────────────────

    async def subscribe(self) -> None:
        """Obtain a fresh subscription token (one attempt).

        Raises:
            TransportError, ProtocolError, RpcCallError: The attempt failed;
                the session is left UNSUBSCRIBED.
        """
        self._transition(SessionState.SUBSCRIBING)
        try:
            body = await self._transport.post(RPC_PATH, encode_subscribe(self._topic_filter))
            token = decode_call_result(body)
            if not token:
                raise ProtocolError("Subscribe reply carried no subscription token", body)
        except (TransportError, ProtocolError, RpcCallError):
            self._drop_token("subscribe failed")
            raise
        self._token = token
        self._transition(SessionState.POLLING)

    async def poll_once(self) -> list[DeviceEvent]:
        """Issue one long-poll and return its events in controller order.

        Blocks for up to ``poll_timeout_s`` when nothing happens on the
        controller. An empty list means the poll timed out.

        Raises:
            RuntimeError: If there is no active subscription.
            TransportError, ProtocolError: The token is kept.
            SessionInvalidError: The controller rejected the poll; the token
                has been dropped.
        """
        if self._token is None:
            raise RuntimeError("Cannot poll without an active subscription")
        body = await self._transport.post(RPC_PATH, encode_long_poll(self._token, self._poll_timeout_s))
        result = decode_poll_result(body)
        if result.failed:
            self._drop_token("poll rejected")
            raise SessionInvalidError(result.error.code, result.error.message)
        return result.events

    async def unsubscribe(self) -> None:
        if self._token is None:
            logger.warning("Cannot unsubscribe without an active subscription")
            return
        token = self._token
        self._drop_token("unsubscribe")
        body = await self._transport.post(RPC_PATH, encode_unsubscribe(token))
        decode_call_result(body)
        logger.info("Unsubscribed from controller events")

    # ── Loop ─────────────────────────────────────────────────────────────────

    async def _subscribe_until_success(self) -> None:
        while True:
            try:
                await self.subscribe()
                return
            except (TransportError, ProtocolError, RpcCallError) as exc:
                logger.error("Subscribe failed, retrying", error=str(exc), retry_in_s=self._retry_delay_s)
                await self._sleep(self._retry_delay_s)

    async def _deliver(self, events: list[DeviceEvent], handler: EventHandler) -> None:
        for event in events:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    capability=event.capability_id,
                    device_id=event.device_id,
                )

    async def step(self, handler: EventHandler) -> None:
        """Run one loop iteration: ensure a subscription, poll once, react."""
        if self._token is None:
            await self._subscribe_until_success()

        try:
            events = await self.poll_once()
        except TransportError as exc:
            logger.warning(
                "Long-poll failed, retrying with same subscription",
                error=str(exc),
                retry_in_s=self._retry_delay_s,
            )
            await self._sleep(self._retry_delay_s)
            return
        except ProtocolError as exc:
            logger.error(
                "Malformed long-poll response",
                error=str(exc),
                body=exc.body_preview,
                retry_in_s=self._retry_delay_s,
            )
            await self._sleep(self._retry_delay_s)
            return
        except SessionInvalidError as exc:
            logger.warning(
                "Subscription rejected by controller, resubscribing",
                code=exc.code,
                message=exc.message,
                retry_in_s=self._retry_delay_s,
            )
            await self._sleep(self._retry_delay_s)
            await self._subscribe_until_success()
            return

        if not events:
            logger.debug("Long-poll timed out without events")
            return
        logger.debug("Long-poll returned events", count=len(events))
        await self._deliver(events, handler)

    async def run(self, handler: EventHandler) -> None:
        """Poll forever. Only cancellation ends the loop."""
        logger.info("Starting long polling", poll_timeout_s=self._poll_timeout_s)
        while True:
            try:
                await self.step(handler)
            except Exception:
                logger.exception("Polling loop error", retry_in_s=self._retry_delay_s)
                await self._sleep(self._retry_delay_s)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self, handler: EventHandler) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            raise RuntimeError("Subscription session is already running")
        self._task = asyncio.get_running_loop().create_task(self.run(handler))
        self._task.add_done_callback(self._on_task_done)
        return self._task

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Polling task crashed", error=repr(exc))

    async def stop(self, unsubscribe_timeout_s: float = DEFAULT_UNSUBSCRIBE_TIMEOUT_S) -> None:
        """Cancel the in-flight poll, then unsubscribe on a best-effort basis."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                # Already reported by _on_task_done
                pass
            self._task = None

        try:
            await asyncio.wait_for(self.unsubscribe(), timeout=unsubscribe_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Unsubscribe timed out", timeout_s=unsubscribe_timeout_s)
        except ShcError as exc:
            logger.warning("Unsubscribe failed", error=str(exc))
