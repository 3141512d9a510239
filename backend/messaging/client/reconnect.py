"""Reconnecting WebSocket client for the messaging socket.

State machine::

    disconnected -> connecting -> connected
         ^              |             |
         +--- backoff --+-------------+   (drop / failed attempt)

Reconnects use bounded exponential backoff and stop after ``max_attempts``
consecutive failures or as soon as :meth:`MessagingClient.logout` is called.

Messages are de-duplicated by id, so the server replaying a message that was
already received live (or a resend being re-acknowledged) is invisible to
the ``on_event`` callback. Sends carry a generated ``clientMessageId``;
unacknowledged sends are re-sent after a reconnect and the server returns the
original message instead of storing a copy.
"""
import asyncio
import inspect
import json
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict], Optional[Awaitable[None]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class Backoff:
    """Exponential backoff: ``base * factor**attempt`` capped at ``cap`` seconds."""
    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        return min(self.base * (self.factor ** attempt), self.cap)


class MessagingClient:
    """Maintains one logical session across transport reconnects.

    Args:
        url: Socket URL, e.g. ``ws://localhost:10000/ws/messages``.
        token: Bearer token sent as the ``token`` query parameter.
        on_event: Called with every inbound frame (after de-duplication).
            May be a coroutine function.
        backoff: Reconnect policy.
        connect: Coroutine factory returning a websocket; defaults to
            ``websockets.connect``.
        sleep: Injectable for tests.
        max_seen_ids: How many recent message ids are remembered for
            de-duplication; the oldest are forgotten first.
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_event: Optional[EventCallback] = None,
        backoff: Optional[Backoff] = None,
        connect: Callable[[str], Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_seen_ids: int = 5000,
    ) -> None:
        self.url = url
        self.token = token
        self.on_event = on_event
        self.backoff = backoff or Backoff()
        self.state = ConnectionState.DISCONNECTED
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None

        self._connect = connect
        self._sleep = sleep
        self._ws: Any = None
        self._logged_out = asyncio.Event()
        self._max_seen_ids = max_seen_ids
        self._seen_message_ids: "OrderedDict[str, None]" = OrderedDict()
        # clientMessageId -> frame, until the server echoes the message back
        self._pending: Dict[str, dict] = {}

    @property
    def uri(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    @property
    def pending(self) -> Dict[str, dict]:
        return dict(self._pending)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def run(self) -> bool:
        """Connect and keep reconnecting until logout or attempts run out.

        Returns:
            True if the session ended by logout, False if it gave up.
        """
        failures = 0
        while not self._logged_out.is_set():
            self.state = ConnectionState.CONNECTING
            try:
                self._ws = await self._connect(self.uri)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                self._ws = None
                self.state = ConnectionState.DISCONNECTED
                if failures >= self.backoff.max_attempts - 1:
                    logger.error(
                        "[Client] Giving up after %d failed attempt(s): %s", failures + 1, e
                    )
                    return False
                delay = self.backoff.delay(failures)
                failures += 1
                logger.warning(
                    "[Client] Connect failed (%s); retrying in %.1fs (attempt %d/%d)",
                    e, delay, failures + 1, self.backoff.max_attempts,
                )
                await self._sleep(delay)
                continue

            failures = 0
            self.state = ConnectionState.CONNECTED
            logger.info("[Client] Connected to %s", self.url)
            await self._resend_pending()
            await self._read_loop()

            self._ws = None
            self.state = ConnectionState.DISCONNECTED
            if not self._logged_out.is_set():
                delay = self.backoff.delay(0)
                logger.info("[Client] Connection lost; reconnecting in %.1fs", delay)
                await self._sleep(delay)

        self.state = ConnectionState.DISCONNECTED
        return True

    async def logout(self) -> None:
        """Stop reconnecting and close the current socket."""
        self._logged_out.set()
        self._pending.clear()
        if self._ws is not None:
            await self._ws.close()
        logger.info("[Client] Logged out")

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("[Client] Ignoring non-JSON frame")
                    continue
                await self._handle_frame(frame)
        except ConnectionClosed as e:
            logger.info("[Client] Socket closed: %s", e)

    async def _handle_frame(self, frame: dict) -> None:
        event = frame.get("type")
        if event == "connected":
            self.user_id = frame.get("userId")
            self.connection_id = frame.get("connectionId")
        elif event == "message:receive":
            message = frame.get("message") or {}
            if message.get("senderId") == self.user_id:
                self._pending.pop(message.get("clientMessageId"), None)
            message_id = message.get("id")
            if message_id in self._seen_message_ids:
                logger.debug("[Client] Duplicate message %s dropped", message_id)
                return
            if message_id:
                self._remember(message_id)
        elif event == "error" and frame.get("clientMessageId") and not frame.get("retryable"):
            self._pending.pop(frame["clientMessageId"], None)

        if self.on_event is not None:
            result = self.on_event(frame)
            if inspect.isawaitable(result):
                await result

    def _remember(self, message_id: str) -> None:
        self._seen_message_ids[message_id] = None
        while len(self._seen_message_ids) > self._max_seen_ids:
            self._seen_message_ids.popitem(last=False)

    async def _resend_pending(self) -> None:
        for frame in list(self._pending.values()):
            logger.info("[Client] Resending %s", frame["clientMessageId"])
            await self._send(frame)

    async def _send(self, frame: dict) -> bool:
        if self._ws is None or self.state != ConnectionState.CONNECTED:
            return False
        try:
            await self._ws.send(json.dumps(frame))
            return True
        except ConnectionClosed:
            return False

    # -----------------------------------------------------------------------
    # Outbound events
    # -----------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        recipient_id: Optional[str] = None,
        room_id: Optional[str] = None,
        message_type: str = "text",
    ) -> str:
        """Queue and send a message. Returns its ``clientMessageId``.

        The message stays pending (and is re-sent after reconnects) until the
        server echoes it back or rejects it with a non-retryable error.
        """
        client_message_id = str(uuid.uuid4())
        frame = {
            "type": "message:send",
            "content": content,
            "messageType": message_type,
            "clientMessageId": client_message_id,
        }
        if room_id:
            frame["roomId"] = room_id
        else:
            frame["recipientId"] = recipient_id
        self._pending[client_message_id] = frame
        await self._send(frame)
        return client_message_id

    async def mark_read(self, conversation_id: str, message_ids: list) -> bool:
        return await self._send({
            "type": "message:read",
            "conversationId": conversation_id,
            "messageIds": list(message_ids),
        })

    async def start_typing(self, conversation_id: str) -> bool:
        return await self._send({"type": "typing:start", "conversationId": conversation_id})

    async def stop_typing(self, conversation_id: str) -> bool:
        return await self._send({"type": "typing:stop", "conversationId": conversation_id})

    async def request_online_status(self, user_ids: list) -> bool:
        return await self._send({"type": "user:get_online_status", "userIds": list(user_ids)})

    async def request_sync(self, since: Optional[float] = None) -> bool:
        frame: Dict[str, Any] = {"type": "user:sync_missed_messages"}
        if since is not None:
            frame["since"] = since
        return await self._send(frame)
