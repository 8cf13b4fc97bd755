"""Realtime connection owned by a ChatSession.

Exactly one WebSocket per session, bound to the user's identity through the
``userId`` query parameter. Reconnection is left to the reconnecting
``connect()`` iterator of the websockets library, which applies its own
exponential backoff; nothing is layered on top of it.

Inbound frames ``{"event", "data"}`` are dispatched to handlers registered
with :meth:`RealtimeConnection.on`, in arrival order. Two lifecycle
pseudo-events, ``connect`` and ``disconnect``, fire on every
(re)connection and connection loss.
"""
import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from schoolchat.config import get_config
from schoolchat.realtime.events import envelope, parse_frame

logger = logging.getLogger(__name__)

CONNECT = "connect"
DISCONNECT = "disconnect"

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class RealtimeConnection:
    """Single realtime connection with fire-and-forget sends.

    Args:
        url: Realtime endpoint (defaults to ``client.realtime_url``).
        connect_factory: Callable returning the reconnecting connection
            iterator; tests substitute a fake.
    """

    def __init__(self, url: Optional[str] = None, *, connect_factory=ws_connect) -> None:
        self._url = url or get_config().client.realtime_url
        self._connect_factory = connect_factory
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None
        self._ws = None
        self._user_id: Optional[str] = None
        # Strong references so in-flight sends are not garbage collected
        self._background: Set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    # -- Handler registration -------------------------------------------------

    def on(self, event: str, handler: Handler) -> Handler:
        """Register a handler for an inbound event or lifecycle pseudo-event."""
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    # -- Lifecycle ------------------------------------------------------------

    async def connect(self, user_id: str) -> None:
        """Start the connection loop for ``user_id``.

        A second call while the loop is running is a no-op.

        Raises:
            ValueError: If ``user_id`` is empty.
        """
        if not user_id:
            raise ValueError("user_id is required to connect")
        if self._task is not None and not self._task.done():
            logger.debug("[Connection] Already connected as %s", self._user_id)
            return

        self._user_id = user_id
        self._task = asyncio.create_task(self._run(self._endpoint(user_id)))
        self._task.add_done_callback(self._on_task_done)

    async def disconnect(self) -> None:
        """Tear the connection down. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return

        ws = self._ws
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[Connection] Error while closing: {e}")
        logger.info("[Connection] Disconnected (user=%s)", self._user_id)

    # -- Outbound -------------------------------------------------------------

    def send(self, event: str, payload: Any) -> None:
        """Queue an event for delivery without waiting for it.

        Delivery is best-effort: when offline, or if the write fails, the
        event is dropped and logged.
        """
        ws = self._ws
        if ws is None:
            logger.warning("[Connection] Not connected, dropping %s", event)
            return

        frame = json.dumps(envelope(event, payload), default=str)
        task = asyncio.get_running_loop().create_task(self._write(ws, event, frame))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write(self, ws, event: str, frame: str) -> None:
        try:
            await ws.send(frame)
        except Exception as e:
            logger.warning(f"[Connection] Failed to send {event}: {e}")

    # -- Internal -------------------------------------------------------------

    def _endpoint(self, user_id: str) -> str:
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode({'userId': user_id})}"

    async def _run(self, uri: str) -> None:
        async for websocket in self._connect_factory(uri):
            self._ws = websocket
            logger.info("[Connection] Connected as %s", self._user_id)
            await self._dispatch(CONNECT, None)
            try:
                async for raw in websocket:
                    await self._handle_frame(raw)
            except ConnectionClosed as e:
                logger.warning(f"[Connection] Connection lost, waiting for reconnect: {e}")
            finally:
                self._ws = None
                await self._dispatch(DISCONNECT, None)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[Connection] Connection loop stopped: {exc}")

    async def _handle_frame(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("[Connection] Ignoring non-JSON frame")
            return

        event, data = parse_frame(frame)
        if event is None:
            logger.debug("[Connection] Ignoring frame without event")
            return
        await self._dispatch(event, data)

    async def _dispatch(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Connection] Handler error for '%s'", event)
