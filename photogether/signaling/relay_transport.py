"""
Relay transport: a persistent WebSocket to the relay server.
Exposes connect / send / receive-stream; reconnect with backoff is handled here.
"""
import asyncio
from typing import AsyncIterator, Callable, Dict, Optional, Set

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from photogether.core.config import PhotoGetherConfig
from photogether.core.exceptions import TransportError
from photogether.core.logging import LoggerMixin, debug_log

_CLOSED = object()


class RelayTransport(LoggerMixin):
    """WebSocket channel to the relay carrying opaque byte payloads."""

    def __init__(self, config: PhotoGetherConfig, url: Optional[str] = None):
        super().__init__()
        self.config = config
        self.url = url or config.relay_url

        self._websocket: Optional[ClientConnection] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._closing = False

        # Connection event callbacks
        self.connection_callbacks: Dict[str, Set[Callable]] = {
            'connected': set(),
            'disconnected': set()
        }

        debug_log(f"🔌 [RelayTransport] Transport initialized", {"url": self.url})

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    def add_connection_callback(self, event: str, callback: Callable):
        """Add a callback for 'connected' or 'disconnected'."""
        if event in self.connection_callbacks:
            self.connection_callbacks[event].add(callback)

    def remove_connection_callback(self, event: str, callback: Callable):
        """Remove a callback for connection events."""
        if event in self.connection_callbacks:
            self.connection_callbacks[event].discard(callback)

    async def connect(self):
        """Open the relay connection and start listening."""
        if self._websocket is not None:
            return
        self._closing = False
        await self._open()
        self._listen_task = asyncio.create_task(self._listen())

    async def _open(self):
        try:
            self._websocket = await connect(
                self.url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=10
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot connect to relay: {e}", {"url": self.url})

        debug_log(f"✅ [RelayTransport] Connected to relay", {"url": self.url})
        self._notify_callbacks('connected')

    async def send(self, data: bytes):
        """Send one payload to the relay."""
        websocket = self._websocket
        if websocket is None:
            raise TransportError("Relay is not connected", {"url": self.url})
        try:
            await websocket.send(data)
        except ConnectionClosed as e:
            raise TransportError(f"Relay connection closed during send: {e}", {"url": self.url})

    async def receive(self) -> AsyncIterator[bytes]:
        """Yield inbound payloads until the transport is closed."""
        while True:
            item = await self._inbound.get()
            if item is _CLOSED:
                return
            yield item

    async def _listen(self):
        """Pump inbound frames into the receive queue, reconnecting when allowed."""
        while not self._closing:
            websocket = self._websocket
            try:
                async for message in websocket:
                    if isinstance(message, str):
                        message = message.encode('utf-8')
                    await self._inbound.put(message)
                reason = "closed by relay"
            except ConnectionClosed as e:
                reason = str(e)

            self._websocket = None
            if self._closing:
                break

            debug_log(f"🔌 [RelayTransport] Relay connection lost", {"url": self.url, "reason": reason}, "WARNING")
            self._notify_callbacks('disconnected', reason)

            if not self.config.auto_reconnect or not await self._reconnect():
                break

        await self._inbound.put(_CLOSED)

    async def _reconnect(self) -> bool:
        """Reconnect with exponential backoff until success or close()."""
        delay = self.config.reconnect_initial_delay
        attempt = 0
        while not self._closing:
            attempt += 1
            await asyncio.sleep(delay)
            try:
                await self._open()
                debug_log(f"🔁 [RelayTransport] Reconnected", {"attempt": attempt})
                return True
            except TransportError as e:
                debug_log(f"⚠️ [RelayTransport] Reconnect failed", {
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(e)
                }, "WARNING")
                delay = min(delay * 2, self.config.reconnect_max_delay)
        return False

    def _notify_callbacks(self, event: str, *args):
        """Notify all callbacks for an event."""
        for callback in list(self.connection_callbacks.get(event, ())):
            try:
                callback(*args)
            except Exception as e:
                self.log_error(f"Error in relay connection callback", {
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

    async def close(self):
        """Close the relay connection and end the receive stream."""
        debug_log(f"🧹 [RelayTransport] Closing relay transport")
        self._closing = True

        websocket = self._websocket
        self._websocket = None
        if websocket is not None:
            await websocket.close()

        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
        self._listen_task = None
        await self._inbound.put(_CLOSED)
