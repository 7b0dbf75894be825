"""
Serial dispatcher for PhotoGether.
A single worker task owns all state behind it: every event is queued and
handled one at a time, in submission order.
"""

import asyncio
import datetime
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, Tuple

from photogether.core.logging import LoggerMixin, debug_log


def _consume_exception(future: asyncio.Future):
    # Results are optional for submitters; keep unretrieved failures quiet
    if not future.cancelled():
        future.exception()


class SerialDispatcher(LoggerMixin):
    """Routes typed events to their handlers on one serializing worker."""

    def __init__(self, name: str = "dispatcher"):
        super().__init__()
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()

        # Handlers by event type
        self.handlers: Dict[type, Callable] = {}

        # Message statistics
        self.message_stats = {
            'total_messages': 0,
            'messages_by_type': defaultdict(int),
            'errors': 0,
            'start_time': datetime.datetime.now()
        }

        # Dispatcher state
        self.running = False
        self.processing_task: Optional[asyncio.Task] = None

        debug_log(f"📨 [Dispatcher:{self.name}] Dispatcher initialized")

    def register_handler(self, event_type: type, handler: Callable):
        """Register the handler for an event type."""
        self.handlers[event_type] = handler

        debug_log(f"➕ [Dispatcher:{self.name}] Handler registered", {
            "event_type": event_type.__name__,
            "handler": handler.__name__
        }, "DEBUG")

    def submit(self, event: Any) -> asyncio.Future:
        """Queue an event; the returned future resolves with the handler's result."""
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)

        if not self.running:
            future.set_exception(RuntimeError(f"Dispatcher {self.name} is not running"))
            return future

        self.queue.put_nowait((event, future))
        return future

    def _find_handler(self, event: Any) -> Optional[Callable]:
        for event_type in type(event).__mro__:
            handler = self.handlers.get(event_type)
            if handler is not None:
                return handler
        return None

    async def start(self):
        """Start the dispatcher worker."""
        if self.running:
            return

        self.running = True
        self.processing_task = asyncio.create_task(self._message_processor())

        debug_log(f"🚀 [Dispatcher:{self.name}] Dispatcher started")

    async def stop(self):
        """Stop the worker and cancel everything still queued."""
        if not self.running:
            return

        self.running = False

        if self.processing_task:
            self.processing_task.cancel()
            try:
                await self.processing_task
            except asyncio.CancelledError:
                pass
            self.processing_task = None

        while not self.queue.empty():
            _, future = self.queue.get_nowait()
            if not future.done():
                future.cancel()

        debug_log(f"🛑 [Dispatcher:{self.name}] Dispatcher stopped")

    async def _message_processor(self):
        """Handle queued events strictly one at a time."""
        while self.running:
            event, future = await self.queue.get()
            event_name = type(event).__name__

            self.message_stats['total_messages'] += 1
            self.message_stats['messages_by_type'][event_name] += 1

            handler = self._find_handler(event)
            if handler is None:
                self.log_warning(f"No handler for event", {"event_type": event_name})
                if not future.done():
                    future.set_result(None)
                continue

            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    result = await result
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                self.message_stats['errors'] += 1
                self.log_error(f"Event handler failed", {
                    "dispatcher": self.name,
                    "event_type": event_name,
                    "error": str(e),
                    "error_type": type(e).__name__
                })
                if not future.done():
                    future.set_exception(e)

    def get_statistics(self) -> Dict[str, Any]:
        """Get event processing statistics."""
        uptime = datetime.datetime.now() - self.message_stats['start_time']

        return {
            'total_messages': self.message_stats['total_messages'],
            'messages_by_type': dict(self.message_stats['messages_by_type']),
            'errors': self.message_stats['errors'],
            'queue_size': self.queue.qsize(),
            'uptime_seconds': uptime.total_seconds()
        }
