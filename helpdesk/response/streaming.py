from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable

from helpdesk.tickets.events import TicketEvent


class TicketEventStreamer:
    """Utility that turns queued domain events into Server-Sent Event frames."""

    def __init__(self, *, keepalive_seconds: float = 15.0) -> None:
        if keepalive_seconds <= 0:
            raise ValueError("keepalive_seconds must be greater than zero")

        self.keepalive_seconds = keepalive_seconds

    @staticmethod
    def format_event(event: TicketEvent) -> str:
        payload = json.dumps(event.to_payload())
        return f"event: {event.name}\ndata: {payload}\n\n"

    async def iter_sse(
        self,
        queue: asyncio.Queue[TicketEvent],
        *,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield frames for queued events, with a comment frame when the queue stays idle."""

        yield "event: ready\ndata: {}\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield self.format_event(event)
