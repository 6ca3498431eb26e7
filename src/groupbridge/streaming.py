from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict

from .events import MessageStream
from .hub import SubscriptionHub
from .models import MessageRecord
from .sessions import IdentitySession

logger = logging.getLogger(__name__)


class MessageStreamer:
    """Mirrors each registered identity's network message stream onto the hub."""

    def __init__(self, hub: SubscriptionHub) -> None:
        self._hub = hub
        self._tasks: Dict[str, asyncio.Task] = {}

    def watch(self, session: IdentitySession) -> None:
        if session.address in self._tasks:
            return
        stream = session.client.stream_all_messages()
        self._tasks[session.address] = asyncio.create_task(self._pump(session, stream))

    def is_watching(self, address: str) -> bool:
        return address in self._tasks

    async def _pump(self, session: IdentitySession, stream: AsyncIterator[MessageRecord]) -> None:
        try:
            async for message in stream:
                self._hub.publish(MessageStream(message=message, observer=session.address))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Message stream for %s stopped", session.address)
        finally:
            self._tasks.pop(session.address, None)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
