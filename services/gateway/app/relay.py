"""
Fan-out of pub/sub updates to connected websocket clients.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class RelayClient:
    """Bounded outbox for one websocket connection."""

    def __init__(self, maxsize: int) -> None:
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=maxsize)
        self.evicted = False

    async def next_message(self) -> Optional[str]:
        """Next message to send, or None once the client has been evicted."""
        return await self.queue.get()


class UpdateRelay:
    """
    Broadcasts every update to every registered client.

    There is no backpressure towards the channel: a client whose outbox
    is full when a message arrives is evicted and its connection closed.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._clients: Set[RelayClient] = set()
        self.messages_relayed = 0
        self.clients_evicted = 0

    def register(self) -> RelayClient:
        client = RelayClient(self.queue_size)
        self._clients.add(client)
        return client

    def unregister(self, client: RelayClient) -> None:
        self._clients.discard(client)

    def broadcast(self, message: str) -> int:
        """Queue a message for every client; returns how many were evicted."""
        evicted = 0
        for client in list(self._clients):
            try:
                client.queue.put_nowait(message)
            except asyncio.QueueFull:
                self._evict(client)
                evicted += 1
        self.messages_relayed += 1
        return evicted

    def close(self) -> None:
        """Disconnect every client, e.g. on shutdown."""
        for client in list(self._clients):
            self._disconnect(client)

    def _evict(self, client: RelayClient) -> None:
        self._disconnect(client)
        client.evicted = True
        self.clients_evicted += 1
        logger.warning("Evicted slow websocket client", queue_size=self.queue_size)

    def _disconnect(self, client: RelayClient) -> None:
        self._clients.discard(client)
        while not client.queue.empty():
            client.queue.get_nowait()
        client.queue.put_nowait(None)

    def __len__(self) -> int:
        return len(self._clients)
