"""Real-time fan-out of pipeline events.

Publishing is fire-and-forget: nothing is awaited, nothing is retried, and an
event with no subscriber is simply not observed.
"""
import asyncio
import logging
from datetime import datetime

from fastapi import WebSocket

logger = logging.getLogger(__name__)

BROADCAST_CHANNEL = 'broadcast'


def user_channel(user_id) -> str:
    return f'user:{user_id}'


def asteroid_channel(asteroid_id) -> str:
    return f'asteroid:{asteroid_id}'


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class NotificationGateway:
    def publish(self, channel: str, event: str, payload: dict) -> None:
        raise NotImplementedError


class LogGateway(NotificationGateway):
    """For processes without live subscribers (CLI runs)."""

    def publish(self, channel: str, event: str, payload: dict) -> None:
        logger.info('[%s] %s %s', channel, event, payload)


class ConnectionManager(NotificationGateway):
    def __init__(self) -> None:
        self._subscriptions: dict[WebSocket, set[str]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def subscribers(self, channel: str) -> list[WebSocket]:
        return [ws for ws, channels in self._subscriptions.items() if channel in channels]

    async def connect(self, websocket: WebSocket, user_id: int | None = None) -> None:
        await websocket.accept()
        channels = {BROADCAST_CHANNEL}
        if user_id is not None:
            channels.add(user_channel(user_id))
        self._subscriptions[websocket] = channels
        await self.send_personal(websocket, {'type': 'connected', 'channels': sorted(channels)})

    def disconnect(self, websocket: WebSocket) -> None:
        self._subscriptions.pop(websocket, None)

    def subscribe(self, websocket: WebSocket, channel: str) -> None:
        if websocket in self._subscriptions:
            self._subscriptions[websocket].add(channel)

    def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        if websocket in self._subscriptions:
            self._subscriptions[websocket].discard(channel)

    async def send_personal(self, websocket: WebSocket, payload: dict) -> None:
        try:
            await websocket.send_json(payload)
        except Exception:
            self._subscriptions.pop(websocket, None)

    async def deliver(self, channel: str, message: dict) -> None:
        stale: list[WebSocket] = []
        for client in self.subscribers(channel):
            try:
                await client.send_json(message)
            except Exception:
                stale.append(client)
        for client in stale:
            self._subscriptions.pop(client, None)

    def publish(self, channel: str, event: str, payload: dict) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.debug('No event loop bound; dropping %s on %s', event, channel)
            return
        message = {'type': event, 'channel': channel, 'data': payload}
        # Pipelines run on worker threads; hand delivery to the server loop without waiting.
        asyncio.run_coroutine_threadsafe(self.deliver(channel, message), self._loop)
