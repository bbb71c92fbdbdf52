"""Message bus used to decouple change detection from IdP calls.

Handlers are registered per message type. A handler may return a follow-up
message (or a list of them), which is enqueued once the handler succeeds.
Any exception raised by a handler causes redelivery of the same message, up
to `max_attempts`; after that the message is dead-lettered.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[Any]]


class MessageBus(Protocol):
    def send(self, message: BaseModel) -> None:
        ...


@dataclass
class Envelope:
    message: BaseModel
    attempts: int = 0


@dataclass
class DeadLetter:
    message: BaseModel
    attempts: int
    error: str


class InMemoryMessageBus:
    """asyncio.Queue backed bus with at-least-once delivery."""

    def __init__(
        self,
        workers: int = 4,
        max_attempts: int = 5,
        retry_delay: float = 0.0,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._workers = workers
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._handlers: dict[type, MessageHandler] = {}
        self._queue: asyncio.Queue[Envelope] = asyncio.Queue()
        self.sent: list[BaseModel] = []
        self.delivered = 0
        self.dead_letters: list[DeadLetter] = []

    def register(self, message_type: type, handler: MessageHandler) -> None:
        """Register the handler consuming message_type."""
        self._handlers[message_type] = handler

    def send(self, message: BaseModel) -> None:
        """Enqueue a message without waiting for it to be handled."""
        self.sent.append(message)
        self._queue.put_nowait(Envelope(message))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def run_until_idle(self) -> None:
        """Drain the queue with `workers` concurrent consumers."""
        tasks = [asyncio.create_task(self._worker()) for _ in range(self._workers)]
        try:
            await self._queue.join()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _worker(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self._deliver(envelope)
            finally:
                self._queue.task_done()

    async def _deliver(self, envelope: Envelope) -> None:
        message = envelope.message
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.error("No handler registered for %s", type(message).__name__)
            self.dead_letters.append(
                DeadLetter(message=message, attempts=envelope.attempts, error="no handler")
            )
            return

        envelope.attempts += 1
        try:
            follow_up = await handler(message)
        except Exception as e:
            if envelope.attempts >= self._max_attempts:
                logger.error(
                    "Dead-lettering %s after %d attempts: %s",
                    type(message).__name__, envelope.attempts, e,
                )
                self.dead_letters.append(
                    DeadLetter(message=message, attempts=envelope.attempts, error=str(e))
                )
                return
            logger.warning(
                "Redelivering %s (attempt %d/%d): %s",
                type(message).__name__, envelope.attempts, self._max_attempts, e,
            )
            if self._retry_delay:
                await asyncio.sleep(self._retry_delay)
            self._queue.put_nowait(envelope)
            return

        self.delivered += 1
        if follow_up is None:
            return
        for next_message in follow_up if isinstance(follow_up, list) else [follow_up]:
            self.send(next_message)
