"""Minimal asyncio actor: one task, one mailbox, messages handled in order."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class _Stop:
    """Sentinel placed in a mailbox to end the receive loop."""


class Actor(metaclass=abc.ABCMeta):
    """Base class for message-driven entities.

    Messages sent with :meth:`tell` are processed one at a time in the order
    they were enqueued. An exception raised by :meth:`receive` is passed to
    :meth:`on_failure` and does not stop the loop.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._mailbox: asyncio.Queue[Any] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        """Spawn the receive loop on the running event loop."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def tell(self, message: Any) -> None:
        """Enqueue ``message``; messages to a stopped actor are dropped."""
        if self._stopped:
            logger.debug(f"{self.name} is stopped, dropping {type(message).__name__}")
            return
        self._mailbox.put_nowait(message)

    def stop(self) -> None:
        """Stop after the messages already enqueued have been processed."""
        if not self._stopped:
            self._mailbox.put_nowait(_Stop())
            self._stopped = True

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            if isinstance(message, _Stop):
                break
            try:
                await self.receive(message)
            except Exception as exc:
                logger.exception(f"{self.name} failed handling {type(message).__name__}")
                await self.on_failure(exc)
        await self.on_stop()

    @abc.abstractmethod
    async def receive(self, message: Any) -> None:
        """Handle one message."""
        raise NotImplementedError

    async def on_failure(self, exc: Exception) -> None:
        """Called when :meth:`receive` raised; no-op by default."""
        pass

    async def on_stop(self) -> None:
        """Called once the receive loop has ended; no-op by default."""
        pass
