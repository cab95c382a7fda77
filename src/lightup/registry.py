import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class CancelHandle:
    """Cooperative cancellation token shared by one request's tasks and timers."""

    def __init__(self) -> None:
        self._cancelled = False
        self._tasks: list[asyncio.Task[object]] = []
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task[object]) -> None:
        self._tasks.append(task)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    async def cancel(self) -> None:
        """Flag, stop timers, cancel attached tasks and wait for them to unwind."""
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


@dataclass
class Connection:
    connection_id: str
    cancel_handle: CancelHandle = field(default_factory=CancelHandle)
    created_at: float = field(default_factory=time.time)


class ConnectionRegistry:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    async def register(self, connection_id: str) -> Connection:
        while connection_id in self._connections:
            logger.info("connection superseded connection=%s", connection_id)
            await self.cancel(connection_id)
        connection = Connection(connection_id)
        self._connections[connection_id] = connection
        return connection

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def release(self, connection_id: str, connection: Connection | None = None) -> None:
        current = self._connections.get(connection_id)
        if current is None:
            return
        if connection is not None and current is not connection:
            return
        del self._connections[connection_id]

    async def cancel(self, connection_id: str) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        await connection.cancel_handle.cancel()
        return True

    async def cancel_many(self, connection_ids: Iterable[str]) -> int:
        cancelled = 0
        for connection_id in list(connection_ids):
            if await self.cancel(connection_id):
                cancelled += 1
        return cancelled

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
