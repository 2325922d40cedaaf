"""MutationQueue - at most one destructive edit at a time per editing session.

Tasks run strictly in enqueue order (FIFO), including tasks enqueued from
inside a running executor. A failing task is reported to the error sink and
the queue moves on: edits to different images are independent.

Example:
    queue = MutationQueue(error_sink=report_error)
    queue.enqueue(Task("recut", lambda: recut_image(3), order_key=3))
    queue.enqueue(Task("regenerate", lambda: regenerate(5), order_key=5))
    await queue.join()
"""

import asyncio
import inspect
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from imagegen.sdk.errors import QueueClosedError

logger = structlog.get_logger()

ErrorSink = Callable[["Task", BaseException], Any]
ExecutingListener = Callable[[bool], Any]


@dataclass
class Task:
    """A unit of work for the queue.

    ``order_key`` is informational (for example the image index) and never
    affects ordering.
    """

    type: str
    executor: Callable[[], Awaitable[Any]]
    order_key: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class MutationQueue:
    """Serialized async task queue owned by one editing session."""

    def __init__(self, *, error_sink: Optional[ErrorSink] = None, name: str = "mutations") -> None:
        self.name = name
        self.error_sink = error_sink
        self._pending: deque[Task] = deque()
        self._executing = False
        self._closed = False
        self._drain_task: Optional[asyncio.Task] = None
        self._listeners: list[ExecutingListener] = []
        self._futures: dict[str, asyncio.Future] = {}

    @property
    def is_executing(self) -> bool:
        """Whether a task is running right now (read-only)."""
        return self._executing

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle(self) -> bool:
        return not self._executing and not self._pending

    def subscribe(self, listener: ExecutingListener) -> Callable[[], None]:
        """Call ``listener(is_executing)`` on every change; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def enqueue(self, task: Task) -> None:
        """Append ``task`` and start draining if idle. Returns immediately."""
        if self._closed:
            raise QueueClosedError(
                f"Queue {self.name} is closed",
                details={"task_type": task.type, "order_key": task.order_key},
            )
        self._pending.append(task)
        logger.debug(
            "Task enqueued",
            queue=self.name,
            task_type=task.type,
            order_key=task.order_key,
            pending=len(self._pending),
        )
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def submit(self, task: Task) -> asyncio.Future:
        """Enqueue ``task`` and return a future for its result."""
        future = asyncio.get_running_loop().create_future()
        self._futures[task.id] = future
        try:
            self.enqueue(task)
        except QueueClosedError:
            del self._futures[task.id]
            raise
        return future

    async def join(self) -> None:
        """Wait until no task is pending or executing."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def close(self, *, wait: bool = True) -> None:
        """Stop accepting tasks.

        With ``wait`` the pending tasks still run; otherwise they are dropped
        and only the task already executing finishes.
        """
        self._closed = True
        if not wait:
            dropped = len(self._pending)
            while self._pending:
                task = self._pending.popleft()
                future = self._futures.pop(task.id, None)
                if future is not None and not future.done():
                    future.cancel()
            if dropped:
                logger.info("Dropped pending tasks", queue=self.name, dropped=dropped)
        await self.join()

    async def __aenter__(self) -> "MutationQueue":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _drain(self) -> None:
        while self._pending:
            task = self._pending.popleft()
            self._set_executing(True)
            log = logger.bind(queue=self.name, task_id=task.id, task_type=task.type, order_key=task.order_key)
            log.debug("Task started")
            future = self._futures.pop(task.id, None)
            try:
                result = await task.executor()
            except Exception as e:
                log.warning("Task failed", error=str(e))
                if future is not None and not future.done():
                    future.set_exception(e)
                await self._report(task, e)
            else:
                log.debug("Task finished")
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._set_executing(False)

    async def _report(self, task: Task, error: BaseException) -> None:
        if self.error_sink is None:
            logger.error(
                "Unhandled task error",
                queue=self.name,
                task_type=task.type,
                order_key=task.order_key,
                exc_info=error,
            )
            return
        try:
            result = self.error_sink(task, error)
            if inspect.isawaitable(result):
                await result
        except Exception as sink_error:
            logger.error("Error sink raised", queue=self.name, error=str(sink_error))

    def _set_executing(self, value: bool) -> None:
        if self._executing == value:
            return
        self._executing = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.warning("Executing listener raised", queue=self.name, error=str(e))
