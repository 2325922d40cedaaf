"""Editing sessions: one mutation queue plus result slots per open editor."""

import asyncio
import inspect
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Optional

import structlog

from imagegen.sdk.client import GenerationClient
from imagegen.sdk.errors import NoImageFound
from imagegen.sdk.generation import run_stream_generation
from imagegen.sdk.models import ImageArtifact
from imagegen.sdk.mutation_queue import ErrorSink, MutationQueue, Task
from imagegen.sdk.normalizer import ResponseNormalizer
from imagegen.sdk.poller import JobPoller, PollOptions

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], Any]


class EditingSession:
    """Serializes edits against one set of generated images.

    Every edit (recut, regenerate, ...) runs through the session's
    :class:`MutationQueue`, so at most one destructive operation is in flight
    and edits apply in the order they were requested. The outcome of an edit
    lands in ``results[index]``.

    Example:
        async with EditingSession(client) as session:
            session.submit_job_edit("recut", 3, "/api/edit/recut", {"imageIndex": 3})
            session.submit_stream_edit("regenerate", 5, "/api/chat/fast", {"prompt": p})
            await session.join()
            print(session.results)
    """

    def __init__(
        self,
        client: GenerationClient,
        *,
        session_id: Optional[str] = None,
        poll_options: Optional[PollOptions] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        error_sink: Optional[ErrorSink] = None,
        on_progress: Optional[ProgressCallback] = None,
        owns_client: bool = False,
    ) -> None:
        self.client = client
        self.session_id = session_id or uuid.uuid4().hex
        self.poll_options = poll_options or PollOptions()
        self.normalizer = normalizer or ResponseNormalizer(fetch=client.fetch_image)
        self.on_progress = on_progress
        self.owns_client = owns_client
        self.results: dict[int, ImageArtifact] = {}
        self.created_at = time.monotonic()
        self.last_accessed = self.created_at
        self.queue = MutationQueue(error_sink=error_sink, name=f"session:{self.session_id}")
        self._pollers: set[JobPoller] = set()
        self._closed = False

    @property
    def is_busy(self) -> bool:
        return self.queue.is_executing

    @property
    def closed(self) -> bool:
        return self._closed

    def touch(self) -> None:
        self.last_accessed = time.monotonic()

    def submit_job_edit(self, type: str, index: int, path: str, body: dict[str, Any]) -> asyncio.Future:
        """Queue a long-running edit: submit, poll to completion, normalize."""

        async def run() -> ImageArtifact:
            job_id = await self.client.submit_job(path, body)
            poller = JobPoller(
                self.client.get_job,
                self.poll_options,
                on_progress=lambda percent, record: self._progress(index, percent),
                should_stop=lambda: self._closed,
            )
            self._pollers.add(poller)
            try:
                outcome = await poller.poll(job_id)
            finally:
                self._pollers.discard(poller)
            record = outcome.unwrap()
            if record.result is None:
                raise NoImageFound(None, fragments=0)
            artifacts = await self.normalizer.extract(record.result)
            return self._store(index, artifacts[0])

        self.touch()
        return self.queue.submit(Task(type, run, order_key=index))

    def submit_stream_edit(self, type: str, index: int, path: str, body: dict[str, Any]) -> asyncio.Future:
        """Queue a streaming edit: stream, normalize."""

        async def run() -> ImageArtifact:
            result = await run_stream_generation(
                self.client.generate_stream(path, body),
                self.normalizer,
            )
            return self._store(index, result.artifacts[0])

        self.touch()
        return self.queue.submit(Task(type, run, order_key=index))

    async def join(self) -> None:
        await self.queue.join()

    async def close(self) -> None:
        """Drop pending edits, stop active polling and release the client."""
        if self._closed:
            return
        self._closed = True
        for poller in list(self._pollers):
            poller.cancel()
        await self.queue.close(wait=False)
        if self.owns_client:
            await self.client.close()
        logger.info("Editing session closed", session_id=self.session_id, results=len(self.results))

    async def __aenter__(self) -> "EditingSession":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _store(self, index: int, artifact: ImageArtifact) -> ImageArtifact:
        if self._closed:
            logger.debug("Ignoring result for closed session", session_id=self.session_id, index=index)
            return artifact
        self.results[index] = artifact
        self.touch()
        return artifact

    async def _progress(self, index: int, percent: int) -> None:
        if self.on_progress is None or self._closed:
            return
        result = self.on_progress(index, percent)
        if inspect.isawaitable(result):
            await result


SessionFactory = Callable[[str], EditingSession]


class EditingSessionManager:
    """In-memory editing sessions with LRU eviction and TTL cleanup.

    Evicted and expired sessions are closed. A session that is executing an
    edit is never expired.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        max_sessions: int = 100,
        ttl_seconds: float = 1800,
        cleanup_interval: float = 60,
    ):
        self.session_factory = session_factory
        self.sessions: OrderedDict[str, EditingSession] = OrderedDict()
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval = cleanup_interval
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start background cleanup task."""
        if not self._cleanup_task:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self):
        """Stop cleanup and close every session."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        async with self._lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session in sessions:
            await session.close()

    async def get_or_create(self, session_id: str) -> EditingSession:
        evicted: Optional[EditingSession] = None
        async with self._lock:
            if session_id in self.sessions:
                self.sessions.move_to_end(session_id)
                session = self.sessions[session_id]
                session.touch()
                return session

            session = self.session_factory(session_id)
            if len(self.sessions) >= self.max_sessions:
                oldest_id, evicted = self.sessions.popitem(last=False)
                logger.info("Evicted oldest session", session_id=oldest_id)
            self.sessions[session_id] = session
            logger.info("Created editing session", session_id=session_id)

        if evicted is not None:
            await evicted.close()
        return session

    async def get(self, session_id: str) -> Optional[EditingSession]:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is not None:
                self.sessions.move_to_end(session_id)
                session.touch()
            return session

    async def remove(self, session_id: str) -> bool:
        """Close and forget ``session_id``. Returns whether it existed."""
        async with self._lock:
            session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def get_stats(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "active_sessions": len(self.sessions),
                "busy_sessions": sum(1 for s in self.sessions.values() if s.is_busy),
                "max_sessions": self.max_sessions,
                "ttl_seconds": self.ttl_seconds,
            }

    async def _cleanup_loop(self):
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in cleanup loop", error=str(e))

    async def cleanup_expired(self) -> int:
        """Close sessions idle for longer than ``ttl_seconds``."""
        now = time.monotonic()
        async with self._lock:
            expired = [
                session_id
                for session_id, session in self.sessions.items()
                if now - session.last_accessed > self.ttl_seconds and not session.is_busy
            ]
            sessions = [self.sessions.pop(session_id) for session_id in expired]

        for session in sessions:
            logger.info("Cleaned up expired session", session_id=session.session_id)
            await session.close()
        if sessions:
            logger.info("Cleaned up sessions", count=len(sessions))
        return len(sessions)
