"""JobPoller - drive a job id to a terminal outcome.

One poller serves one ``poll`` call. Each cycle fetches the job through the
injected ``fetch_status`` capability and classifies the result as not-found,
transient error or a valid record::

    poller = JobPoller(
        client.get_job,
        PollOptions(interval=2.0, max_attempts=150, not_found_tolerance=10),
        on_progress=lambda pct, record: print(f"{pct}%"),
    )
    outcome = await poller.poll(job_id)
    record = outcome.unwrap()

Polling always ends: ``max_attempts`` counts every fetch, and ``max_elapsed``
optionally bounds wall-clock time. ``cancel()`` stops it cooperatively with no
further fetches and no callbacks.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from imagegen.sdk.errors import (
    APIError,
    NotFoundTransient,
    PollCancelled,
    PollExhaustedError,
    PollTimeoutError,
    SDKError,
    UpstreamFailure,
)
from imagegen.sdk.models import JobRecord, JobStatus

logger = structlog.get_logger()

StatusFetcher = Callable[[str], Awaitable[Union[JobRecord, dict[str, Any]]]]
DEFAULT_FAILURE_MESSAGE = "Generation job failed"


class PollOptions(BaseModel):
    """Polling budget. Times are in seconds."""

    model_config = ConfigDict(extra="forbid")

    interval: float = Field(default=2.0, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_attempts: int = Field(default=150, ge=1)
    not_found_tolerance: int = Field(default=10, ge=1)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=10.0, ge=0)
    max_elapsed: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_interval_cap(self) -> "PollOptions":
        if self.max_interval < self.interval:
            self.max_interval = self.interval
        return self


class PollState(str, Enum):
    SCHEDULED = "scheduled"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"

    @property
    def is_final(self) -> bool:
        return self not in (PollState.SCHEDULED, PollState.FETCHING)


@dataclass
class PollSession:
    """Bookkeeping for one ``poll`` call. Never shared."""

    attempts: int = 0
    not_found_streak: int = 0
    transient_streak: int = 0
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)
    last_record: Optional[JobRecord] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class PollOutcome:
    """How a ``poll`` call ended."""

    state: PollState
    job_id: str
    record: Optional[JobRecord] = None
    error: Optional[SDKError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.state == PollState.SUCCEEDED

    def unwrap(self) -> JobRecord:
        """Return the succeeded record or raise the terminal error."""
        if self.state == PollState.SUCCEEDED and self.record is not None:
            return self.record
        if self.state == PollState.CANCELLED:
            raise PollCancelled(self.job_id)
        if self.error is not None:
            raise self.error
        raise UpstreamFailure(f"Polling of job {self.job_id} ended in state {self.state.value}")


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class JobPoller:
    """Finite-state polling loop over an injected status fetcher.

    Callbacks may be plain functions or coroutine functions:

    - ``on_progress(percent, record)``: every valid record
    - ``on_success(record)``: once, on ``succeeded``
    - ``on_error(error)``: once, on ``failed`` (``UpstreamFailure``) or when
      the attempt/time budget runs out (``PollTimeoutError``)
    - ``on_stop(outcome)``: once, whenever polling stops for any reason
      other than cancellation
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        options: Optional[PollOptions] = None,
        *,
        on_progress: Optional[Callable[[int, JobRecord], Any]] = None,
        on_success: Optional[Callable[[JobRecord], Any]] = None,
        on_error: Optional[Callable[[SDKError], Any]] = None,
        on_stop: Optional[Callable[[PollOutcome], Any]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.fetch_status = fetch_status
        self.options = options or PollOptions()
        self.on_progress = on_progress
        self.on_success = on_success
        self.on_error = on_error
        self.on_stop = on_stop
        self.should_stop = should_stop
        self.state = PollState.SCHEDULED
        self._session: Optional[PollSession] = None
        self._cancel_event = asyncio.Event()
        self._started = False

    @property
    def session(self) -> Optional[PollSession]:
        return self._session

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request a cooperative stop; honored at the next check point."""
        self._cancel_event.set()
        if self._session is not None:
            self._session.cancelled = True

    def _should_cancel(self) -> bool:
        if self._cancel_event.is_set():
            return True
        if self.should_stop is not None and self.should_stop():
            self.cancel()
            return True
        return False

    async def _sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _retry_delay(self, session: PollSession) -> float:
        delay = self.options.interval * self.options.backoff_factor ** max(
            session.transient_streak - 1, 0
        )
        return min(delay, self.options.max_interval)

    def _budget_left(self, session: PollSession) -> bool:
        if session.attempts >= self.options.max_attempts:
            return False
        if self.options.max_elapsed is not None and session.elapsed >= self.options.max_elapsed:
            return False
        return True

    async def poll(self, job_id: str) -> PollOutcome:
        """Poll ``job_id`` until a terminal outcome. May be called once."""
        if self._started:
            raise RuntimeError("JobPoller.poll() may only be called once per poller")
        self._started = True

        session = PollSession(cancelled=self._cancel_event.is_set())
        self._session = session
        log = logger.bind(job_id=job_id)
        log.info("Polling job", max_attempts=self.options.max_attempts)

        delay = self.options.initial_delay
        last_error: Optional[BaseException] = None

        while True:
            self.state = PollState.SCHEDULED
            if not self._budget_left(session):
                return await self._timed_out(job_id, session, last_error, log)
            await self._sleep(delay)

            if self._should_cancel():
                return self._cancelled(job_id, session, log)
            if not self._budget_left(session):
                return await self._timed_out(job_id, session, last_error, log)

            self.state = PollState.FETCHING
            session.attempts += 1
            try:
                payload = await self.fetch_status(job_id)
                record = JobRecord.from_payload(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._should_cancel():
                    return self._cancelled(job_id, session, log)
                if _is_not_found(e):
                    session.not_found_streak += 1
                    log.debug("Job not visible yet", streak=session.not_found_streak, attempt=session.attempts)
                    if session.not_found_streak > self.options.not_found_tolerance:
                        error = PollExhaustedError(job_id, session.not_found_streak)
                        log.info("Job stayed invisible, giving up", streak=session.not_found_streak)
                        return await self._finish(
                            PollOutcome(PollState.EXHAUSTED, job_id, session.last_record, error, session.attempts)
                        )
                    delay = self.options.interval
                    continue
                last_error = e
                session.transient_streak += 1
                delay = self._retry_delay(session)
                log.warning(
                    "Job status fetch failed",
                    attempt=session.attempts,
                    error=str(e),
                    retry_in=delay,
                )
                continue

            if self._should_cancel():
                return self._cancelled(job_id, session, log)

            session.not_found_streak = 0
            session.transient_streak = 0
            previous = session.last_record
            if previous is not None and record.status.rank < previous.status.rank:
                log.warning(
                    "Job status went backwards",
                    previous=previous.status.value,
                    current=record.status.value,
                )
            session.last_record = record
            await _call(self.on_progress, record.progress, record)

            if record.status == JobStatus.SUCCEEDED:
                log.info("Job succeeded", attempts=session.attempts)
                await _call(self.on_success, record)
                return await self._finish(
                    PollOutcome(PollState.SUCCEEDED, job_id, record, None, session.attempts)
                )
            if record.status == JobStatus.FAILED:
                error = UpstreamFailure(
                    record.error or DEFAULT_FAILURE_MESSAGE,
                    details={"job_id": job_id},
                )
                log.info("Job failed", error=error.message)
                return await self._finish(
                    PollOutcome(PollState.FAILED, job_id, record, error, session.attempts),
                    error=error,
                )

            delay = self.options.interval

    async def _timed_out(
        self, job_id: str, session: PollSession, last_error: Optional[BaseException], log: Any
    ) -> PollOutcome:
        error = PollTimeoutError(job_id, session.attempts, cause=last_error)
        log.warning("Polling budget exhausted", attempts=session.attempts)
        return await self._finish(
            PollOutcome(PollState.EXHAUSTED, job_id, session.last_record, error, session.attempts),
            error=error,
        )

    def _cancelled(self, job_id: str, session: PollSession, log: Any) -> PollOutcome:
        session.cancelled = True
        self.state = PollState.CANCELLED
        log.info("Polling cancelled", attempts=session.attempts)
        return PollOutcome(PollState.CANCELLED, job_id, session.last_record, PollCancelled(job_id), session.attempts)

    async def _finish(self, outcome: PollOutcome, *, error: Optional[SDKError] = None) -> PollOutcome:
        self.state = outcome.state
        if error is not None:
            await _call(self.on_error, error)
        await _call(self.on_stop, outcome)
        return outcome


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundTransient):
        return True
    return isinstance(exc, APIError) and exc.status_code == 404


async def poll_job(
    job_id: str,
    fetch_status: StatusFetcher,
    options: Optional[PollOptions] = None,
    **callbacks: Any,
) -> PollOutcome:
    """Poll ``job_id`` once with a throwaway :class:`JobPoller`."""
    return await JobPoller(fetch_status, options, **callbacks).poll(job_id)
