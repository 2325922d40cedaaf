"""GenerationClient - Async HTTP client for generation backends."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Optional

import httpx
import structlog

from imagegen.sdk.errors import (
    APIError,
    MalformedPayloadError,
    NotFoundTransient,
    RateLimitError,
    TransportError,
    UpstreamFailure,
    redact,
)
from imagegen.sdk.models import FetchedImage, JobRecord
from imagegen.sdk.streaming import StreamEvent, decode

logger = structlog.get_logger()

DEFAULT_MAX_IMAGE_BYTES = 20 * 1024 * 1024
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def _error_message(body: Any) -> Optional[str]:
    """Most specific message in an error body, if any."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("msg")
    if isinstance(error, str) and error:
        return error
    message = body.get("message") or body.get("msg")
    return message if isinstance(message, str) and message else None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": redact(response.text, limit=500)}


class GenerationClient:
    """Async HTTP client for job-record and streaming generation endpoints.

    This client provides:
    - Job submission and job-record lookup (``GET {jobs_path}/{id}``)
    - Streaming generation over ``text/event-stream``
    - Image download for the response normalizer

    Example:
        async with GenerationClient(base_url, api_key) as client:
            job_id = await client.submit_job("/api/generate/logo", body)
            outcome = await JobPoller(client.get_job).poll(job_id)
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        jobs_path: str = "/api/jobs",
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the generation client.

        Args:
            base_url: Base URL of the backend (e.g., "https://studio.example.com")
            api_key: Bearer token sent with every request, if any
            timeout: Request timeout in seconds
            max_retries: Maximum attempts for requests that fail to connect
            jobs_path: Path prefix of the job-record endpoint
            max_image_bytes: Upper bound for downloaded images
            transport: Custom httpx transport (tests, proxies)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.jobs_path = "/" + jobs_path.strip("/")
        self.max_image_bytes = max_image_bytes
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._fetch_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def _get_fetch_client(self) -> httpx.AsyncClient:
        """Client for image downloads; image hosts never see the API key."""
        if self._fetch_client is None or self._fetch_client.is_closed:
            self._fetch_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._fetch_client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request, retrying connection failures.

        Read and write timeouts are retried only for idempotent methods.
        Returns the response for any status; callers map statuses to errors.

        Raises:
            TransportError: If the request cannot complete
        """
        client = await self._get_client()
        for attempt in range(self.max_retries):
            try:
                return await client.request(method, path, json=json, params=params)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                retryable = isinstance(e, (httpx.ConnectError, httpx.ConnectTimeout)) or (
                    method.upper() in IDEMPOTENT_METHODS
                )
                if retryable and attempt < self.max_retries - 1:
                    delay = 2**attempt
                    logger.warning(
                        "Request failed, retrying",
                        method=method,
                        path=path,
                        attempt=attempt + 1,
                        retry_in=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue
                raise TransportError(
                    f"{method} {path} failed after {attempt + 1} attempt(s): {type(e).__name__}",
                    url=f"{self.base_url}{path}",
                    cause=e,
                ) from e
            except httpx.TransportError as e:
                raise TransportError(str(e) or "Transport failure", url=f"{self.base_url}{path}", cause=e) from e
        raise TransportError("Request failed", url=f"{self.base_url}{path}")

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)
        if response.status_code >= 400:
            raise APIError(response.status_code, _response_body(response))

    # Jobs

    async def get_job(self, job_id: str) -> JobRecord:
        """Fetch one job-record snapshot.

        Raises:
            NotFoundTransient: HTTP 404, expected early in a job's life
            MalformedPayloadError: The envelope carries no usable job
            APIError / RateLimitError / TransportError: Other failures
        """
        response = await self._request("GET", f"{self.jobs_path}/{job_id}")
        if response.status_code == 404:
            raise NotFoundTransient(job_id)
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedPayloadError("Job endpoint returned non-JSON body", cause=e) from e
        return JobRecord.from_payload(payload)

    async def submit_job(self, path: str, body: dict[str, Any]) -> str:
        """Submit a long-running job and return its id.

        Raises:
            UpstreamFailure: The backend rejected the job with a message
            MalformedPayloadError: No job id in the response
        """
        response = await self._request("POST", path, json=body)
        if response.status_code >= 400 and response.status_code != 429:
            body_json = _response_body(response)
            message = _error_message(body_json)
            if message:
                raise UpstreamFailure(message, details={"status_code": response.status_code})
        self._raise_for_status(response)
        payload = _response_body(response)
        if isinstance(payload, dict) and payload.get("ok") is False:
            raise UpstreamFailure(_error_message(payload) or "Job submission rejected")
        job_id = None
        if isinstance(payload, dict):
            job = payload.get("job")
            job_id = payload.get("jobId") or payload.get("id") or (job.get("id") if isinstance(job, dict) else None)
        if not job_id:
            raise MalformedPayloadError(
                "Job submission returned no job id",
                details={"response": redact(str(payload), limit=300)},
            )
        logger.info("Job submitted", path=path, job_id=job_id)
        return str(job_id)

    # Streaming

    async def stream(self, path: str, body: dict[str, Any]) -> AsyncIterator[bytes]:
        """POST ``body`` and yield the raw ``text/event-stream`` bytes.

        Raises:
            UpstreamFailure: Error status with a message in the body
            APIError: Error status without a usable message
            TransportError: Connection failure before or during the stream
        """
        client = await self._get_client()
        try:
            async with client.stream(
                "POST", path, json=body, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    body_json = _response_body(response)
                    message = _error_message(body_json)
                    if message:
                        raise UpstreamFailure(message, details={"status_code": response.status_code})
                    raise APIError(response.status_code, body_json)
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.TransportError as e:
            raise TransportError(str(e) or "Stream transport failure", url=f"{self.base_url}{path}", cause=e) from e

    def generate_stream(self, path: str, body: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Decoded events of a streaming generation call."""
        return decode(self.stream(path, body))

    # Images

    async def fetch_image(self, url: str) -> FetchedImage:
        """Download image bytes, bounded by ``max_image_bytes``.

        Raises:
            APIError: Error status from the image host
            TransportError: Connection failure
            ValueError: The image exceeds the size limit
        """
        if not url.startswith(("http://", "https://")):
            url = f"{self.base_url}/{url.lstrip('/')}"
        client = await self._get_fetch_client()
        try:
            async with client.stream("GET", url, headers={"Accept": "image/*"}) as response:
                if response.status_code >= 400:
                    raise APIError(response.status_code, {"url": redact(url, limit=200)})
                chunks: list[bytes] = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_image_bytes:
                        raise ValueError(f"Image exceeds maximum size of {self.max_image_bytes} bytes")
                    chunks.append(chunk)
                return FetchedImage(b"".join(chunks), response.headers.get("Content-Type"))
        except httpx.TransportError as e:
            raise TransportError(str(e) or "Image download failed", url=redact(url, limit=200), cause=e) from e

    # Lifecycle Methods

    async def close(self) -> None:
        """Close the HTTP clients."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
        if self._fetch_client and not self._fetch_client.is_closed:
            await self._fetch_client.aclose()
            self._fetch_client = None

    async def __aenter__(self) -> "GenerationClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()
