"""
imagegen SDK - Import this in your application code

This module provides the client-side plumbing of an image-generation app:
- StreamDecoder: Server-Sent-Event bytes to typed events
- ResponseNormalizer: any upstream payload shape to ImageArtifacts
- JobPoller: drive a long-running job to a terminal outcome
- MutationQueue / EditingSession: serialized edits per editing session
- GenerationClient: HTTP client for job-record and streaming endpoints

Example:
    from imagegen.sdk import EditingSession, Settings, run_stream_generation

    settings = Settings.load("imagegen.yaml")
    async with settings.create_client() as client:
        result = await run_stream_generation(
            client.generate_stream("/api/chat/fast", {"prompt": "a red fox"}),
            settings.create_normalizer(client),
        )
        print(result.artifacts[0].to_response())

        async with EditingSession(client, poll_options=settings.poll) as session:
            session.submit_job_edit("recut", 3, "/api/edit/recut", {"imageIndex": 3})
            await session.join()
"""

from imagegen.sdk.client import GenerationClient
from imagegen.sdk.config import Settings
from imagegen.sdk.generation import StreamResult, run_stream_generation
from imagegen.sdk.models import (
    FetchedImage,
    ImageArtifact,
    JobRecord,
    JobStatus,
    PartialArtifact,
)
from imagegen.sdk.mutation_queue import MutationQueue, Task
from imagegen.sdk.normalizer import ResponseNormalizer, collect_fragments
from imagegen.sdk.poller import JobPoller, PollOptions, PollOutcome, PollState, poll_job
from imagegen.sdk.session import EditingSession, EditingSessionManager
from imagegen.sdk.streaming import (
    ArtifactEvent,
    DeltaEvent,
    DoneEvent,
    MalformedEvent,
    StreamDecoder,
    StreamEvent,
    decode,
)
from imagegen.sdk.errors import (
    SDKError,
    TransportError,
    APIError,
    RateLimitError,
    NotFoundTransient,
    MalformedPayloadError,
    MalformedEventError,
    NoImageFound,
    UpstreamFailure,
    PollTimeoutError,
    PollExhaustedError,
    PollCancelled,
    QueueClosedError,
    ConfigError,
    is_transient,
)

__all__ = [
    # Core components
    "StreamDecoder",
    "decode",
    "ResponseNormalizer",
    "collect_fragments",
    "JobPoller",
    "PollOptions",
    "PollOutcome",
    "PollState",
    "poll_job",
    "MutationQueue",
    "Task",
    "GenerationClient",
    "run_stream_generation",
    "StreamResult",
    "EditingSession",
    "EditingSessionManager",
    "Settings",
    # Data model
    "ImageArtifact",
    "PartialArtifact",
    "FetchedImage",
    "JobRecord",
    "JobStatus",
    "StreamEvent",
    "DeltaEvent",
    "ArtifactEvent",
    "DoneEvent",
    "MalformedEvent",
    # Errors
    "SDKError",
    "TransportError",
    "APIError",
    "RateLimitError",
    "NotFoundTransient",
    "MalformedPayloadError",
    "MalformedEventError",
    "NoImageFound",
    "UpstreamFailure",
    "PollTimeoutError",
    "PollExhaustedError",
    "PollCancelled",
    "QueueClosedError",
    "ConfigError",
    "is_transient",
]
