"""Fast chat-style generation: decoded stream events to image artifacts."""

import inspect
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from imagegen.sdk.errors import NoImageFound, redact
from imagegen.sdk.models import ImageArtifact
from imagegen.sdk.normalizer import ResponseNormalizer
from imagegen.sdk.streaming import (
    ArtifactEvent,
    DeltaEvent,
    DoneEvent,
    MalformedEvent,
    StreamEvent,
)

logger = structlog.get_logger()


@dataclass
class StreamResult:
    """Everything a streaming generation produced."""

    text: str = ""
    artifacts: list[ImageArtifact] = field(default_factory=list)
    malformed: int = 0


async def run_stream_generation(
    events: AsyncIterator[StreamEvent],
    normalizer: ResponseNormalizer,
    *,
    on_delta: Optional[Callable[[str], Any]] = None,
    require_image: bool = True,
) -> StreamResult:
    """Consume ``events`` and resolve every image they reference.

    Artifact events go through ``normalizer.resolve``; a failing reference is
    logged and skipped. When the stream carried no artifact event, the
    concatenated delta text is normalized as one fragment, which catches a
    Markdown link split over several deltas.

    Raises:
        UpstreamFailure: the stream itself reported an error (from the decoder)
        NoImageFound: ``require_image`` and nothing resolved
        TransportError: the transport failed mid-stream
    """
    result = StreamResult()
    text_parts: list[str] = []
    saw_artifact_event = False

    async for event in events:
        if isinstance(event, DeltaEvent):
            text_parts.append(event.text)
            if on_delta is not None:
                outcome = on_delta(event.text)
                if inspect.isawaitable(outcome):
                    await outcome
        elif isinstance(event, ArtifactEvent):
            saw_artifact_event = True
            try:
                result.artifacts.append(await normalizer.resolve(event.artifact))
            except NoImageFound as e:
                logger.warning("Unresolvable stream artifact", error=e.message)
        elif isinstance(event, MalformedEvent):
            result.malformed += 1
            logger.debug("Skipping malformed stream event", raw=redact(event.raw, limit=120))
        elif isinstance(event, DoneEvent):
            break

    result.text = "".join(text_parts)

    if not saw_artifact_event and result.text.strip():
        try:
            result.artifacts.extend(await normalizer.extract(result.text))
        except NoImageFound:
            logger.debug("Stream text carried no image", text_length=len(result.text))

    if require_image and not result.artifacts:
        raise NoImageFound(result.text or None, fragments=1 if result.text else 0)

    logger.info(
        "Stream generation finished",
        artifacts=len(result.artifacts),
        malformed=result.malformed,
        text_length=len(result.text),
    )
    return result
