"""Server-Sent-Event decoding.

Turns the raw chunks of a ``text/event-stream`` body into typed events::

    async for event in decode(response.aiter_bytes()):
        if event.kind == "delta":
            print(event.text, end="")
        elif event.kind == "artifact":
            artifacts.append(await normalizer.resolve(event.artifact))

Each decoder owns its buffer, so independent streams can be decoded in
parallel. The sequence ends on ``data: [DONE]`` or when the source closes,
and consumers must treat both the same way.
"""

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

import httpx
import structlog

from imagegen.sdk.errors import TransportError, UpstreamFailure, redact
from imagegen.sdk.models import PartialArtifact

logger = structlog.get_logger()

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

TEXT_FIELDS = ("content", "text", "delta")
URL_FIELDS = ("imageUrl", "image_url", "url")
BASE64_FIELDS = ("imageBase64", "image_base64", "b64_json")
INLINE_FIELDS = ("inline_data", "inlineData")


@dataclass(frozen=True)
class DeltaEvent:
    text: str
    kind: Literal["delta"] = field(default="delta", init=False)


@dataclass(frozen=True)
class ArtifactEvent:
    artifact: PartialArtifact
    kind: Literal["artifact"] = field(default="artifact", init=False)


@dataclass(frozen=True)
class DoneEvent:
    kind: Literal["done"] = field(default="done", init=False)


@dataclass(frozen=True)
class MalformedEvent:
    raw: str
    kind: Literal["malformed"] = field(default="malformed", init=False)


StreamEvent = Union[DeltaEvent, ArtifactEvent, DoneEvent, MalformedEvent]

Chunk = Union[bytes, bytearray, str]


def _text_of(obj: dict[str, Any]) -> Optional[str]:
    for key in TEXT_FIELDS:
        value = obj.get(key)
        if isinstance(value, str):
            return value
    # chat-completion chunk: choices[].delta.content
    choices = obj.get("choices")
    if isinstance(choices, list):
        parts = []
        for choice in choices:
            delta = choice.get("delta") if isinstance(choice, dict) else None
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                parts.append(content)
        if parts:
            return "".join(parts)
    return None


def _artifact_of(obj: dict[str, Any]) -> Optional[PartialArtifact]:
    url = next((obj[k] for k in URL_FIELDS if isinstance(obj.get(k), str) and obj[k]), None)
    b64 = next((obj[k] for k in BASE64_FIELDS if isinstance(obj.get(k), str) and obj[k]), None)
    mime_type = obj.get("mimeType") or obj.get("mime_type")
    if b64 is None:
        inline = next((obj[k] for k in INLINE_FIELDS if isinstance(obj.get(k), dict)), None)
        if inline and inline.get("data"):
            b64 = inline["data"]
            mime_type = inline.get("mime_type") or inline.get("mimeType") or mime_type
    if url is None and b64 is None:
        return None
    return PartialArtifact(
        url=url, b64=b64, mime_type=mime_type if isinstance(mime_type, str) else None
    )


def classify_payload(payload: str) -> list[StreamEvent]:
    """Turn one ``data:`` payload (already trimmed) into zero or more events.

    Raises:
        UpstreamFailure: the payload is an error report from the backend
    """
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError:
        return [MalformedEvent(raw=payload)]
    if not isinstance(obj, dict):
        return [MalformedEvent(raw=payload)]

    events: list[StreamEvent] = []
    text = _text_of(obj)
    if text is not None:
        events.append(DeltaEvent(text=text))
    artifact = _artifact_of(obj)
    if artifact is not None:
        events.append(ArtifactEvent(artifact=artifact))
    if not events:
        message = _error_of(obj)
        if message is not None:
            raise UpstreamFailure(message, details={"payload": redact(payload, limit=200)})
    return events


def _error_of(obj: dict[str, Any]) -> Optional[str]:
    error = obj.get("error")
    if isinstance(error, dict):
        error = error.get("message") or error.get("msg")
    if isinstance(error, str) and error:
        return error
    # Coze-style {"code": 4015, "msg": "..."} with a non-zero code
    if obj.get("code") not in (None, 0, "0") and isinstance(obj.get("msg"), str):
        return obj["msg"]
    return None


class StreamDecoder:
    """Incremental SSE line decoder.

    ``feed`` is a pure transformation of chunks into events and never blocks;
    ``decode`` drives it from an (async) chunk source.
    """

    def __init__(
        self,
        *,
        prefix: str = DATA_PREFIX,
        sentinel: str = DONE_SENTINEL,
        encoding: str = "utf-8",
    ) -> None:
        self.prefix = prefix
        self.sentinel = sentinel
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, chunk: Chunk) -> list[StreamEvent]:
        """Append ``chunk`` and return the events of every completed line."""
        if self._done:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        self._buffer += text

        *lines, self._buffer = self._buffer.split("\n")
        return self._process(lines)

    def flush(self) -> list[StreamEvent]:
        """Source closed: decode whatever is left in the buffer."""
        if self._done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events = self._process(tail.split("\n")) if tail else []
        self._done = True
        return events

    def _process(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(self.prefix):
                continue
            payload = line[len(self.prefix):].strip()
            if payload == self.sentinel:
                events.append(DoneEvent())
                self._done = True
                self._buffer = ""
                break
            if not payload:
                continue
            try:
                line_events = classify_payload(payload)
            except UpstreamFailure:
                self._done = True
                self._buffer = ""
                raise
            for event in line_events:
                if isinstance(event, MalformedEvent):
                    logger.warning("Malformed stream line", raw=redact(payload, limit=200))
            events.extend(line_events)
        return events

    async def decode(
        self, source: Union[AsyncIterable[Chunk], Iterable[Chunk]]
    ) -> AsyncIterator[StreamEvent]:
        """Yield events from ``source`` until ``[DONE]`` or end of stream.

        Raises:
            TransportError: the underlying transport failed mid-stream.
            UpstreamFailure: the backend reported an error in the stream.
        """
        iterator = _aiter(source)
        try:
            while not self._done:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    for event in self.flush():
                        yield event
                    break
                except (httpx.TransportError, OSError) as e:
                    logger.warning("Stream transport failed", error=str(e))
                    raise TransportError("Stream aborted by transport failure", cause=e) from e
                for event in self.feed(chunk):
                    yield event
                    if isinstance(event, DoneEvent):
                        break
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


async def _iter_sync(source: Iterable[Chunk]) -> AsyncIterator[Chunk]:
    for chunk in source:
        yield chunk


def _aiter(source: Union[AsyncIterable[Chunk], Iterable[Chunk]]) -> AsyncIterator[Chunk]:
    if hasattr(source, "__aiter__"):
        return source.__aiter__()  # type: ignore[union-attr]
    return _iter_sync(source)  # type: ignore[arg-type]


def decode(
    source: Union[AsyncIterable[Chunk], Iterable[Chunk]], **options: Any
) -> AsyncIterator[StreamEvent]:
    """Decode ``source`` with a fresh :class:`StreamDecoder`."""
    return StreamDecoder(**options).decode(source)


def encode_data_line(payload: Union[dict[str, Any], str]) -> str:
    """Encode one event as an SSE frame, the inverse of the decoder."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"{DATA_PREFIX} {data}\n\n"
