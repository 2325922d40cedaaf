"""Tests for SSE stream decoding."""

import json

import httpx
import pytest

from imagegen.sdk.errors import TransportError, UpstreamFailure
from imagegen.sdk.streaming import (
    ArtifactEvent,
    DeltaEvent,
    DoneEvent,
    MalformedEvent,
    StreamDecoder,
    classify_payload,
    decode,
    encode_data_line,
)


async def collect(source, **options):
    return [event async for event in decode(source, **options)]


class TestClassifyPayload:
    """Tests for single-payload classification."""

    def test_text_fields(self):
        assert classify_payload('{"content": "hi"}') == [DeltaEvent("hi")]
        assert classify_payload('{"text": "hi"}') == [DeltaEvent("hi")]
        assert classify_payload('{"delta": "hi"}') == [DeltaEvent("hi")]

    def test_chat_chunk(self):
        payload = json.dumps({"choices": [{"delta": {"content": "Here"}}, {"delta": {"content": " it is"}}]})
        assert classify_payload(payload) == [DeltaEvent("Here it is")]

    def test_image_url(self):
        [event] = classify_payload('{"imageUrl": "https://cdn.test/a.png"}')
        assert isinstance(event, ArtifactEvent)
        assert event.artifact.url == "https://cdn.test/a.png"
        assert event.artifact.b64 is None

    def test_image_base64_with_mime(self):
        [event] = classify_payload('{"imageBase64": "QUJD", "mimeType": "image/webp"}')
        assert event.artifact.b64 == "QUJD"
        assert event.artifact.mime_type == "image/webp"

    def test_inline_data(self):
        [event] = classify_payload('{"inline_data": {"mime_type": "image/jpeg", "data": "QUJD"}}')
        assert event.artifact.b64 == "QUJD"
        assert event.artifact.mime_type == "image/jpeg"

    def test_text_before_artifact(self):
        """A payload with both yields the delta first."""
        events = classify_payload('{"content": "done", "imageUrl": "https://cdn.test/a.png"}')
        assert [e.kind for e in events] == ["delta", "artifact"]

    def test_neither_yields_nothing(self):
        assert classify_payload('{"type": "ping"}') == []

    def test_invalid_json_is_malformed(self):
        assert classify_payload("{not json") == [MalformedEvent("{not json")]

    def test_non_object_is_malformed(self):
        assert classify_payload("[1, 2]") == [MalformedEvent("[1, 2]")]

    def test_error_payload_raises(self):
        with pytest.raises(UpstreamFailure) as exc_info:
            classify_payload('{"error": "Quota exceeded"}')
        assert exc_info.value.message == "Quota exceeded"

    def test_nested_error_payload(self):
        with pytest.raises(UpstreamFailure) as exc_info:
            classify_payload('{"error": {"message": "Model overloaded"}}')
        assert exc_info.value.message == "Model overloaded"

    def test_coze_error_code(self):
        with pytest.raises(UpstreamFailure):
            classify_payload('{"code": 4015, "msg": "bot not published"}')
        assert classify_payload('{"code": 0, "msg": "success"}') == []


class TestStreamDecoderFeed:
    """Tests for the synchronous feed/flush API."""

    def test_partial_line_is_buffered(self):
        decoder = StreamDecoder()
        assert decoder.feed(b'data: {"con') == []
        assert decoder.feed(b'tent":"hello"}\n') == [DeltaEvent("hello")]

    def test_ignores_comments_and_other_fields(self):
        decoder = StreamDecoder()
        events = decoder.feed(b': keep-alive\nevent: message\nid: 3\ndata: {"text": "a"}\n\n')
        assert events == [DeltaEvent("a")]

    def test_crlf_lines(self):
        decoder = StreamDecoder()
        assert decoder.feed(b'data: {"text": "a"}\r\n\r\n') == [DeltaEvent("a")]

    def test_multibyte_character_split_across_chunks(self):
        body = 'data: {"text": "café \U0001F98A"}\n'.encode("utf-8")
        split = body.index("\U0001F98A".encode("utf-8")) + 2
        decoder = StreamDecoder()
        events = decoder.feed(body[:split]) + decoder.feed(body[split:])
        assert events == [DeltaEvent("café \U0001F98A")]

    def test_done_discards_rest(self):
        decoder = StreamDecoder()
        events = decoder.feed(b'data: [DONE]\ndata: {"text": "late"}\n')
        assert events == [DoneEvent()]
        assert decoder.done
        assert decoder.feed(b'data: {"text": "later"}\n') == []

    def test_flush_decodes_unterminated_line(self):
        decoder = StreamDecoder()
        assert decoder.feed(b'data: {"text": "last"}') == []
        assert decoder.flush() == [DeltaEvent("last")]
        assert decoder.done

    def test_empty_data_lines_skipped(self):
        decoder = StreamDecoder()
        assert decoder.feed(b"data:\ndata:   \n") == []

    def test_custom_prefix_and_sentinel(self):
        decoder = StreamDecoder(prefix="chunk:", sentinel="END")
        events = decoder.feed(b'chunk: {"text": "a"}\nchunk: END\n')
        assert events == [DeltaEvent("a"), DoneEvent()]


class TestDecode:
    """Tests for the async decode generator."""

    @pytest.mark.asyncio
    async def test_chunk_boundary_invariance(self, make_sse):
        """Every split of the body yields the same events."""
        body = make_sse(
            {"content": "hello"},
            {"content": " world"},
            {"imageUrl": "https://cdn.test/fox.png"},
            "{broken",
        )
        expected = await collect([body])
        assert [e.kind for e in expected] == ["delta", "delta", "artifact", "malformed", "done"]

        for size in (1, 2, 3, 7, 16, 64):
            chunks = [body[i:i + size] for i in range(0, len(body), size)]
            assert await collect(chunks) == expected, f"chunk size {size}"

    @pytest.mark.asyncio
    async def test_two_chunk_split_inside_json(self):
        events = await collect([b'data: {"con', b'tent":"hello"}\n'])
        assert events == [DeltaEvent("hello")]

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_stop_stream(self):
        events = await collect([b"data: {oops\n", b'data: {"text": "ok"}\n'])
        assert events == [MalformedEvent("{oops"), DeltaEvent("ok")]

    @pytest.mark.asyncio
    async def test_stops_after_done(self, make_sse):
        body = make_sse({"text": "a"}) + b'data: {"text": "after"}\n'
        events = await collect([body])
        assert events == [DeltaEvent("a"), DoneEvent()]

    @pytest.mark.asyncio
    async def test_close_without_done_ends_cleanly(self, make_sse):
        events = await collect([make_sse({"text": "a"}, done=False)])
        assert events == [DeltaEvent("a")]

    @pytest.mark.asyncio
    async def test_str_chunks(self):
        events = await collect(['data: {"text": "a"}\n'])
        assert events == [DeltaEvent("a")]

    @pytest.mark.asyncio
    async def test_async_source_is_closed(self):
        closed = []

        async def source():
            try:
                yield b'data: {"text": "a"}\n'
                yield b"data: [DONE]\n"
                yield b'data: {"text": "never"}\n'
            finally:
                closed.append(True)

        events = await collect(source())
        assert events == [DeltaEvent("a"), DoneEvent()]
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_transport_failure_is_not_end_of_stream(self):
        async def source():
            yield b'data: {"text": "a"}\n'
            raise httpx.ReadError("connection reset")

        received = []
        with pytest.raises(TransportError):
            async for event in decode(source()):
                received.append(event)
        assert received == [DeltaEvent("a")]

    @pytest.mark.asyncio
    async def test_error_event_raises(self):
        with pytest.raises(UpstreamFailure) as exc_info:
            await collect([b'data: {"text": "a"}\n', b'data: {"error": "Safety filter"}\n'])
        assert exc_info.value.message == "Safety filter"

    @pytest.mark.asyncio
    async def test_independent_decoders(self):
        """Two decoders never share buffers."""
        first = StreamDecoder()
        second = StreamDecoder()
        assert first.feed(b'data: {"text": "o') == []
        assert second.feed(b'data: {"text": "x"}\n') == [DeltaEvent("x")]
        assert first.feed(b'ne"}\n') == [DeltaEvent("one")]


class TestEncodeDataLine:
    """Tests for the SSE encoder used by fakes."""

    def test_encode(self):
        assert encode_data_line({"text": "a"}) == 'data: {"text": "a"}\n\n'
        assert encode_data_line("[DONE]") == "data: [DONE]\n\n"

    def test_decodes_back(self):
        decoder = StreamDecoder()
        assert decoder.feed(encode_data_line({"text": "é"})) == [DeltaEvent("é")]
