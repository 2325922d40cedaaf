"""Tests for streaming generation."""

import pytest

from imagegen.sdk.errors import NoImageFound, UpstreamFailure
from imagegen.sdk.generation import run_stream_generation
from imagegen.sdk.normalizer import ResponseNormalizer
from imagegen.sdk.streaming import decode


@pytest.fixture
def normalizer(fetch_jpeg):
    return ResponseNormalizer(fetch=fetch_jpeg)


class TestRunStreamGeneration:
    """Tests for run_stream_generation."""

    @pytest.mark.asyncio
    async def test_artifact_event(self, normalizer, make_sse, png_b64):
        body = make_sse({"content": "Working"}, {"imageBase64": png_b64, "mimeType": "image/png"})
        result = await run_stream_generation(decode([body]), normalizer)

        assert result.text == "Working"
        [artifact] = result.artifacts
        assert artifact.payload == png_b64
        assert result.malformed == 0

    @pytest.mark.asyncio
    async def test_markdown_split_across_deltas(self, normalizer, make_sse, fetch_jpeg):
        """A link spread over several deltas is found in the joined text."""
        body = make_sse(
            {"choices": [{"delta": {"content": "Here: ![lo"}}]},
            {"choices": [{"delta": {"content": "go](https://cdn.te"}}]},
            {"choices": [{"delta": {"content": "st/logo.png)"}}]},
        )
        result = await run_stream_generation(decode([body]), normalizer)

        assert result.text == "Here: ![logo](https://cdn.test/logo.png)"
        assert fetch_jpeg.calls == ["https://cdn.test/logo.png"]
        assert result.artifacts[0].mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_on_delta(self, normalizer, make_sse, png_b64):
        seen = []

        async def on_delta(text):
            seen.append(text)

        body = make_sse({"text": "a"}, {"text": "b"}, {"b64_json": png_b64})
        await run_stream_generation(decode([body]), normalizer, on_delta=on_delta)
        assert seen == ["a", "b"]

    @pytest.mark.asyncio
    async def test_malformed_lines_counted(self, normalizer, make_sse, png_b64):
        body = make_sse("{oops", {"imageBase64": png_b64})
        result = await run_stream_generation(decode([body]), normalizer)
        assert result.malformed == 1
        assert len(result.artifacts) == 1

    @pytest.mark.asyncio
    async def test_no_image(self, normalizer, make_sse):
        body = make_sse({"content": "Sorry, I can only describe images."})
        with pytest.raises(NoImageFound):
            await run_stream_generation(decode([body]), normalizer)

    @pytest.mark.asyncio
    async def test_no_image_allowed(self, normalizer, make_sse):
        body = make_sse({"content": "just text"})
        result = await run_stream_generation(decode([body]), normalizer, require_image=False)
        assert result.text == "just text"
        assert result.artifacts == []

    @pytest.mark.asyncio
    async def test_error_event(self, normalizer, make_sse):
        body = make_sse({"content": "start"}, {"error": "Content blocked by safety filter"})
        with pytest.raises(UpstreamFailure) as exc_info:
            await run_stream_generation(decode([body]), normalizer)
        assert exc_info.value.message == "Content blocked by safety filter"

    @pytest.mark.asyncio
    async def test_stream_without_done(self, normalizer, make_sse, png_b64):
        body = make_sse({"imageBase64": png_b64}, done=False)
        result = await run_stream_generation(decode([body]), normalizer)
        assert len(result.artifacts) == 1
