"""Extract usable images from heterogeneous upstream payloads.

Upstream vendors answer in several shapes: Gemini style
``candidates[].content.parts[]`` with ``inline_data``, chat-completion
``choices[].message.content`` strings holding a Markdown link, a bare URL, a
data URL or raw base64, image-API ``data[]`` entries, and job results. The
normalizer collects candidate *fragments* from any of these shapes and runs
each fragment through an ordered list of matchers; the first matcher that
produces an artifact wins for that fragment.

Example:
    async with GenerationClient(base_url) as client:
        normalizer = ResponseNormalizer(fetch=client.fetch_image)
        artifacts = await normalizer.extract(response_json)
"""

import base64
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from imagegen.sdk.errors import NoImageFound, SDKError, is_transient, redact
from imagegen.sdk.models import (
    DEFAULT_MIME_TYPE,
    FetchedImage,
    ImageArtifact,
    PartialArtifact,
)

logger = structlog.get_logger()

Fragment = Union[str, dict[str, Any]]
FetchFn = Callable[[str], Awaitable[FetchedImage]]
Extractor = Callable[[Fragment], Awaitable[Optional[ImageArtifact]]]

MARKDOWN_IMAGE_RE = re.compile(r"!?\[[^\]]*\]\(\s*(https?://[^)\s]+)(?:\s+\"[^\"]*\")?\s*\)")
BARE_URL_RE = re.compile(r"^https?://\S+$")
DATA_URL_RE = re.compile(r"data:(image/[A-Za-z0-9.+-]+);base64,([A-Za-z0-9+/=\s]+)", re.IGNORECASE)
BASE64_PROBE_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
BASE64_CHARS_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
LINE_BREAKS_RE = re.compile(r"[\r\n]+")

URL_KEYS = ("url", "imageUrl", "image_url")
BASE64_KEYS = ("b64_json", "imageBase64", "image_base64")
INLINE_KEYS = ("inline_data", "inlineData")


@dataclass(frozen=True)
class Matcher:
    """One recognizer: ``predicate`` decides, ``extractor`` builds the artifact."""

    name: str
    predicate: Callable[[Fragment], bool]
    extractor: Extractor


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Guess an image mime type from magic bytes."""
    if len(data) < 12:
        return None
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"BM"):
        return "image/bmp"
    return None


def _text(fragment: Fragment) -> Optional[str]:
    if isinstance(fragment, str):
        return fragment.strip()
    return None


def _first(fragment: Fragment, keys: tuple[str, ...]) -> Optional[Any]:
    if not isinstance(fragment, dict):
        return None
    for key in keys:
        value = fragment.get(key)
        if value:
            return value
    return None


def _url_of(fragment: Fragment) -> Optional[str]:
    value = _first(fragment, URL_KEYS)
    if isinstance(value, dict):  # chat content part: {"image_url": {"url": ...}}
        value = value.get("url")
    return value if isinstance(value, str) else None


def _list_at(mapping: dict[str, Any], key: str) -> list[Any]:
    value = mapping.get(key)
    return value if isinstance(value, list) else []


def collect_fragments(payload: Any) -> list[Fragment]:
    """Flatten every known response shape into a list of candidate fragments."""
    if payload is None:
        return []
    if isinstance(payload, str):
        return [payload]
    if isinstance(payload, list):
        fragments: list[Fragment] = []
        for item in payload:
            fragments.extend(collect_fragments(item))
        return fragments
    if not isinstance(payload, dict):
        return []

    fragments = []
    for candidate in _list_at(payload, "candidates"):
        content = candidate.get("content") if isinstance(candidate, dict) else None
        if not isinstance(content, dict):
            continue
        for part in _list_at(content, "parts"):
            if not isinstance(part, dict):
                continue
            if _first(part, INLINE_KEYS):
                fragments.append(part)
            elif isinstance(part.get("text"), str):
                fragments.append(part["text"])

    for choice in _list_at(payload, "choices"):
        if not isinstance(choice, dict):
            continue
        for key in ("message", "delta"):
            message = choice.get(key)
            if not isinstance(message, dict):
                continue
            content = message.get("content")
            if isinstance(content, str):
                fragments.append(content)
            elif isinstance(content, list):
                for part in content:
                    if isinstance(part, str):
                        fragments.append(part)
                    elif isinstance(part, dict) and part.get("type") == "image_url":
                        fragments.append(part)
                    elif isinstance(part, dict) and isinstance(part.get("text"), str):
                        fragments.append(part["text"])

    for key in ("data", "images"):
        items = payload.get(key)
        if isinstance(items, list):
            for item in items:
                if isinstance(item, str):
                    fragments.append(item)
                elif isinstance(item, dict):
                    fragments.append(item)

    # a job result or stream payload that is itself an image reference
    if not fragments and (
        _first(payload, URL_KEYS) or _first(payload, BASE64_KEYS) or _first(payload, INLINE_KEYS)
    ):
        fragments.append(payload)

    # generic "result" / "content" wrappers
    if not fragments:
        for key in ("result", "content", "output"):
            if key in payload:
                fragments.extend(collect_fragments(payload[key]))

    return fragments


class ResponseNormalizer:
    """Turn upstream payloads into :class:`ImageArtifact` lists."""

    def __init__(
        self,
        fetch: Optional[FetchFn] = None,
        *,
        fetch_retries: int = 1,
        resolve_urls: bool = True,
        min_base64_length: int = 100,
        base64_probe_length: int = 64,
        default_mime_type: str = DEFAULT_MIME_TYPE,
    ) -> None:
        self.fetch = fetch
        self.fetch_retries = fetch_retries
        self.resolve_urls = resolve_urls
        self.min_base64_length = min_base64_length
        self.base64_probe_length = base64_probe_length
        self.default_mime_type = default_mime_type
        self.matchers: list[Matcher] = [
            Matcher("inline", self._is_inline, self._extract_inline),
            Matcher("markdown", self._is_markdown, self._extract_markdown),
            Matcher("bare_url", self._is_bare_url, self._extract_bare_url),
            Matcher("data_url", self._is_data_url, self._extract_data_url),
            Matcher("raw_base64", self._is_raw_base64, self._extract_raw_base64),
        ]

    # Public API

    async def extract(self, payload: Any) -> list[ImageArtifact]:
        """Extract every image in ``payload``.

        Raises:
            NoImageFound: no fragment produced an artifact.
        """
        fragments = collect_fragments(payload)
        artifacts: list[ImageArtifact] = []
        for index, fragment in enumerate(fragments):
            artifact = await self.extract_fragment(fragment, index=index)
            if artifact is not None:
                artifacts.append(artifact)
        if not artifacts:
            logger.warning(
                "No image found in response",
                fragments=len(fragments),
                preview=redact(str(payload), limit=200),
            )
            raise NoImageFound(payload, fragments=len(fragments))
        return artifacts

    async def extract_fragment(self, fragment: Fragment, *, index: int = 0) -> Optional[ImageArtifact]:
        """Run ``fragment`` through the matchers; ``None`` when none match."""
        for matcher in self.matchers:
            try:
                if not matcher.predicate(fragment):
                    continue
                artifact = await matcher.extractor(fragment)
            except SDKError as e:
                logger.warning(
                    "Fragment extraction failed",
                    fragment=index,
                    matcher=matcher.name,
                    error=str(e),
                )
                continue
            if artifact is not None:
                logger.debug("Fragment matched", fragment=index, matcher=matcher.name)
                return artifact
        return None

    async def resolve(self, partial: PartialArtifact) -> ImageArtifact:
        """Resolve a stream :class:`PartialArtifact` into a usable image."""
        candidates: list[Fragment] = []
        if partial.b64:
            candidates.append({"inline_data": {"mime_type": partial.mime_type, "data": partial.b64}})
        if partial.url:
            candidates.append(partial.url)
        for index, fragment in enumerate(candidates):
            artifact = await self.extract_fragment(fragment, index=index)
            if artifact is not None:
                return artifact
        raise NoImageFound(
            {"url": partial.url, "b64": partial.b64, "mime_type": partial.mime_type},
            fragments=len(candidates),
        )

    # Matchers

    def _is_inline(self, fragment: Fragment) -> bool:
        return isinstance(fragment, dict) and bool(
            _first(fragment, INLINE_KEYS) or _first(fragment, BASE64_KEYS)
        )

    async def _extract_inline(self, fragment: Fragment) -> Optional[ImageArtifact]:
        assert isinstance(fragment, dict)
        inline = _first(fragment, INLINE_KEYS)
        if isinstance(inline, dict):
            data = inline.get("data")
            mime_type = inline.get("mime_type") or inline.get("mimeType")
        else:
            data = _first(fragment, BASE64_KEYS)
            mime_type = fragment.get("mime_type") or fragment.get("mimeType")
        if not isinstance(data, str) or not data.strip():
            logger.debug("Skipping empty inline image data")
            return None
        data = data.strip()
        if data.startswith("data:"):
            return await self._extract_data_url(data)
        return ImageArtifact(
            encoding="base64",
            payload=data,
            mime_type=mime_type or self.default_mime_type,
        )

    def _is_markdown(self, fragment: Fragment) -> bool:
        text = _text(fragment)
        return text is not None and MARKDOWN_IMAGE_RE.search(text) is not None

    async def _extract_markdown(self, fragment: Fragment) -> Optional[ImageArtifact]:
        match = MARKDOWN_IMAGE_RE.search(_text(fragment) or "")
        return await self._from_url(match.group(1)) if match else None

    def _is_bare_url(self, fragment: Fragment) -> bool:
        text = _text(fragment)
        if text is not None:
            return BARE_URL_RE.match(text) is not None
        url = _url_of(fragment)
        return url is not None and BARE_URL_RE.match(url.strip()) is not None

    async def _extract_bare_url(self, fragment: Fragment) -> Optional[ImageArtifact]:
        url = _text(fragment) if isinstance(fragment, str) else _url_of(fragment)
        return await self._from_url(url.strip()) if url else None

    def _is_data_url(self, fragment: Fragment) -> bool:
        text = _text(fragment) if isinstance(fragment, str) else _url_of(fragment)
        return text is not None and DATA_URL_RE.search(text) is not None

    async def _extract_data_url(self, fragment: Fragment) -> Optional[ImageArtifact]:
        text = _text(fragment) if isinstance(fragment, str) else _url_of(fragment)
        match = DATA_URL_RE.search(text or "")
        if not match:
            return None
        data = re.sub(r"\s+", "", match.group(2))
        if not data:
            return None
        return ImageArtifact(encoding="base64", payload=data, mime_type=match.group(1).lower())

    def _is_raw_base64(self, fragment: Fragment) -> bool:
        text = _text(fragment)
        if text is None or "http" in text:
            return False
        data = LINE_BREAKS_RE.sub("", text)
        if len(data) < self.min_base64_length:
            return False
        return BASE64_PROBE_RE.match(data[: self.base64_probe_length]) is not None

    async def _extract_raw_base64(self, fragment: Fragment) -> Optional[ImageArtifact]:
        # Only line wrapping is tolerated; spaces mean prose.
        data = LINE_BREAKS_RE.sub("", _text(fragment) or "")
        if not BASE64_CHARS_RE.match(data):
            return None
        return ImageArtifact(encoding="base64", payload=data, mime_type=self.default_mime_type)

    # Fetching

    async def _from_url(self, url: str) -> Optional[ImageArtifact]:
        if not self.resolve_urls or self.fetch is None:
            return ImageArtifact(encoding="url", payload=url, mime_type=_mime_from_url(url))
        fetched = await self._fetch_with_retry(url)
        if fetched is None or not fetched.content:
            return None
        mime_type = _clean_content_type(fetched.content_type)
        if not mime_type or not mime_type.startswith("image/"):
            mime_type = sniff_mime_type(fetched.content) or self.default_mime_type
        return ImageArtifact(
            encoding="base64",
            payload=base64.b64encode(fetched.content).decode("ascii"),
            mime_type=mime_type,
        )

    async def _fetch_with_retry(self, url: str) -> Optional[FetchedImage]:
        assert self.fetch is not None
        attempts = self.fetch_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.fetch(url)
            except Exception as e:
                retry = is_transient(e) and attempt < attempts
                logger.warning(
                    "Image fetch failed",
                    url=redact(url, limit=120),
                    attempt=attempt,
                    retrying=retry,
                    error=str(e),
                )
                if not retry:
                    return None
        return None


def _clean_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    return content_type.split(";")[0].strip().lower() or None


_EXTENSION_MIME = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}


def _mime_from_url(url: str) -> str:
    path = url.split("?", 1)[0].split("#", 1)[0]
    extension = path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    return _EXTENSION_MIME.get(extension, DEFAULT_MIME_TYPE)
