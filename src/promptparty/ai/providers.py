"""Image generation providers.

Every provider exposes the same capability: turn a player's prompt plus the
round's question text into an image reference. The dispatcher only sees the
``ImageProvider`` protocol, so fallback works over providers rather than
over model-name strings.

Two error classes matter to the dispatcher:

- ``ProviderUnavailableError``: the provider cannot serve anything (no API
  key, rejected credentials). Systemic; triggers fallback.
- ``GenerationError``: this one prompt failed. Recorded per prompt.
"""

from __future__ import annotations

import base64
import hashlib
import html
import logging
import random
import re
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from promptparty.models.round import PROMPT_MAX_LENGTH, ImageArtifact

if TYPE_CHECKING:
    from promptparty.config import Settings

logger = logging.getLogger(__name__)

OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"
OPENAI_MODEL = "dall-e-3"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_MODEL = "gemini-2.5-flash-image-preview"

STYLES = [
    "vibrant digital art",
    "expressive oil painting",
    "whimsical watercolor",
    "playful cartoon illustration",
    "stunning photorealistic render",
    "imaginative concept art",
    "dreamlike surreal art",
    "clean minimalist design",
    "nostalgic retro 80s style",
    "dynamic anime artwork",
]

QUALITY_MODIFIERS = [
    "High quality, detailed,",
    "Professional artwork,",
    "Masterpiece quality,",
    "Stunning visual,",
    "Creative interpretation,",
]


class ProviderUnavailableError(RuntimeError):
    """The provider cannot serve any request right now."""


class GenerationError(RuntimeError):
    """A single generation request failed."""


class ImageProvider(Protocol):
    """Capability shared by every image backend."""

    name: str
    model: str
    max_concurrent: int
    inter_batch_delay_ms: int

    def preflight(self) -> None:
        """Raise ``ProviderUnavailableError`` if no request could succeed."""
        ...

    async def generate(self, prompt: str, context_text: str) -> ImageArtifact: ...


# --- Prompt preparation ---


def sanitize_prompt(raw: str, max_length: int = PROMPT_MAX_LENGTH) -> str:
    """Strip control characters and markup from player text before it leaves the server."""
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\u200b-\u200f\u2028-\u202f\ufeff]", "", raw)
    text = re.sub(r"<[^>]*>", "", text)
    text = text.replace("<", "").replace(">", "")
    text = re.sub(r"\s+", " ", text).strip()
    return text[:max_length]


def enhance_prompt(question_text: str, prompt: str, rng: random.Random | None = None) -> str:
    """Combine question and answer with a random quality modifier and art style."""
    rng = rng or random.Random()
    return f"{question_text} {prompt}. {rng.choice(QUALITY_MODIFIERS)} Style: {rng.choice(STYLES)}"


@asynccontextmanager
async def track_latency() -> AsyncGenerator[dict[str, float], None]:
    """Yield a dict; after exit, ``latency_ms`` holds the elapsed time."""
    timing: dict[str, float] = {"latency_ms": 0.0}
    start = time.monotonic()
    try:
        yield timing
    finally:
        timing["latency_ms"] = (time.monotonic() - start) * 1000


async def _post_json(
    provider: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
    client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    """POST and decode JSON, translating HTTP failures into provider errors."""
    try:
        if client is not None:
            response = await client.post(url, json=payload, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as owned:
                response = await owned.post(url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        msg = f"{provider} request failed: {exc}"
        raise GenerationError(msg) from exc

    if response.status_code in (401, 403):
        msg = f"{provider} rejected credentials (HTTP {response.status_code})"
        raise ProviderUnavailableError(msg)
    if response.is_error:
        msg = f"{provider} returned HTTP {response.status_code}: {response.text[:200]}"
        raise GenerationError(msg)
    return response.json()


# --- OpenAI ---


class OpenAIImageProvider:
    """DALL-E 3 text-to-image over the OpenAI REST API."""

    name = "openai"
    model = OPENAI_MODEL
    max_concurrent = 3
    inter_batch_delay_ms = 1_000

    def __init__(
        self,
        api_key: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def preflight(self) -> None:
        if not self._api_key:
            msg = "OPENAI_API_KEY is not set"
            raise ProviderUnavailableError(msg)

    async def generate(self, prompt: str, context_text: str) -> ImageArtifact:
        self.preflight()
        payload = {
            "model": self.model,
            "prompt": enhance_prompt(context_text, prompt),
            "n": 1,
            "size": "1024x1024",
            "quality": "standard",
            "style": "vivid",
        }
        async with track_latency() as timing:
            body = await _post_json(
                self.name,
                OPENAI_IMAGES_URL,
                payload,
                {"Authorization": f"Bearer {self._api_key}"},
                self._timeout,
                self._client,
            )

        data = body.get("data") or []
        if not data or not data[0].get("url"):
            msg = "No image data returned from DALL-E 3"
            raise GenerationError(msg)

        revised = data[0].get("revised_prompt")
        if revised:
            logger.info("openai_revised_prompt prompt=%s revised=%s", prompt[:80], revised[:120])
        return ImageArtifact(
            url=data[0]["url"],
            metadata={
                "provider": self.name,
                "model": self.model,
                "latency_ms": round(timing["latency_ms"]),
                "revised_prompt": revised,
            },
        )


# --- Google Gemini ---


class GeminiImageProvider:
    """Gemini image-preview model; the image comes back inline as base64."""

    name = "google"
    model = GEMINI_MODEL
    max_concurrent = 2
    inter_batch_delay_ms = 2_000

    def __init__(
        self,
        api_key: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def preflight(self) -> None:
        if not self._api_key:
            msg = "GEMINI_API_KEY is not set"
            raise ProviderUnavailableError(msg)

    async def generate(self, prompt: str, context_text: str) -> ImageArtifact:
        self.preflight()
        instruction = (
            f'Create a high-quality artwork based on: "{context_text} {prompt}". '
            "Make it visually stunning, creative, and professionally rendered. "
            "Style: digital art, detailed, vibrant colors."
        )
        payload = {
            "contents": [{"parts": [{"text": instruction}]}],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        async with track_latency() as timing:
            body = await _post_json(
                self.name,
                f"{GEMINI_BASE_URL}/{self.model}:generateContent",
                payload,
                {"x-goog-api-key": self._api_key},
                self._timeout,
                self._client,
            )

        for candidate in body.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData")
                if inline and inline.get("data"):
                    mime = inline.get("mimeType", "image/png")
                    usage = body.get("usageMetadata") or {}
                    return ImageArtifact(
                        url=f"data:{mime};base64,{inline['data']}",
                        metadata={
                            "provider": self.name,
                            "model": self.model,
                            "latency_ms": round(timing["latency_ms"]),
                            "prompt_tokens": usage.get("promptTokenCount"),
                            "output_tokens": usage.get("candidatesTokenCount"),
                        },
                    )

        msg = "No image data returned from Gemini"
        raise GenerationError(msg)


# --- Placeholder ---


class PlaceholderImageProvider:
    """Offline provider: a gradient SVG whose colours derive from the prompt.

    Used in development when no API key is configured, and by demos.
    """

    name = "mock"
    model = "gradient-svg"
    max_concurrent = 4
    inter_batch_delay_ms = 0

    def preflight(self) -> None:
        return None

    async def generate(self, prompt: str, context_text: str) -> ImageArtifact:
        digest = int(hashlib.sha256(prompt.encode()).hexdigest()[:8], 16)
        hue_a = digest % 360
        hue_b = (digest * 7) % 360
        label = prompt if len(prompt) <= 50 else prompt[:47] + "..."
        svg = (
            '<svg width="512" height="512" xmlns="http://www.w3.org/2000/svg">'
            '<defs><linearGradient id="bg" x1="0%" y1="0%" x2="100%" y2="100%">'
            f'<stop offset="0%" stop-color="hsl({hue_a},70%,60%)"/>'
            f'<stop offset="100%" stop-color="hsl({hue_b},70%,40%)"/>'
            "</linearGradient></defs>"
            '<rect width="100%" height="100%" fill="url(#bg)"/>'
            '<text x="50%" y="50%" fill="white" font-family="Arial" font-size="18" '
            f'text-anchor="middle">{html.escape(label)}</text></svg>'
        )
        encoded = base64.b64encode(svg.encode()).decode()
        return ImageArtifact(
            url=f"data:image/svg+xml;base64,{encoded}",
            metadata={"provider": self.name, "model": self.model, "latency_ms": 0},
        )


# --- Selection ---


def build_provider(name: str, settings: Settings) -> ImageProvider:
    if name == "openai":
        return OpenAIImageProvider(settings.openai_api_key, settings.provider_timeout_seconds)
    if name == "google":
        return GeminiImageProvider(settings.gemini_api_key, settings.provider_timeout_seconds)
    if name == "mock":
        return PlaceholderImageProvider()
    msg = f"Unsupported provider: {name}"
    raise ValueError(msg)


def select_providers(settings: Settings) -> tuple[ImageProvider, ImageProvider | None]:
    """Return ``(primary, fallback)`` for the configured provider policy.

    Outside production, a primary with no API key is swapped for the
    placeholder provider so local games still produce images.
    """
    primary = build_provider(settings.generation_provider, settings)
    fallback_name = settings.fallback_provider()
    fallback = build_provider(fallback_name, settings) if fallback_name else None

    try:
        primary.preflight()
    except ProviderUnavailableError as exc:
        if settings.promptparty_env != "production":
            logger.warning(
                "provider_unavailable_using_placeholder provider=%s error=%s",
                primary.name,
                exc,
            )
            return PlaceholderImageProvider(), None
    return primary, fallback
