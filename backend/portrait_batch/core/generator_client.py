"""HTTP client for the remote image-variation generator (Gemini image editing)."""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from portrait_batch.core.config import settings
from portrait_batch.models.variation import (
    BreedCoatTarget,
    OutfitTarget,
    VariationTarget,
    describe_target,
)

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Raised when the generator fails to produce an image."""


class GenerationTimeoutError(GenerationError):
    """Raised when the generator does not answer within the configured timeout."""


@dataclass
class SourceImage:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class VariationRequest:
    source_image: SourceImage
    source_prompt: str
    target: VariationTarget
    source_attributes: Dict[str, Optional[str]] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    target_age: Optional[str] = None


@dataclass
class GeneratedVariation:
    image_data: bytes
    mime_type: str
    prompt: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_variation_prompt(request: VariationRequest) -> str:
    """Image-editing instruction for one target, phrased against the source image."""
    labels = request.labels
    attrs = request.source_attributes
    breed = labels.get(attrs.get("breed_id") or "", "pet")
    coat = labels.get(attrs.get("coat_id") or "", "its current")
    target = request.target

    if isinstance(target, BreedCoatTarget):
        new_breed = labels.get(target.breed_id, target.breed_id)
        new_coat = labels.get(target.coat_id, target.coat_id)
        prompt = (
            f"Using the provided image of a {breed} with {coat} fur, change the breed to a "
            f"{new_breed.lower()} with {new_coat.lower()} fur. Keep the same clothing, pose, lighting, "
            "and overall composition. Only change the breed characteristics like head shape, ear type, "
            "body size and facial features, and the fur color and pattern."
        )
    elif isinstance(target, OutfitTarget):
        outfit = labels.get(target.outfit_id, target.outfit_id)
        outfit_text = "no outfit" if outfit.lower() == "no outfit" else outfit.lower()
        prompt = (
            f"Using the provided image of a {breed} with {coat} fur, change the clothing/outfit to "
            f"{outfit_text}. Keep the same breed, fur color, pose, lighting, and overall composition. "
            "Only change what the pet is wearing."
        )
    else:
        fmt = labels.get(target.format_id, target.format_id)
        prompt = (
            f"Using the provided image of a {breed} with {coat} fur, reframe and adjust the composition "
            f"for the {fmt} format. Keep the same breed, fur color, clothing, pose, and lighting. "
            "Only change the aspect ratio and composition."
        )

    if request.target_age:
        prompt += f" The pet should look like a {request.target_age}."
    if request.source_prompt:
        prompt += f" Original description: {request.source_prompt}"
    return prompt


def fetch_source_image(url: str, *, timeout: Optional[float] = None, transport=None) -> SourceImage:
    """Download the job's source image once so every item can reuse it."""
    with httpx.Client(
        follow_redirects=True,
        timeout=timeout or settings.SOURCE_FETCH_TIMEOUT_S,
        transport=transport,
    ) as client:
        response = client.get(url)
        response.raise_for_status()
        mime_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        return SourceImage(data=response.content, mime_type=mime_type or "image/png")


class GeminiVariationClient:
    """Sends one image-editing request per call to the Gemini generateContent API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.base_url = (base_url or settings.GEMINI_API_URL).rstrip("/")
        self.model = model or settings.GEMINI_MODEL
        self.timeout = timeout or settings.GENERATION_TIMEOUT_S
        self._transport = transport

    def _get_url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def generate(self, request: VariationRequest) -> GeneratedVariation:
        if not self.api_key:
            raise GenerationError("Gemini API key is not configured")

        prompt = build_variation_prompt(request)
        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": request.source_image.mime_type,
                                "data": base64.b64encode(request.source_image.data).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self._get_url(),
                    json=payload,
                    headers={"x-goog-api-key": self.api_key},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(f"Generator timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            raise GenerationError(
                f"Generator returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise GenerationError(f"Generator request failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationError("Generator returned a non-JSON response") from exc

        if not isinstance(data, dict):
            raise GenerationError(f"Generator returned an unexpected {type(data).__name__} body")

        try:
            image_part = self._extract_image_part(data)
        except (AttributeError, TypeError) as exc:
            raise GenerationError("Generator returned a malformed response") from exc
        if image_part is None:
            raise GenerationError("Failed to generate variation: no image in response")

        try:
            image_data = base64.b64decode(image_part["data"], validate=True)
        except (binascii.Error, ValueError, TypeError, AttributeError) as exc:
            raise GenerationError("Generator returned undecodable image data") from exc

        mime_type = image_part.get("mimeType") or image_part.get("mime_type") or "image/png"
        if not isinstance(mime_type, str):
            mime_type = "image/png"
        return GeneratedVariation(
            image_data=image_data,
            mime_type=mime_type,
            prompt=prompt,
            metadata={
                "variation_type": request.target.kind,
                "target": request.target.model_dump(),
                "display_name": describe_target(request.target, request.labels),
                "model": self.model,
            },
        )

    @staticmethod
    def _extract_image_part(data: dict) -> Optional[dict]:
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    return inline
        return None
