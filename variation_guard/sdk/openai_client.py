"""
OpenAI-backed generation and description adapters.

Wraps the OpenAI image edit endpoint as the external generation capability
and chat completions as the best-effort description capability. Provider
errors are translated into the generation error taxonomy; nothing here
retries, because every image call produces a different image.
"""

import base64
import logging
import os
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from ..core.dispatcher import GenerationCall, ImageGenerator
from ..core.errors import (
    GenerationError,
    GenerationTimeout,
    UpstreamRejected,
    UpstreamUnavailable,
)
from ..core.variants import VariantKind

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gpt-image-1"
DEFAULT_DESCRIPTION_MODEL = "gpt-4o-mini"
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"

# Output sizes supported by the image edit endpoint, keyed by format family.
FORMAT_SIZES = {
    "square": "1024x1024",
    "portrait": "1024x1536",
    "landscape": "1536x1024",
}


def size_for_format(format_id: Optional[str]) -> str:
    """Map a format identifier onto an output size; unknown formats use 'auto'."""
    if not format_id:
        return "auto"
    lowered = format_id.lower()
    for family, size in FORMAT_SIZES.items():
        if family in lowered:
            return size
    return "auto"


def build_instruction(call: GenerationCall) -> str:
    """Short edit instruction from a call's attribution.

    Detailed prompt authoring lives outside this package; this keeps the
    subject, pose and style while naming the requested changes.
    """
    attribution = call.attribution()
    changes = []
    for kind in call.kinds:
        if kind == VariantKind.BREED_COAT:
            changes.append(
                f"change the animal to breed '{attribution['breed_id']}' "
                f"with coat '{attribution['coat_id']}'"
            )
        elif kind == VariantKind.OUTFIT:
            changes.append(f"dress the animal in outfit '{attribution['outfit_id']}'")
        elif kind == VariantKind.FORMAT:
            changes.append(f"recompose the portrait for the '{attribution['format_id']}' format")
        elif kind == VariantKind.MULTI_SUBJECT:
            subjects = attribution["multi_subject_config"]
            changes.append(f"compose a portrait with these subjects: {subjects}")
    return (
        "Edit this pet portrait: " + "; ".join(changes)
        + ". Keep the original theme, style, lighting and composition otherwise unchanged."
    )


class OpenAIImageGenerator(ImageGenerator):
    """Generation capability over ``client.images.edit``."""

    def __init__(
        self,
        model: str = DEFAULT_IMAGE_MODEL,
        api_key_env: str = DEFAULT_API_KEY_ENV,
        timeout: Optional[float] = 120.0,
        client: Optional[Any] = None
    ):
        """Initialize the generator.

        Args:
            model: Image model name
            api_key_env: Environment variable holding the API key
            timeout: Per-call timeout in seconds
            client: Pre-built OpenAI client (skips environment lookup)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.api_key_env = api_key_env
        self.timeout = timeout
        self.client = client

    def ensure_available(self) -> None:
        if self.client is not None:
            return
        api_key = os.environ.get(self.api_key_env)
        if not api_key:
            raise UpstreamUnavailable(f"Image generation service unavailable: {self.api_key_env} is not set")
        # max_retries=0: a retried edit is a different, separately billed image.
        self.client = OpenAI(api_key=api_key, timeout=self.timeout, max_retries=0)

    def generate(self, source_image: bytes, call: GenerationCall) -> bytes:
        """Run one image edit and return the decoded image bytes.

        Raises:
            GenerationTimeout: Provider call timed out
            UpstreamUnavailable: Provider unreachable, overloaded or unauthorized
            UpstreamRejected: Provider refused the request
        """
        self.ensure_available()
        attribution = call.attribution()
        try:
            response = self.client.images.edit(
                model=self.model,
                image=("source.png", source_image, "image/png"),
                prompt=build_instruction(call),
                size=size_for_format(attribution.get("format_id")),
                n=1
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        if not response.data or not response.data[0].b64_json:
            raise UpstreamRejected("Image generation returned no image data")
        return base64.b64decode(response.data[0].b64_json)


class OpenAIDescriber:
    """Best-effort textual description of a generated variant."""

    def __init__(
        self,
        model: str = DEFAULT_DESCRIPTION_MODEL,
        api_key_env: str = DEFAULT_API_KEY_ENV,
        client: Optional[Any] = None
    ):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.api_key_env = api_key_env
        self.client = client

    def describe(self, image: bytes, metadata: Dict[str, Any]) -> Optional[str]:
        """Describe an image for the catalog, or return None if unavailable."""
        if self.client is None:
            api_key = os.environ.get(self.api_key_env)
            if not api_key:
                logger.info("Skipping description: %s is not set", self.api_key_env)
                return None
            self.client = OpenAI(api_key=api_key)

        encoded = base64.b64encode(image).decode("ascii")
        subject = metadata.get("breed_id") or "pet"
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": (
                            f"Write a warm two-sentence product description of this {subject} "
                            "portrait for a print shop listing."
                        )
                    },
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}},
                ],
            }],
            max_tokens=200
        )
        content = response.choices[0].message.content
        return content.strip() if content else None


def translate_openai_error(error: Exception) -> GenerationError:
    """Map an OpenAI client error onto the generation error taxonomy."""
    if isinstance(error, openai.APITimeoutError):
        return GenerationTimeout("Image generation timed out", cause=error)
    if isinstance(error, openai.APIConnectionError):
        return UpstreamUnavailable("Image generation service unreachable", cause=error)
    if isinstance(error, (openai.RateLimitError, openai.AuthenticationError,
                          openai.PermissionDeniedError, openai.InternalServerError)):
        return UpstreamUnavailable(f"Image generation service unavailable: {_message(error)}", cause=error)
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return UpstreamUnavailable(f"Image generation service error: {_message(error)}", cause=error)
        return UpstreamRejected(f"Image generation rejected: {_message(error)}", cause=error)
    return UpstreamRejected(f"Image generation failed: {error}", cause=error)


def _message(error: Exception) -> str:
    return getattr(error, "message", None) or str(error)
