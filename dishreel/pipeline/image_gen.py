"""
Still-image generation (OpenAI Images API) and per-step recipe photos.

Generated images are downloaded and re-uploaded under generated/{timestamp}-{suffix}.png
so the returned URL is permanent.
"""

import base64
import binascii
import logging
from typing import Optional

import httpx

from .. import metrics
from ..backoff import request_with_backoff
from ..errors import ConfigurationError, PipelineError, TerminalServiceError
from .models import Step
from .prompts import build_step_image_prompt
from .storage import ArtifactStore, download_bytes, generated_image_key

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"


class ImageGenerator:
    def __init__(
        self,
        api_key: str,
        store: ArtifactStore,
        model: str = "dall-e-3",
        api_base: str = OPENAI_API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_options: Optional[dict] = None,
    ):
        self.api_key = api_key
        self.store = store
        self.model = model
        self.api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=120)
        self._backoff_options = backoff_options or {}

    async def generate(self, prompt: str) -> str:
        """Generate one image for `prompt` and return its permanent URL."""
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY not set")

        resp = await request_with_backoff(
            self._client, "POST", f"{self.api_base}/images/generations",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"model": self.model, "prompt": prompt, "n": 1, "size": "1024x1024"},
            label="Image generation",
            **self._backoff_options,
        )

        try:
            images = resp.json().get("data") or []
        except (ValueError, AttributeError) as e:
            raise TerminalServiceError(
                f"Image API returned an unreadable body: {resp.text[:200]!r}", resp.status_code
            ) from e
        if not isinstance(images, list) or not images or not isinstance(images[0], dict):
            raise TerminalServiceError("Image API returned no images")

        first = images[0]
        if first.get("b64_json"):
            try:
                data = base64.b64decode(first["b64_json"], validate=True)
            except (binascii.Error, ValueError, TypeError) as e:
                raise TerminalServiceError(f"Image API returned invalid base64: {e}") from e
        elif first.get("url"):
            data = await download_bytes(first["url"], self._client)
        else:
            raise TerminalServiceError("Image API returned neither url nor b64_json")

        url = await self.store.put(generated_image_key(), data, "image/png")
        metrics.inc_counter("images.generated")
        return url

    async def generate_step_photos(self, dish_name: str, steps: list[Step]) -> dict[int, str]:
        """
        One photo per step, in order. A failed step is logged and skipped.

        Returns:
            Map of step number → permanent image URL.
        """
        photos: dict[int, str] = {}
        total = len(steps)
        for step in steps:
            prompt = build_step_image_prompt(dish_name, step.step_number, total, step.instruction)
            try:
                photos[step.step_number] = await self.generate(prompt)
                logger.info(f"Step photo {step.step_number}/{total} for '{dish_name}' ready")
            except PipelineError as e:
                logger.error(f"Step photo {step.step_number}/{total} for '{dish_name}' failed: {e}")
                metrics.record_error("step_photo", type(e).__name__, str(e))
        return photos

    async def aclose(self):
        await self._client.aclose()
