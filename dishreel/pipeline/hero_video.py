"""
Hero video: a single 10-second vertical clip of the finished dish.

Runs on the same video client, TaskPoller and ArtifactStore as the step
videos. A clip smaller than MIN_HERO_BYTES is treated as broken and
regenerated once with the overhead alternate prompt.

Billing follows the step videos: one video credit, reserved before the first
submission and committed once the clip is stored. A stored hero video is
returned as-is on revisit. Asking for another version of an already paid
hero video is free, uses the alternate prompt and skips the size retry.
"""

import logging
import time
import uuid
from typing import Optional

import httpx

from .. import metrics
from ..errors import InsufficientCreditsError, PipelineError
from ..video_client import KieVideoClient
from .credits import CreditLedger
from .models import HeroVideoResult, Ingredient, PollOutcome, Step
from .prompts import build_alternate_hero_prompt, build_hero_video_prompt
from .recipe_store import RecipeStore
from .storage import ArtifactStore, download_bytes, hero_video_key
from .task_poller import TaskPoller

logger = logging.getLogger(__name__)

HERO_DURATION = 10  # seconds
MIN_HERO_BYTES = 500_000


class HeroVideoGenerator:
    def __init__(
        self,
        video_client: KieVideoClient,
        store: ArtifactStore,
        ledger: CreditLedger,
        recipe_store: RecipeStore,
        poller: Optional[TaskPoller] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        min_bytes: int = MIN_HERO_BYTES,
    ):
        self.video = video_client
        self.store = store
        self.ledger = ledger
        self.recipe_store = recipe_store
        self.poller = poller or TaskPoller()
        self.min_bytes = min_bytes
        self._http = http_client or httpx.AsyncClient(timeout=120)

    async def generate(
        self,
        recipe_id: str,
        user_id: str,
        hero_image_url: str,
        title: str,
        ingredients: list[Ingredient],
        steps: list[Step],
        cuisine: Optional[str] = None,
        hero_moment: Optional[str] = None,
        regenerate: bool = False,
    ) -> HeroVideoResult:
        """
        Produce (or return the stored) hero video for a recipe.

        Raises:
            InsufficientCreditsError: the ledger refused to start paid work.
        """
        started = time.monotonic()
        if not (hero_image_url or "").startswith("https://"):
            return HeroVideoResult(success=False, error="Hero image must be an HTTPS URL")

        existing = await self.recipe_store.get_hero_video_url(recipe_id)
        if existing and not regenerate:
            logger.info(f"[{recipe_id}] returning stored hero video")
            return HeroVideoResult(success=True, video_url=existing)

        if regenerate:
            prompts = [build_alternate_hero_prompt(title, ingredients, steps)]
        else:
            prompts = [
                build_hero_video_prompt(title, ingredients, steps, cuisine, hero_moment),
                build_alternate_hero_prompt(title, ingredients, steps),
            ]

        if regenerate and existing:
            result = await self._produce(recipe_id, hero_image_url, prompts, regenerated=True)
        else:
            result = await self._produce_paid(recipe_id, user_id, hero_image_url, prompts, regenerate)

        result.generation_time_ms = int((time.monotonic() - started) * 1000)
        metrics.record_latency("hero_video", result.generation_time_ms)
        metrics.inc_counter("hero.completed" if result.success else "hero.failed")
        return result

    async def _produce_paid(self, recipe_id, user_id, image_url, prompts, regenerated) -> HeroVideoResult:
        job_id = f"{recipe_id}-hero-{uuid.uuid4().hex[:8]}"
        check = await self.ledger.reserve_or_check(user_id, job_id)
        if not check.allowed:
            logger.info(f"Credit gate refused {user_id}: {check.message}")
            raise InsufficientCreditsError(check.message, check.remaining)

        committed = False
        try:
            result = await self._produce(recipe_id, image_url, prompts, regenerated)
            if result.success:
                try:
                    committed = await self.ledger.commit(user_id, job_id)
                except PipelineError as e:
                    logger.error(f"[{recipe_id}] hero video credit commit failed: {e}", exc_info=True)
                    metrics.record_error("credit_commit", type(e).__name__, str(e), recipe_id)
            return result
        finally:
            if not committed:
                try:
                    await self.ledger.release(user_id, job_id)
                except PipelineError as e:
                    logger.error(f"[{recipe_id}] releasing hero video reservation failed: {e}")

    async def _produce(self, recipe_id: str, image_url: str, prompts: list[str],
                       regenerated: bool) -> HeroVideoResult:
        label = f"[{recipe_id}] hero video"
        temp_url, prompt, attempts = None, prompts[0], 0

        for prompt in prompts:
            attempts += 1
            logger.info(f"{label}: attempt {attempts}, prompt ({len(prompt)} chars)")
            temp_url = await self._render(prompt, image_url, label)
            if temp_url is None:
                break
            if attempts == len(prompts) or await self._passes_quality_check(temp_url, label):
                break
            logger.info(f"{label}: clip failed the size check, regenerating with the alternate prompt")

        if temp_url is None:
            return HeroVideoResult(
                success=False, prompt=prompt, attempts=attempts,
                error="Video generation failed after all attempts",
            )

        try:
            data = await download_bytes(temp_url, self._http)
            url = await self.store.put(hero_video_key(recipe_id, regenerated), data, "video/mp4")
        except PipelineError as e:
            logger.error(f"{label}: storing failed: {e}")
            return HeroVideoResult(success=False, prompt=prompt, attempts=attempts, error=str(e))

        try:
            await self.recipe_store.save_hero_video_url(recipe_id, url)
        except PipelineError as e:
            logger.warning(f"{label}: could not cache hero video: {e}")

        logger.info(f"{label}: stored {url}")
        return HeroVideoResult(success=True, video_url=url, prompt=prompt, attempts=attempts)

    async def _render(self, prompt: str, image_url: str, label: str) -> Optional[str]:
        result = await self.poller.run(
            lambda: self.video.submit(prompt, image_url, HERO_DURATION),
            self.video.get_status,
            label=label,
        )
        if result.outcome == PollOutcome.SUCCEEDED:
            return result.output_url
        logger.error(f"{label} {result.outcome.value}: {result.error}")
        return None

    async def _passes_quality_check(self, url: str, label: str) -> bool:
        try:
            resp = await self._http.head(url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning(f"{label}: size check failed: {e}")
            return False
        if resp.status_code >= 400:
            return False
        size = int(resp.headers.get("content-length") or 0)
        if size < self.min_bytes:
            logger.warning(f"{label}: clip is {size} bytes, may be corrupted")
            return False
        return True
