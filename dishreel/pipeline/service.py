"""
RecipeVideoService: the pipeline's entry points, wired from Settings.

Usage:
    service = RecipeVideoService.from_settings(get_settings())

    analysis = await service.analyze_image(image_b64, dish_name_hint="Tiramisu")
    videos = await service.generate_step_videos(recipe_id, user_id, dish, image_url, steps)
    final = await service.publish_final_video(recipe_id, user_id, [v.video_url for v in videos])
"""

import asyncio
import logging
import os
from typing import AsyncIterator, Optional, Union

import httpx

from .. import metrics
from ..config import Settings
from ..errors import InsufficientCreditsError
from ..llm import GeminiClient
from ..video_client import KieVideoClient
from .analyzer import analyze_image
from .assembler import FfmpegConcatTool, VideoAssembler
from .credits import CreditLedger, build_credit_ledger
from .enricher import apply_enrichment, enrich_steps_for_video
from .hero_video import HeroVideoGenerator
from .image_gen import ImageGenerator
from .models import (
    AnalysisResult,
    ConcatResult,
    CreditAccount,
    EnrichmentResult,
    GenerationJob,
    HeroVideoResult,
    Ingredient,
    JobStatus,
    ProgressRecord,
    Step,
    StepVideo,
)
from .orchestrator import ProgressCallback, VideoSynthesisOrchestrator
from .progress import InMemoryJobStore, ProgressTracker, RedisJobStore
from .recipe_store import RecipeStore, build_recipe_store
from .storage import ArtifactStore, build_artifact_store, final_video_key
from .task_poller import TaskPoller

logger = logging.getLogger(__name__)


class RecipeVideoService:
    def __init__(
        self,
        *,
        vision_llm: GeminiClient,
        text_llm: GeminiClient,
        orchestrator: VideoSynthesisOrchestrator,
        assembler: VideoAssembler,
        tracker: ProgressTracker,
        ledger: CreditLedger,
        recipe_store: RecipeStore,
        store: ArtifactStore,
        image_generator: Optional[ImageGenerator] = None,
        hero_generator: Optional[HeroVideoGenerator] = None,
        closeables: tuple = (),
    ):
        self.vision_llm = vision_llm
        self.text_llm = text_llm
        self.orchestrator = orchestrator
        self.assembler = assembler
        self.tracker = tracker
        self.ledger = ledger
        self.recipe_store = recipe_store
        self.store = store
        self.image_generator = image_generator
        self.hero_generator = hero_generator
        self._closeables = closeables
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecipeVideoService":
        http = httpx.AsyncClient(timeout=120)
        store = build_artifact_store(settings)

        if settings.redis_url:
            job_store = RedisJobStore.from_url(settings.redis_url, settings.job_ttl_seconds)
        else:
            job_store = InMemoryJobStore(settings.job_ttl_seconds, settings.job_store_max_entries)
        tracker = ProgressTracker(job_store)
        ledger = build_credit_ledger(settings)
        recipe_store = build_recipe_store(settings)

        video = KieVideoClient(
            settings.kie_api_key, settings.kie_api_base,
            model=settings.video_model, aspect_ratio=settings.video_aspect_ratio,
            http_client=http,
        )
        poller = TaskPoller(settings.poll_interval, settings.poll_timeout)
        orchestrator = VideoSynthesisOrchestrator(
            video, store, tracker, ledger, recipe_store, poller=poller, http_client=http,
        )

        return cls(
            vision_llm=GeminiClient(settings.gemini_api_key, settings.vision_model, settings.gemini_api_base, http),
            text_llm=GeminiClient(settings.gemini_api_key, settings.text_model, settings.gemini_api_base, http),
            orchestrator=orchestrator,
            assembler=VideoAssembler(settings.video_cache_dir, FfmpegConcatTool(settings.ffmpeg_binary)),
            tracker=tracker,
            ledger=ledger,
            recipe_store=recipe_store,
            store=store,
            image_generator=ImageGenerator(
                settings.openai_api_key, store, settings.image_model, settings.openai_api_base, http,
            ),
            hero_generator=HeroVideoGenerator(video, store, ledger, recipe_store, poller, http),
            closeables=(http,),
        )

    async def aclose(self):
        for task in list(self._tasks.values()):
            task.cancel()
        for closeable in self._closeables:
            await closeable.aclose()

    # ── Analysis & enrichment ────────────────────────────────────────────

    async def analyze_image(
        self,
        image: Union[bytes, str],
        dish_name_hint: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AnalysisResult:
        return await analyze_image(self.vision_llm, image, dish_name_hint, notes)

    async def enrich_steps_for_video(self, title: str, steps: list[Step]) -> EnrichmentResult:
        return await enrich_steps_for_video(self.text_llm, title, steps)

    # ── Step videos ──────────────────────────────────────────────────────

    async def generate_step_videos(
        self,
        recipe_id: str,
        user_id: str,
        dish_name: str,
        base_image_url: str,
        steps: list[Step],
        on_progress: Optional[ProgressCallback] = None,
        enrich: bool = False,
    ) -> list[StepVideo]:
        if enrich and any(not s.visual_prompt for s in steps):
            enrichment = await self.enrich_steps_for_video(dish_name, steps)
            steps = apply_enrichment(steps, enrichment.enriched_steps)
        return await self.orchestrator.generate_step_videos(
            recipe_id, user_id, dish_name, base_image_url, steps, on_progress,
        )

    async def start_step_videos(
        self,
        recipe_id: str,
        user_id: str,
        dish_name: str,
        base_image_url: str,
        steps: list[Step],
        enrich: bool = False,
    ) -> ProgressRecord:
        """
        Run generate_step_videos in the background and return the current progress.

        The credit gate runs before the task starts, so a refusal surfaces to
        the caller as InsufficientCreditsError. The task is not tied to the
        caller: it keeps running (and bills on success) if they go away.
        """
        running = self._tasks.get(recipe_id)
        if running is not None and not running.done():
            logger.info(f"[{recipe_id}] generation already running")
            return await self.get_progress(recipe_id) or self._starting_record(recipe_id, steps)

        if await self.orchestrator.requires_payment(recipe_id, base_image_url, steps):
            await self.orchestrator.ensure_credit(user_id)

        task = asyncio.create_task(self._run_background(
            recipe_id, user_id, dish_name, base_image_url, steps, enrich,
        ))
        self._tasks[recipe_id] = task
        task.add_done_callback(lambda t, key=recipe_id: self._forget(key, t))
        return await self.get_progress(recipe_id) or self._starting_record(recipe_id, steps)

    def _forget(self, recipe_id: str, task: asyncio.Task):
        if self._tasks.get(recipe_id) is task:
            del self._tasks[recipe_id]

    @staticmethod
    def _starting_record(recipe_id: str, steps: list[Step]) -> ProgressRecord:
        job = GenerationJob.new(recipe_id, "", "", "", steps)
        job.status = JobStatus.GENERATING
        return ProgressRecord.from_job(job)

    async def _run_background(self, recipe_id, user_id, dish_name, base_image_url, steps, enrich):
        try:
            await self.generate_step_videos(
                recipe_id, user_id, dish_name, base_image_url, steps, enrich=enrich,
            )
        except Exception as e:
            logger.error(f"[{recipe_id}] background generation failed: {e}", exc_info=True)
            metrics.record_error("generate_step_videos", type(e).__name__, str(e), recipe_id)

    async def generate_single_step_video(
        self,
        user_id: str,
        recipe_id: str,
        dish_name: str,
        base_image_url: str,
        instruction: str,
        step_number: int,
    ) -> StepVideo:
        return await self.orchestrator.generate_single_step_video(
            user_id, recipe_id, dish_name, base_image_url, instruction, step_number,
        )

    async def retry_failed_steps(self, recipe_id: str) -> list[StepVideo]:
        return await self.orchestrator.retry_failed_steps(recipe_id)

    # ── Progress ─────────────────────────────────────────────────────────

    async def get_progress(self, recipe_id: str) -> Optional[ProgressRecord]:
        return await self.tracker.get_progress(recipe_id)

    def watch_progress(self, recipe_id: str, interval: float = 1.0) -> AsyncIterator[ProgressRecord]:
        return self.tracker.watch(recipe_id, interval)

    async def clear_progress(self, recipe_id: str) -> None:
        await self.tracker.clear(recipe_id)

    # ── Assembly ─────────────────────────────────────────────────────────

    async def concatenate_step_videos(self, step_video_urls: list[str], recipe_id: str) -> ConcatResult:
        return await self.assembler.concatenate(step_video_urls, recipe_id)

    async def publish_final_video(
        self,
        recipe_id: str,
        user_id: str,
        step_video_urls: list[str],
        force: bool = False,
    ) -> ConcatResult:
        """Concatenate, upload the result permanently and remember its URL."""
        if not force:
            cached = await self.recipe_store.get_final_video_url(recipe_id)
            if cached:
                logger.info(f"[{recipe_id}] returning cached final video")
                return ConcatResult(success=True, permanent_url=cached, step_count=len(step_video_urls))

        result = await self.concatenate_step_videos(step_video_urls, recipe_id)
        if not result.success:
            return result

        local_path = result.local_path
        try:
            with open(local_path, "rb") as f:
                data = f.read()
            url = await self.store.put(final_video_key(user_id, recipe_id), data, "video/mp4")
            await self.recipe_store.save_final_video_url(recipe_id, url)
        finally:
            os.remove(local_path)

        logger.info(f"[{recipe_id}] final video published: {url}")
        return result.model_copy(update={"permanent_url": url, "local_path": None})

    # ── Hero video ───────────────────────────────────────────────────────

    async def generate_hero_video(
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
        if self.hero_generator is None:
            raise RuntimeError("Hero video generation is not configured")
        return await self.hero_generator.generate(
            recipe_id, user_id, hero_image_url, title, ingredients, steps,
            cuisine, hero_moment, regenerate,
        )

    # ── Credits & photos ─────────────────────────────────────────────────

    async def get_credits(self, account_id: str) -> CreditAccount:
        return await self.ledger.get_balance(account_id)

    async def add_credits(self, account_id: str, amount: int, photos: int = 0) -> CreditAccount:
        account = None
        if amount:
            account = await self.ledger.add_credits(account_id, amount)
        if photos:
            account = await self.ledger.add_photo_credits(account_id, photos)
        return account or await self.ledger.get_balance(account_id)

    async def generate_step_photos(self, user_id: str, dish_name: str, steps: list[Step]) -> dict[int, str]:
        """
        One photo per step for one photo credit. The credit is only used when
        at least one photo came back.

        Raises:
            InsufficientCreditsError: the account has no photo credits.
        """
        if self.image_generator is None:
            raise RuntimeError("Image generation is not configured")

        check = await self.ledger.check_photos(user_id)
        if not check.allowed:
            logger.info(f"Photo credit gate refused {user_id}: {check.message}")
            raise InsufficientCreditsError(check.message, check.remaining)

        photos = await self.image_generator.generate_step_photos(dish_name, steps)
        if photos:
            await self.ledger.commit_photos(user_id)
        else:
            logger.warning(f"No step photos generated for {user_id}, photo credit kept")
        return photos
