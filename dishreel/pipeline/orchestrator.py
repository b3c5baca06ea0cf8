"""
VideoSynthesisOrchestrator: one short video per recipe step.

Each step runs a small state machine, one transition function per state:

  pending ──_prepare──▶ generating ──_generate──▶ saving ──_save──▶ completed
     └───────────────────────┴───────────────────────┴──────────▶ failed

  _prepare   validate (and normalize) the base image URL, build the prompt
  _generate  submit to the video service and poll until terminal or timeout
  _save      download the temporary video and store it permanently

Progress is published after every transition. Steps of one job run strictly
in order; a failed step does not stop the ones after it. Retrying a failed
step re-enters the machine at `pending` for that index only.

Billing happens once, at the job boundary: when the success policy accepts
the finished job and it has never been committed before. Until then the job
holds a ledger reservation, released if the job ends without a commit.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlparse

import httpx

from .. import metrics
from ..errors import ImageValidationError, InsufficientCreditsError, PipelineError
from ..video_client import KieVideoClient
from .credits import CreditLedger
from .locks import KeyedLocks
from .models import (
    GenerationJob,
    JobStatus,
    PollOutcome,
    ProgressRecord,
    Step,
    StepStatus,
    StepVideo,
    ordered_unique_steps,
)
from .progress import ProgressTracker
from .prompts import build_step_video_prompt
from .recipe_store import RecipeStore, plan_key
from .storage import ArtifactStore, download_bytes, step_video_key
from .task_poller import TaskPoller

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressRecord], Union[None, Awaitable[None]]]
SuccessPolicy = Callable[[GenerationJob], bool]

TERMINAL_STEP_STATES = (StepStatus.COMPLETED, StepStatus.FAILED)


def all_steps_completed(job: GenerationJob) -> bool:
    return job.all_completed


def any_step_completed(job: GenerationJob) -> bool:
    return job.completed_steps > 0


def standalone_job_key(recipe_id: str, step_number: int) -> str:
    return f"{recipe_id}-step{step_number}"


def _same_plan(job: GenerationJob, base_image_url: str, steps: list[Step]) -> bool:
    return job.base_image_url == base_image_url and (
        [(s.step_number, s.instruction) for s in job.steps]
        == [(s.step_number, s.instruction) for s in steps]
    )


@dataclass
class StepContext:
    image_url: str = ""
    prompt: str = ""
    duration: Optional[float] = None
    temp_url: Optional[str] = None


class VideoSynthesisOrchestrator:
    def __init__(
        self,
        video_client: KieVideoClient,
        store: ArtifactStore,
        tracker: ProgressTracker,
        ledger: CreditLedger,
        recipe_store: RecipeStore,
        poller: Optional[TaskPoller] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        success_policy: SuccessPolicy = all_steps_completed,
        check_reachability: bool = True,
    ):
        self.video = video_client
        self.store = store
        self.tracker = tracker
        self.ledger = ledger
        self.recipe_store = recipe_store
        self.poller = poller or TaskPoller()
        self.success_policy = success_policy
        self.check_reachability = check_reachability
        self._http = http_client or httpx.AsyncClient(timeout=120)
        self._job_locks = KeyedLocks()
        self._transitions = {
            StepStatus.PENDING: self._prepare,
            StepStatus.GENERATING: self._generate,
            StepStatus.SAVING: self._save,
        }

    # ── Public entry points ──────────────────────────────────────────────

    async def generate_step_videos(
        self,
        recipe_id: str,
        user_id: str,
        dish_name: str,
        base_image_url: str,
        steps: list[Step],
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[StepVideo]:
        """
        Generate (or resume) every step video for a recipe.

        Cached results come back without submitting work or touching credits.
        Completed steps of an earlier, partially failed run are kept; only the
        missing ones are generated.

        Raises:
            ValueError: two steps share a step number.
            InsufficientCreditsError: the ledger refused to start paid work.
        """
        steps = ordered_unique_steps(steps)
        async with self._job_locks.hold(recipe_id):
            job = await self._load_or_create(recipe_id, user_id, dish_name, base_image_url, steps)

            cached = await self._cached(job, on_progress)
            if cached is not None:
                return cached

            pending = [i for i, v in enumerate(job.step_videos) if not v.is_done]
            logger.info(
                f"[{recipe_id}] generating {len(pending)} of {len(job.step_videos)} step videos"
            )
            await self._run_paid(job, pending, on_progress)
            return [v.model_copy() for v in job.step_videos]

    async def generate_single_step_video(
        self,
        user_id: str,
        recipe_id: str,
        dish_name: str,
        base_image_url: str,
        instruction: str,
        step_number: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StepVideo:
        """
        Generate one step video.

        When the recipe already has a job containing `step_number`, this is a
        retry of that step index inside the job. Otherwise it runs as its own
        one-step job keyed `{recipe_id}-step{n}`.
        """
        async with self._job_locks.hold(recipe_id):
            job = await self.tracker.get_job(recipe_id)
            index = None
            if job is not None:
                index = next(
                    (i for i, s in enumerate(job.steps) if s.step_number == step_number), None
                )

            if job is not None and index is not None:
                video = job.step_videos[index]
                step = job.steps[index]
                if video.is_done and step.instruction == instruction:
                    logger.info(f"[{recipe_id}] step {step_number} already completed, returning cached video")
                    return video.model_copy()

                if step.instruction != instruction:
                    job.steps[index] = step.model_copy(update={"instruction": instruction, "visual_prompt": None})

                logger.info(f"[{recipe_id}] retrying step {step_number} (index {index})")
                await self._run_paid(job, [index], on_progress)
                return job.step_videos[index].model_copy()

        videos = await self.generate_step_videos(
            standalone_job_key(recipe_id, step_number), user_id, dish_name, base_image_url,
            [Step(step_number=step_number, instruction=instruction)],
            on_progress,
        )
        return videos[0]

    async def retry_failed_steps(
        self,
        recipe_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[StepVideo]:
        """Re-enter the state machine for every failed step of an existing job."""
        job = await self.tracker.get_job(recipe_id)
        if job is None:
            raise KeyError(recipe_id)
        return await self.generate_step_videos(
            recipe_id, job.user_id, job.dish_name, job.base_image_url, job.steps, on_progress,
        )

    async def requires_payment(self, recipe_id: str, base_image_url: str, steps: list[Step]) -> bool:
        """False when the work is already paid for or cached."""
        steps = ordered_unique_steps(steps)
        job = await self.tracker.get_job(recipe_id)
        if job is not None and _same_plan(job, base_image_url, steps):
            if job.credit_committed or job.all_completed:
                return False
        return await self.recipe_store.cached_step_videos(recipe_id, plan_key(base_image_url, steps)) is None

    async def ensure_credit(self, user_id: str):
        """Raise InsufficientCreditsError unless the ledger allows one more video job."""
        check = await self.ledger.reserve_or_check(user_id)
        if not check.allowed:
            logger.info(f"Credit gate refused {user_id}: {check.message}")
            raise InsufficientCreditsError(check.message, check.remaining)

    async def validate_image_url(self, url: str) -> str:
        """
        Check the base image URL and return the form to send to the video service.

        Accepts https:// and data:image/ URLs; http:// is upgraded to https://.
        Remote URLs must answer a HEAD request without an error status.
        """
        url = (url or "").strip()
        if url.startswith("data:image/"):
            return url
        if url.startswith("http://"):
            url = "https://" + url[len("http://"):]
            logger.info("Upgraded base image URL from http to https")
        if not url.startswith("https://") or not urlparse(url).netloc:
            raise ImageValidationError(
                f"Invalid image URL format: expected https:// or data:image/, got {url[:60]!r}"
            )

        if self.check_reachability:
            try:
                resp = await self._http.head(url, follow_redirects=True)
            except httpx.HTTPError as e:
                raise ImageValidationError(f"Base image is unreachable: {e}") from e
            # some hosts refuse HEAD but serve GET
            if resp.status_code >= 400 and resp.status_code != 405:
                raise ImageValidationError(f"Base image is unreachable: HTTP {resp.status_code}")
        return url

    # ── Job lifecycle ────────────────────────────────────────────────────

    async def _load_or_create(self, recipe_id, user_id, dish_name, base_image_url, steps) -> GenerationJob:
        existing = await self.tracker.get_job(recipe_id)
        if existing is not None and _same_plan(existing, base_image_url, steps):
            # keep enrichment from the caller without dropping finished videos
            existing.steps = list(steps)
            return existing

        job = GenerationJob.new(recipe_id, user_id, dish_name, base_image_url, steps)
        if existing is not None:
            logger.info(f"[{recipe_id}] recipe plan changed, starting a new job")
            job.sequence = existing.sequence
        return job

    async def _cached(self, job: GenerationJob, on_progress) -> Optional[list[StepVideo]]:
        if job.all_completed:
            logger.info(f"[{job.recipe_id}] all step videos already completed, skipping generation")
            return [v.model_copy() for v in job.step_videos]

        cached = await self.recipe_store.cached_step_videos(
            job.recipe_id, plan_key(job.base_image_url, job.steps)
        )
        if cached is None:
            return None

        logger.info(f"[{job.recipe_id}] using {len(cached)} cached step videos")
        job.step_videos = cached
        job.status = JobStatus.COMPLETED
        job.current_step = None
        # paid for when the cache entry was written
        job.credit_committed = True
        await self._publish(job, on_progress)
        return [v.model_copy() for v in cached]

    async def _run_paid(self, job: GenerationJob, indices: list[int], on_progress):
        """Run `indices` under a credit reservation held for the job until commit or release."""
        if job.credit_committed:
            await self._run_steps(job, indices, on_progress)
            return

        check = await self.ledger.reserve_or_check(job.user_id, job.job_id)
        if not check.allowed:
            logger.info(f"Credit gate refused {job.user_id}: {check.message}")
            raise InsufficientCreditsError(check.message, check.remaining)
        try:
            await self._run_steps(job, indices, on_progress)
        finally:
            if not job.credit_committed:
                await self._release(job)

    async def _release(self, job: GenerationJob):
        try:
            await self.ledger.release(job.user_id, job.job_id)
        except PipelineError as e:
            logger.error(f"[{job.recipe_id}] releasing credit reservation failed: {e}", exc_info=True)
            metrics.record_error("credit_release", type(e).__name__, str(e), job.recipe_id)

    async def _abort(self, job: GenerationJob, error: str, on_progress):
        job.status = JobStatus.FAILED
        job.current_step = None
        job.error = error
        await self._publish(job, on_progress)

    async def _run_steps(self, job: GenerationJob, indices: list[int], on_progress):
        job.status = JobStatus.GENERATING
        job.error = None
        await self._publish(job, on_progress)
        metrics.adjust_gauge("jobs.active", 1)
        started = time.monotonic()

        try:
            for index in indices:
                await self._run_step(job, index, on_progress)
        except asyncio.CancelledError:
            logger.warning(f"[{job.recipe_id}] job cancelled")
            await self._abort(job, "cancelled", on_progress)
            raise
        except Exception as e:
            logger.error(f"[{job.recipe_id}] job aborted: {e}", exc_info=True)
            metrics.inc_counter("jobs.failed")
            await self._abort(job, f"{type(e).__name__}: {e}", on_progress)
            raise
        finally:
            metrics.adjust_gauge("jobs.active", -1)

        await self._finish(job, on_progress)
        metrics.record_latency("generate_step_videos", (time.monotonic() - started) * 1000)

    async def _finish(self, job: GenerationJob, on_progress):
        job.current_step = None
        failed = [v for v in job.step_videos if not v.is_done]
        if failed:
            job.status = JobStatus.FAILED
            job.error = f"{len(failed)} of {len(job.step_videos)} steps failed"
            metrics.inc_counter("jobs.failed")
        else:
            job.status = JobStatus.COMPLETED
            job.error = None
            metrics.inc_counter("jobs.completed")
        await self._publish(job, on_progress)
        logger.info(
            f"[{job.recipe_id}] job {job.status.value}: "
            f"{job.completed_steps}/{len(job.step_videos)} steps completed"
        )

        if job.status == JobStatus.COMPLETED:
            try:
                await self.recipe_store.save_step_videos(
                    job.recipe_id, job.step_videos, plan_key(job.base_image_url, job.steps)
                )
            except PipelineError as e:
                logger.warning(f"[{job.recipe_id}] could not cache step videos: {e}")

        if await self._commit(job):
            await self._publish(job, on_progress)

    async def _commit(self, job: GenerationJob) -> bool:
        if job.credit_committed:
            return False
        if not self.success_policy(job):
            logger.info(f"[{job.recipe_id}] job not successful, no credit committed")
            return False
        try:
            await self.ledger.commit(job.user_id, job.job_id)
        except PipelineError as e:
            logger.error(f"[{job.recipe_id}] credit commit failed: {e}", exc_info=True)
            metrics.record_error("credit_commit", type(e).__name__, str(e), job.recipe_id)
            return False
        job.credit_committed = True
        return True

    async def _publish(self, job: GenerationJob, on_progress: Optional[ProgressCallback] = None):
        job.touch()
        record = await self.tracker.publish(job)
        if record is not None and on_progress is not None:
            result = on_progress(record)
            if inspect.isawaitable(result):
                await result

    # ── Per-step state machine ───────────────────────────────────────────

    async def _run_step(self, job: GenerationJob, index: int, on_progress):
        video = job.step_videos[index]
        total = len(job.step_videos)
        label = f"[{job.recipe_id}] step {video.step_number}/{total}"

        video.status = StepStatus.PENDING
        video.video_url = ""
        video.error = None
        video.task_id = None
        video.attempts += 1
        job.current_step = video.step_number
        await self._publish(job, on_progress)

        ctx = StepContext()
        state = StepStatus.PENDING
        while state not in TERMINAL_STEP_STATES:
            try:
                state = await self._transitions[state](job, index, ctx)
            except PipelineError as e:
                logger.error(f"{label} failed in {state.value}: {e}")
                video.error = str(e)
                state = StepStatus.FAILED
            except Exception as e:
                logger.error(f"{label} failed unexpectedly in {state.value}: {e}", exc_info=True)
                video.error = f"{type(e).__name__}: {e}"
                state = StepStatus.FAILED
            video.status = state
            await self._publish(job, on_progress)

        if state == StepStatus.COMPLETED:
            metrics.inc_counter("steps.completed")
            logger.info(f"{label} completed: {video.video_url}")
        else:
            metrics.inc_counter("steps.failed")
            metrics.record_error("step_video", "StepFailed", video.error or "", job.recipe_id)

    async def _prepare(self, job: GenerationJob, index: int, ctx: StepContext) -> StepStatus:
        step = job.steps[index]
        ctx.image_url = await self.validate_image_url(job.base_image_url)
        ctx.prompt = build_step_video_prompt(
            job.dish_name, step.step_number, step.instruction, step.visual_prompt
        )
        ctx.duration = step.duration
        return StepStatus.GENERATING

    async def _generate(self, job: GenerationJob, index: int, ctx: StepContext) -> StepStatus:
        video = job.step_videos[index]
        label = f"[{job.recipe_id}] step {video.step_number}"

        result = await self.poller.run(
            lambda: self.video.submit(ctx.prompt, ctx.image_url, ctx.duration),
            self.video.get_status,
            label=label,
        )
        video.task_id = result.task_id

        if result.outcome == PollOutcome.SUCCEEDED:
            ctx.temp_url = result.output_url
            return StepStatus.SAVING

        if result.outcome == PollOutcome.TIMED_OUT:
            metrics.inc_counter("steps.timed_out")
        video.error = result.error or f"Video generation {result.outcome.value}"
        logger.error(f"{label} {result.outcome.value}: {video.error}")
        return StepStatus.FAILED

    async def _save(self, job: GenerationJob, index: int, ctx: StepContext) -> StepStatus:
        video = job.step_videos[index]
        data = await download_bytes(ctx.temp_url, self._http)
        key = step_video_key(job.user_id, job.recipe_id, video.step_number, video.attempts)
        video.video_url = await self.store.put(key, data, "video/mp4")
        return StepStatus.COMPLETED
