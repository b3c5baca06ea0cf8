"""
Pydantic models and enums for the recipe video pipeline.
"""

import time
import uuid
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MAX_STEPS = 15
MIN_CLIP_SECONDS = 5
MAX_CLIP_SECONDS = 15
DEFAULT_CLIP_SECONDS = 8


def clamp_duration(value) -> float:
    """Clamp a clip duration to [5, 15] seconds; anything non-numeric becomes 8."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return float(DEFAULT_CLIP_SECONDS)
    return float(min(max(value, MIN_CLIP_SECONDS), MAX_CLIP_SECONDS))


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys models and the app speak."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ── Recipe ───────────────────────────────────────────────────────────────────

class Ingredient(CamelModel):
    name: str = Field(..., min_length=1)
    amount: str = ""
    unit: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, v):
        if v is None:
            return ""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return f"{v:g}"
        return v


class Step(CamelModel):
    step_number: int = Field(..., gt=0)
    instruction: str = Field(..., min_length=1)
    duration: Optional[float] = Field(default=None, ge=0, description="Target clip length in seconds")
    tips: Optional[str] = None
    visual_prompt: Optional[str] = None


def ordered_unique_steps(steps: list[Step]) -> list[Step]:
    """Steps in step-number order. Duplicate numbers are rejected; steps past MAX_STEPS are dropped."""
    numbers = [s.step_number for s in steps]
    if len(set(numbers)) != len(numbers):
        raise ValueError(f"duplicate step numbers: {numbers}")
    ordered = sorted(steps, key=lambda s: s.step_number)
    if len(ordered) > MAX_STEPS:
        logger.warning(f"Recipe has {len(ordered)} steps, keeping the first {MAX_STEPS}")
        ordered = ordered[:MAX_STEPS]
    return ordered


class Recipe(CamelModel):
    dish_name: str = Field(..., min_length=1)
    description: str
    cuisine: str = ""
    difficulty: Literal["easy", "medium", "hard"]
    prep_time: int = Field(..., ge=0, description="Minutes")
    cook_time: int = Field(..., ge=0, description="Minutes")
    servings: int = Field(..., gt=0)
    ingredients: list[Ingredient]
    steps: list[Step] = Field(..., min_length=1)
    nutrition_estimate: Optional[dict] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("difficulty", mode="before")
    @classmethod
    def _lower_difficulty(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: list[Step]) -> list[Step]:
        return ordered_unique_steps(steps)


class EnrichedStep(CamelModel):
    step_number: int
    original_text: str
    visual_prompt: str
    duration: float = Field(default=DEFAULT_CLIP_SECONDS, ge=MIN_CLIP_SECONDS, le=MAX_CLIP_SECONDS)


class AnalysisResult(BaseModel):
    success: bool
    recipe: Optional[Recipe] = None
    error: Optional[str] = None


class EnrichmentResult(BaseModel):
    success: bool
    enriched_steps: list[EnrichedStep] = Field(default_factory=list)
    error: Optional[str] = None


# ── External task polling ────────────────────────────────────────────────────

class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskStatus(BaseModel):
    state: TaskState
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (TaskState.SUCCEEDED, TaskState.FAILED)


class PollOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SUBMIT_FAILED = "submit_failed"


class PollResult(BaseModel):
    outcome: PollOutcome
    task_id: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    polls: int = 0


# ── Step videos and jobs ─────────────────────────────────────────────────────

class StepStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class StepVideo(BaseModel):
    step_index: int
    step_number: int
    status: StepStatus = StepStatus.PENDING
    video_url: str = ""
    error: Optional[str] = None
    task_id: Optional[str] = None
    attempts: int = 0

    @property
    def is_done(self) -> bool:
        return self.status == StepStatus.COMPLETED and bool(self.video_url)


class GenerationJob(BaseModel):
    """Per-recipe job state. Only the orchestrator mutates it."""
    recipe_id: str
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    dish_name: str
    base_image_url: str
    steps: list[Step]
    step_videos: list[StepVideo]
    status: JobStatus = JobStatus.IDLE
    current_step: Optional[int] = None
    sequence: int = 0
    credit_committed: bool = False
    error: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @classmethod
    def new(cls, recipe_id: str, user_id: str, dish_name: str, base_image_url: str,
            steps: list[Step]) -> "GenerationJob":
        return cls(
            recipe_id=recipe_id,
            user_id=user_id,
            dish_name=dish_name,
            base_image_url=base_image_url,
            steps=list(steps),
            step_videos=[
                StepVideo(step_index=i, step_number=s.step_number) for i, s in enumerate(steps)
            ],
        )

    @property
    def completed_steps(self) -> int:
        return sum(1 for v in self.step_videos if v.is_done)

    @property
    def all_completed(self) -> bool:
        return bool(self.step_videos) and all(v.is_done for v in self.step_videos)

    def touch(self):
        self.sequence += 1
        self.updated_at = time.time()


class ProgressRecord(BaseModel):
    """Read-only snapshot of a job, replaced whole on every transition."""
    recipe_id: str
    total_steps: int
    completed_steps: int
    current_step: Optional[int] = None
    status: JobStatus
    step_videos: list[StepVideo]
    sequence: int
    error: Optional[str] = None
    updated_at: float

    @classmethod
    def from_job(cls, job: GenerationJob) -> "ProgressRecord":
        return cls(
            recipe_id=job.recipe_id,
            total_steps=len(job.step_videos),
            completed_steps=job.completed_steps,
            current_step=job.current_step,
            status=job.status,
            step_videos=[v.model_copy() for v in job.step_videos],
            sequence=job.sequence,
            error=job.error,
            updated_at=job.updated_at,
        )


# ── Assembly ─────────────────────────────────────────────────────────────────

class ConcatResult(BaseModel):
    success: bool
    local_path: Optional[str] = None
    error: Optional[str] = None
    step_count: int = 0
    permanent_url: Optional[str] = None


# ── Credits ──────────────────────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditAccount(BaseModel):
    account_id: str
    bundle_credits: int = 0
    photo_credits: int = 0
    unlimited: bool = False
    monthly_usage: int = 0
    monthly_limit: int = 50
    month_reset_at: datetime = Field(default_factory=_utcnow)


class CreditCheck(BaseModel):
    allowed: bool
    remaining: int = 0
    message: str = ""


# ── Hero video ───────────────────────────────────────────────────────────────

class HeroVideoResult(BaseModel):
    success: bool
    video_url: Optional[str] = None
    prompt: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    generation_time_ms: int = 0


# ── API Request Models ───────────────────────────────────────────────────────

class AnalyzeRequest(BaseModel):
    image_base64: str = Field(..., description="Base64 image or data: URI")
    dish_name: Optional[str] = Field(default=None, description="User-supplied dish name, treated as a correction")
    notes: Optional[str] = None


class EnrichRequest(BaseModel):
    title: str
    steps: list[Step]

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: list[Step]) -> list[Step]:
        return ordered_unique_steps(steps)


class GenerateVideosRequest(BaseModel):
    recipe_id: str
    user_id: str
    dish_name: str
    base_image_url: str
    steps: list[Step] = Field(..., min_length=1)
    enrich: bool = Field(default=False, description="Run step enrichment before synthesis")

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: list[Step]) -> list[Step]:
        return ordered_unique_steps(steps)


class SingleStepRequest(BaseModel):
    user_id: str
    recipe_id: str
    dish_name: str
    base_image_url: str
    instruction: str
    step_number: int = Field(..., gt=0)


class ConcatRequest(BaseModel):
    recipe_id: str
    step_video_urls: list[str]
    user_id: Optional[str] = Field(default=None, description="When set, the result is uploaded")
    force: bool = False


class StepPhotosRequest(BaseModel):
    dish_name: str
    steps: list[Step]
    user_id: str = Field(..., description="Account charged one photo credit")

    @field_validator("steps")
    @classmethod
    def _ordered_unique_steps(cls, steps: list[Step]) -> list[Step]:
        return ordered_unique_steps(steps)


class HeroVideoRequest(BaseModel):
    user_id: str
    hero_image_url: str
    title: str = Field(..., min_length=1)
    ingredients: list[Ingredient] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)
    cuisine: Optional[str] = None
    hero_moment: Optional[str] = Field(default=None, description="Closing shot, e.g. the first cut into the cake")
    regenerate: bool = Field(default=False, description="Use the alternate prompt; free once a hero video exists")


class AddCreditsRequest(BaseModel):
    amount: int = Field(default=0, ge=0, description="Video credits")
    photos: int = Field(default=0, ge=0, description="Photo credits")

    @model_validator(mode="after")
    def _adds_something(self):
        if not self.amount and not self.photos:
            raise ValueError("amount or photos must be positive")
        return self
