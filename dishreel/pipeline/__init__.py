"""
Recipe Video Pipeline

  Analysis    — dish photo → structured recipe (Gemini vision)
  Enrichment  — recipe steps → cinematic visual prompts (Gemini text)
  Synthesis   — one short video per step via Kie.ai, stored permanently
  Assembly    — ordered step videos → one final video (ffmpeg concat)
  Billing     — per-job credit commit with a monthly fair-use ceiling

Services and routers live in .service and .routes.
"""

from .models import JobStatus, ProgressRecord, Recipe, Step, StepStatus, StepVideo

__all__ = [
    "JobStatus",
    "ProgressRecord",
    "Recipe",
    "Step",
    "StepStatus",
    "StepVideo",
]
