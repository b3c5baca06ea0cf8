"""
Recipe artifact cache: permanent step-video URLs, the final video URL and
the hero video URL.

Lets a revisited recipe return its videos without generating (or paying for)
them again. Backed by the `recipes` table in Supabase, or a dict in memory.
"""

import asyncio
import hashlib
import json
import logging
from typing import Optional

from ..config import Settings
from ..errors import ConfigurationError, StorageError
from .models import Step, StepStatus, StepVideo

logger = logging.getLogger(__name__)


def plan_key(base_image_url: str, steps: list[Step]) -> str:
    """Fingerprint of what a set of step videos was generated from."""
    plan = [base_image_url] + [[s.step_number, s.instruction] for s in steps]
    return hashlib.sha256(json.dumps(plan).encode()).hexdigest()


class RecipeStore:
    async def get_step_videos(self, recipe_id: str) -> list[StepVideo]:
        raise NotImplementedError

    async def get_step_video_plan(self, recipe_id: str) -> Optional[str]:
        raise NotImplementedError

    async def save_step_videos(self, recipe_id: str, videos: list[StepVideo], plan: str = "") -> None:
        raise NotImplementedError

    async def get_final_video_url(self, recipe_id: str) -> Optional[str]:
        raise NotImplementedError

    async def save_final_video_url(self, recipe_id: str, url: str) -> None:
        raise NotImplementedError

    async def get_hero_video_url(self, recipe_id: str) -> Optional[str]:
        raise NotImplementedError

    async def save_hero_video_url(self, recipe_id: str, url: str) -> None:
        raise NotImplementedError

    async def cached_step_videos(self, recipe_id: str, plan: str) -> Optional[list[StepVideo]]:
        """Step videos if they were all completed for this exact plan (see plan_key)."""
        if await self.get_step_video_plan(recipe_id) != plan:
            return None
        videos = await self.get_step_videos(recipe_id)
        if not videos or not all(v.is_done for v in videos):
            return None
        return videos


class InMemoryRecipeStore(RecipeStore):
    def __init__(self):
        self._step_videos: dict[str, list[StepVideo]] = {}
        self._plans: dict[str, str] = {}
        self._final: dict[str, str] = {}
        self._hero: dict[str, str] = {}

    async def get_step_videos(self, recipe_id: str) -> list[StepVideo]:
        return [v.model_copy() for v in self._step_videos.get(recipe_id, [])]

    async def get_step_video_plan(self, recipe_id: str) -> Optional[str]:
        return self._plans.get(recipe_id)

    async def save_step_videos(self, recipe_id: str, videos: list[StepVideo], plan: str = "") -> None:
        self._step_videos[recipe_id] = [v.model_copy() for v in videos]
        self._plans[recipe_id] = plan

    async def get_final_video_url(self, recipe_id: str) -> Optional[str]:
        return self._final.get(recipe_id)

    async def save_final_video_url(self, recipe_id: str, url: str) -> None:
        self._final[recipe_id] = url

    async def get_hero_video_url(self, recipe_id: str) -> Optional[str]:
        return self._hero.get(recipe_id)

    async def save_hero_video_url(self, recipe_id: str, url: str) -> None:
        self._hero[recipe_id] = url


class SupabaseRecipeStore(RecipeStore):
    def __init__(self, url: str = "", service_key: str = "", client=None):
        self._url = url
        self._key = service_key
        self._client = client

    def _sb(self):
        if self._client is None:
            from supabase import create_client

            if not self._url or not self._key:
                raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self._url, self._key)
        return self._client

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Recipe store query failed: {e}")
            raise StorageError(f"Recipe store query failed: {e}") from e

    def _select(self, recipe_id: str, columns: str) -> dict:
        rows = self._sb().table("recipes").select(columns).eq("id", recipe_id).limit(1).execute().data
        return rows[0] if rows else {}

    async def get_step_videos(self, recipe_id: str) -> list[StepVideo]:
        row = await self._run(self._select, recipe_id, "step_videos")
        return [StepVideo.model_validate(v) for v in (row.get("step_videos") or [])]

    def _update(self, recipe_id: str, values: dict):
        self._sb().table("recipes").update(values).eq("id", recipe_id).execute()

    async def get_step_video_plan(self, recipe_id: str) -> Optional[str]:
        row = await self._run(self._select, recipe_id, "step_video_plan")
        return row.get("step_video_plan") or None

    async def save_step_videos(self, recipe_id: str, videos: list[StepVideo], plan: str = "") -> None:
        await self._run(self._update, recipe_id, {
            "step_videos": [v.model_dump(mode="json") for v in videos],
            "step_video_plan": plan,
            "video_status": "steps_completed" if all(v.is_done for v in videos) else "partial",
        })

    async def get_final_video_url(self, recipe_id: str) -> Optional[str]:
        row = await self._run(self._select, recipe_id, "final_video_url")
        return row.get("final_video_url") or None

    async def save_final_video_url(self, recipe_id: str, url: str) -> None:
        await self._run(self._update, recipe_id, {
            "final_video_url": url,
            "video_status": StepStatus.COMPLETED.value,
        })

    async def get_hero_video_url(self, recipe_id: str) -> Optional[str]:
        row = await self._run(self._select, recipe_id, "tiktok_video_url")
        return row.get("tiktok_video_url") or None

    async def save_hero_video_url(self, recipe_id: str, url: str) -> None:
        await self._run(self._update, recipe_id, {"tiktok_video_url": url})


def build_recipe_store(settings: Settings) -> RecipeStore:
    if settings.data_backend == "supabase":
        return SupabaseRecipeStore(settings.supabase_url, settings.supabase_service_role_key)
    return InMemoryRecipeStore()
