"""
FastAPI routes for the recipe video pipeline.

Recipe Endpoints:
  POST /recipes/analyze                 — Dish photo → structured recipe
  POST /recipes/enrich                  — Steps → cinematic visual prompts
  POST /recipes/{id}/step-photos        — One still photo per step

Video Endpoints:
  POST   /videos/generate               — Start step-video generation (background)
  POST   /videos/step                   — Generate / retry a single step video
  POST   /videos/{id}/retry             — Retry every failed step of a job
  POST   /videos/{id}/tiktok            — 10-second vertical hero video of the dish
  POST   /videos/concatenate            — Assemble step videos into the final video
  GET    /videos/{id}/progress          — Current progress snapshot
  GET    /videos/{id}/events            — Progress as server-sent events
  DELETE /videos/{id}/progress          — Forget a job's progress

Credit Endpoints:
  GET  /credits/{account_id}            — Balance and monthly usage
  POST /credits/{account_id}/add        — Add video and photo credits
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from ..config import get_settings
from ..errors import InsufficientCreditsError, PipelineError
from .models import (
    AddCreditsRequest,
    AnalysisResult,
    AnalyzeRequest,
    ConcatRequest,
    ConcatResult,
    CreditAccount,
    EnrichmentResult,
    EnrichRequest,
    GenerateVideosRequest,
    HeroVideoRequest,
    HeroVideoResult,
    ProgressRecord,
    SingleStepRequest,
    StepPhotosRequest,
    StepVideo,
)
from .service import RecipeVideoService

logger = logging.getLogger(__name__)

_service: Optional[RecipeVideoService] = None


def get_service() -> RecipeVideoService:
    """Lazy-init the process-wide service from Settings."""
    global _service
    if _service is None:
        _service = RecipeVideoService.from_settings(get_settings())
    return _service


async def shutdown_service():
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None


# ═════════════════════════════════════════════════════════════════════════════
# Recipe Router
# ═════════════════════════════════════════════════════════════════════════════

recipe_router = APIRouter(prefix="/recipes", tags=["recipes"])


@recipe_router.post("/analyze", response_model=AnalysisResult)
async def analyze_recipe(request: AnalyzeRequest, service: RecipeVideoService = Depends(get_service)):
    """Analysis failures come back as success=false, not as HTTP errors."""
    return await service.analyze_image(request.image_base64, request.dish_name, request.notes)


@recipe_router.post("/enrich", response_model=EnrichmentResult)
async def enrich_steps(request: EnrichRequest, service: RecipeVideoService = Depends(get_service)):
    return await service.enrich_steps_for_video(request.title, request.steps)


@recipe_router.post("/{recipe_id}/step-photos")
async def generate_step_photos(
    recipe_id: str,
    request: StepPhotosRequest,
    service: RecipeVideoService = Depends(get_service),
):
    try:
        photos = await service.generate_step_photos(request.user_id, request.dish_name, request.steps)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Step photos failed for {recipe_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return {"recipe_id": recipe_id, "photos": photos, "generated": len(photos), "requested": len(request.steps)}


# ═════════════════════════════════════════════════════════════════════════════
# Video Router
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/videos", tags=["videos"])


@video_router.post("/generate", response_model=ProgressRecord, status_code=202)
async def generate_videos(request: GenerateVideosRequest, service: RecipeVideoService = Depends(get_service)):
    """
    Start generating one video per step. Poll /videos/{id}/progress for results.

    Errors:
      - 402: Not enough credits / monthly limit reached
    """
    try:
        return await service.start_step_videos(
            recipe_id=request.recipe_id,
            user_id=request.user_id,
            dish_name=request.dish_name,
            base_image_url=request.base_image_url,
            steps=request.steps,
            enrich=request.enrich,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Video generation start failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.post("/step", response_model=StepVideo)
async def generate_single_step(request: SingleStepRequest, service: RecipeVideoService = Depends(get_service)):
    """
    Generate a single step video (or retry it within an existing job).

    Errors:
      - 402: Not enough credits / monthly limit reached
    """
    try:
        return await service.generate_single_step_video(
            user_id=request.user_id,
            recipe_id=request.recipe_id,
            dish_name=request.dish_name,
            base_image_url=request.base_image_url,
            instruction=request.instruction,
            step_number=request.step_number,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Single step video failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.post("/{recipe_id}/retry", response_model=list[StepVideo])
async def retry_failed(recipe_id: str, service: RecipeVideoService = Depends(get_service)):
    try:
        return await service.retry_failed_steps(recipe_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Retry failed for {recipe_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.post("/{recipe_id}/tiktok", response_model=HeroVideoResult)
async def generate_hero_video(
    recipe_id: str,
    request: HeroVideoRequest,
    service: RecipeVideoService = Depends(get_service),
):
    """
    Generate the hero video, or return the stored one.

    Errors:
      - 402: Not enough credits / monthly limit reached
    """
    try:
        return await service.generate_hero_video(
            recipe_id=recipe_id,
            user_id=request.user_id,
            hero_image_url=request.hero_image_url,
            title=request.title,
            ingredients=request.ingredients,
            steps=request.steps,
            cuisine=request.cuisine,
            hero_moment=request.hero_moment,
            regenerate=request.regenerate,
        )
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Hero video failed for {recipe_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.post("/concatenate", response_model=ConcatResult)
async def concatenate_videos(request: ConcatRequest, service: RecipeVideoService = Depends(get_service)):
    """With user_id the final video is uploaded and permanent_url is set."""
    try:
        if request.user_id:
            return await service.publish_final_video(
                request.recipe_id, request.user_id, request.step_video_urls, force=request.force,
            )
        return await service.concatenate_step_videos(request.step_video_urls, request.recipe_id)
    except PipelineError as e:
        logger.error(f"Final video upload failed for {request.recipe_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@video_router.get("/{recipe_id}/progress", response_model=ProgressRecord)
async def get_progress(recipe_id: str, service: RecipeVideoService = Depends(get_service)):
    record = await service.get_progress(recipe_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return record


@video_router.get("/{recipe_id}/events")
async def stream_progress(recipe_id: str, service: RecipeVideoService = Depends(get_service)):
    if await service.get_progress(recipe_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def events():
        async for record in service.watch_progress(recipe_id):
            yield f"event: progress\ndata: {record.model_dump_json()}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@video_router.delete("/{recipe_id}/progress")
async def clear_progress(recipe_id: str, service: RecipeVideoService = Depends(get_service)):
    await service.clear_progress(recipe_id)
    return {"status": "ok", "recipe_id": recipe_id}


# ═════════════════════════════════════════════════════════════════════════════
# Credit Router
# ═════════════════════════════════════════════════════════════════════════════

credit_router = APIRouter(prefix="/credits", tags=["credits"])


@credit_router.get("/{account_id}", response_model=CreditAccount)
async def get_credits(account_id: str, service: RecipeVideoService = Depends(get_service)):
    try:
        return await service.get_credits(account_id)
    except PipelineError as e:
        logger.error(f"Credit lookup failed for {account_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@credit_router.post("/{account_id}/add", response_model=CreditAccount)
async def add_credits(
    account_id: str,
    request: AddCreditsRequest,
    service: RecipeVideoService = Depends(get_service),
):
    try:
        return await service.add_credits(account_id, request.amount, request.photos)
    except PipelineError as e:
        logger.error(f"Adding credits failed for {account_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
