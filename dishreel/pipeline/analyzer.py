"""
Recipe analysis: dish photo → structured Recipe, via one vision-model call.

Never raises: every failure (bad input, network, malformed JSON, schema
mismatch) comes back as AnalysisResult(success=False, recipe=None, error=...).
"""

import re
import time
import base64
import binascii
import logging
from typing import Optional, Union

from pydantic import ValidationError

from .. import metrics
from ..errors import PipelineError
from ..llm import GeminiClient, image_part, text_part
from .models import AnalysisResult, Recipe
from .prompts import ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt

logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def decode_image(image: Union[bytes, str]) -> tuple[bytes, str]:
    """Accept raw bytes, base64 text or a data: URI; return (bytes, mime type)."""
    if isinstance(image, bytes):
        return image, "image/jpeg"

    mime = "image/jpeg"
    payload = image.strip()
    match = _DATA_URI.match(payload)
    if match:
        mime, payload = match.group("mime"), match.group("data")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Image is not valid base64: {e}") from e
    if not data:
        raise ValueError("Image is empty")
    return data, mime


def parse_recipe(payload) -> Recipe:
    """Strictly validate model JSON against the Recipe schema."""
    if isinstance(payload, list) and len(payload) == 1:
        payload = payload[0]
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object, got {type(payload).__name__}")
    return Recipe.model_validate(payload)


def apply_dish_hint(recipe: Recipe, dish_name_hint: Optional[str]) -> Recipe:
    """Return a recipe named after the user's hint unless the model already used it."""
    if not dish_name_hint or not dish_name_hint.strip():
        return recipe
    hint = dish_name_hint.strip()
    if hint.lower() in recipe.dish_name.lower():
        return recipe
    logger.info(f"Renaming analyzed dish '{recipe.dish_name}' to user hint '{hint}'")
    return recipe.model_copy(update={"dish_name": hint})


async def analyze_image(
    llm: GeminiClient,
    image: Union[bytes, str],
    dish_name_hint: Optional[str] = None,
    notes: Optional[str] = None,
) -> AnalysisResult:
    started = time.monotonic()
    try:
        data, mime = decode_image(image)
        parts = [image_part(data, mime), text_part(build_analysis_prompt(dish_name_hint, notes))]
        payload = await llm.generate_json(parts, system_instruction=ANALYSIS_SYSTEM_PROMPT)
        recipe = apply_dish_hint(parse_recipe(payload), dish_name_hint)
    except ValidationError as e:
        reason = f"Recipe failed validation: {e.error_count()} error(s): {e.errors()[0].get('msg', '')}"
        logger.warning(f"Recipe analysis rejected model output: {e}")
        metrics.inc_counter("analysis.invalid")
        return AnalysisResult(success=False, recipe=None, error=reason)
    except (PipelineError, ValueError) as e:
        logger.error(f"Recipe analysis failed: {e}")
        metrics.inc_counter("analysis.failed")
        metrics.record_error("analyze_image", type(e).__name__, str(e))
        return AnalysisResult(success=False, recipe=None, error=str(e))
    except Exception as e:
        logger.error(f"Recipe analysis crashed: {e}", exc_info=True)
        metrics.record_error("analyze_image", type(e).__name__, str(e))
        return AnalysisResult(success=False, recipe=None, error=f"Analysis failed: {e}")
    finally:
        metrics.record_latency("analyze_image", (time.monotonic() - started) * 1000)

    logger.info(f"Analyzed dish '{recipe.dish_name}' with {len(recipe.steps)} steps")
    metrics.inc_counter("analysis.completed")
    return AnalysisResult(success=True, recipe=recipe)
