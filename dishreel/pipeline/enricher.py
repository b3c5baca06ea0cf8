"""
Step enrichment: recipe steps → cinematic visual prompts for the video model.

Enrichment is best effort. Whatever the text model returns, every step comes
back with a usable prompt and a duration inside [5, 15] seconds.
"""

import time
import logging
from typing import Any, Optional

from .. import metrics
from ..llm import GeminiClient, text_part
from .models import EnrichedStep, EnrichmentResult, Step, clamp_duration
from .prompts import ENRICHMENT_SYSTEM_PROMPT, build_enrichment_prompt, fallback_visual_prompt

logger = logging.getLogger(__name__)


def fallback_step(step: Step) -> EnrichedStep:
    return EnrichedStep(
        step_number=step.step_number,
        original_text=step.instruction,
        visual_prompt=fallback_visual_prompt(step.instruction),
        duration=clamp_duration(step.duration if step.duration else None),
    )


def fallback_steps(steps: list[Step]) -> list[EnrichedStep]:
    return [fallback_step(s) for s in steps]


def unwrap_array(payload: Any) -> list:
    """Accept a bare array, or an object whose first array-valued property holds it."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for value in payload.values():
            if isinstance(value, list):
                return value
    raise ValueError(f"Expected a JSON array of steps, got {type(payload).__name__}")


def coerce_element(element: Any, step: Step) -> EnrichedStep:
    if not isinstance(element, dict):
        return fallback_step(step)

    original = element.get("originalText")
    if not isinstance(original, str) or not original.strip():
        original = step.instruction

    prompt = element.get("visualPrompt")
    if not isinstance(prompt, str) or not prompt.strip():
        prompt = fallback_visual_prompt(step.instruction)

    return EnrichedStep(
        step_number=step.step_number,
        original_text=original,
        visual_prompt=prompt.strip(),
        duration=clamp_duration(element.get("duration")),
    )


async def enrich_steps_for_video(llm: GeminiClient, title: str, steps: list[Step]) -> EnrichmentResult:
    if not steps:
        return EnrichmentResult(success=True, enriched_steps=[])

    started = time.monotonic()
    try:
        payload = await llm.generate_json(
            [text_part(build_enrichment_prompt(title, steps))],
            system_instruction=ENRICHMENT_SYSTEM_PROMPT,
            temperature=0.7,
        )
        elements = unwrap_array(payload)
    except Exception as e:
        logger.warning(f"Enrichment for '{title}' failed, using fallback prompts: {e}")
        metrics.inc_counter("enrichment.fallback")
        metrics.record_error("enrich_steps", type(e).__name__, str(e))
        return EnrichmentResult(success=False, enriched_steps=fallback_steps(steps), error=str(e))
    finally:
        metrics.record_latency("enrich_steps", (time.monotonic() - started) * 1000)

    if len(elements) != len(steps):
        logger.warning(
            f"Enrichment for '{title}' returned {len(elements)} prompts for {len(steps)} steps"
        )
    enriched = [
        coerce_element(elements[i] if i < len(elements) else None, step)
        for i, step in enumerate(steps)
    ]
    metrics.inc_counter("enrichment.completed")
    return EnrichmentResult(success=True, enriched_steps=enriched)


def apply_enrichment(steps: list[Step], enriched: list[EnrichedStep]) -> list[Step]:
    """New Step values carrying the visual prompt and clip duration, matched by step number."""
    by_number: dict[int, Optional[EnrichedStep]] = {e.step_number: e for e in enriched}
    result = []
    for index, step in enumerate(steps):
        match = by_number.get(step.step_number)
        if match is None and index < len(enriched):
            match = enriched[index]
        if match is None:
            result.append(step)
            continue
        result.append(step.model_copy(update={
            "visual_prompt": match.visual_prompt,
            "duration": match.duration,
        }))
    return result
