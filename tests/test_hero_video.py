"""
Tests for the hero video: billing, the size check retry and prompt building
"""

import httpx
import pytest

from dishreel import metrics
from dishreel.errors import InsufficientCreditsError
from dishreel.pipeline.hero_video import HERO_DURATION, HeroVideoGenerator
from dishreel.pipeline.models import Ingredient, Step
from dishreel.pipeline.prompts import (
    DEFAULT_CUISINE_STYLE,
    DEFAULT_PALETTE,
    DEFAULT_TECHNIQUE,
    HERO_PROMPT_MAX_CHARS,
    build_alternate_hero_prompt,
    build_hero_video_prompt,
    color_palette,
    cuisine_style,
    technique_visuals,
)
from dishreel.pipeline.task_poller import TaskPoller

from conftest import FakeVideoClient, no_sleep

HERO_IMAGE = "https://images.test/hero.jpg"
MAIN_PROMPT = "Cinematic close-up"
ALTERNATE_PROMPT = "Overhead cinematic"


def clip_transport(size):
    """HEAD reports a clip of `size` bytes, GET serves the clip."""

    def handler(request: httpx.Request):
        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-length": str(size)})
        return httpx.Response(200, content=b"clip")

    return httpx.MockTransport(handler)


@pytest.fixture
def ingredients():
    return [Ingredient(name="tomatoes"), Ingredient(name="eggs"), Ingredient(name="fresh basil")]


@pytest.fixture
def make_generator(store, ledger, recipe_store):
    def _make(video_client, clip_size=600_000):
        return HeroVideoGenerator(
            video_client, store, ledger, recipe_store,
            poller=TaskPoller(poll_interval=0, timeout=60, sleep=no_sleep),
            http_client=httpx.AsyncClient(transport=clip_transport(clip_size)),
        )

    return _make


async def generate(generator, steps, ingredients, **kwargs):
    kwargs.setdefault("cuisine", "Middle Eastern")
    return await generator.generate(
        "recipe-1", "user-1", kwargs.pop("image", HERO_IMAGE), "Shakshuka", ingredients, steps, **kwargs,
    )


# ── Generation & billing ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hero_video_uses_one_credit(make_generator, steps, ingredients, ledger, recipe_store, store):
    await ledger.add_credits("user-1", 2)
    video = FakeVideoClient()

    result = await generate(make_generator(video), steps, ingredients)

    assert result.success
    assert result.attempts == 1
    assert result.prompt.startswith(MAIN_PROMPT)
    assert result.video_url.startswith("https://cdn.test/tiktok-videos/recipe-1/tiktok_")
    assert video.submits == [(result.prompt, HERO_IMAGE, HERO_DURATION)]
    assert store.puts[0][1:] == (b"clip", "video/mp4")
    assert (await ledger.get_balance("user-1")).bundle_credits == 1
    assert ledger.reservations("user-1") == set()
    assert await recipe_store.get_hero_video_url("recipe-1") == result.video_url
    assert metrics.get_snapshot()["counters"]["hero.completed"] == 1


@pytest.mark.asyncio
async def test_small_clip_is_regenerated_with_alternate_prompt(make_generator, steps, ingredients, ledger):
    await ledger.add_credits("user-1", 2)
    video = FakeVideoClient()

    result = await generate(make_generator(video, clip_size=1_000), steps, ingredients)

    assert result.success
    assert result.attempts == 2
    assert [p for p, _, _ in video.submits][1].startswith(ALTERNATE_PROMPT)
    assert result.prompt.startswith(ALTERNATE_PROMPT)
    assert (await ledger.get_balance("user-1")).bundle_credits == 1


@pytest.mark.asyncio
async def test_stored_hero_video_is_returned_without_billing(make_generator, steps, ingredients, recipe_store):
    await recipe_store.save_hero_video_url("recipe-1", "https://cdn.test/tiktok-videos/recipe-1/tiktok_1.mp4")
    video = FakeVideoClient()

    result = await generate(make_generator(video), steps, ingredients)

    assert result.success
    assert result.video_url == "https://cdn.test/tiktok-videos/recipe-1/tiktok_1.mp4"
    assert video.submits == []


@pytest.mark.asyncio
async def test_regenerating_a_paid_hero_video_is_free(make_generator, steps, ingredients, ledger, recipe_store):
    await recipe_store.save_hero_video_url("recipe-1", "https://cdn.test/tiktok-videos/recipe-1/tiktok_1.mp4")
    video = FakeVideoClient()

    result = await generate(make_generator(video, clip_size=1_000), steps, ingredients, regenerate=True)

    assert result.success
    assert "/tiktok_regen_" in result.video_url
    assert len(video.submits) == 1
    assert video.submits[0][0].startswith(ALTERNATE_PROMPT)
    assert (await ledger.get_balance("user-1")).bundle_credits == 0
    assert await recipe_store.get_hero_video_url("recipe-1") == result.video_url


@pytest.mark.asyncio
async def test_hero_video_without_credits_is_refused(make_generator, steps, ingredients):
    video = FakeVideoClient()

    with pytest.raises(InsufficientCreditsError):
        await generate(make_generator(video), steps, ingredients)

    assert video.submits == []


@pytest.mark.asyncio
async def test_hero_image_must_be_https(make_generator, steps, ingredients, ledger):
    await ledger.add_credits("user-1", 1)
    video = FakeVideoClient()

    result = await generate(make_generator(video), steps, ingredients, image="http://images.test/hero.jpg")

    assert not result.success
    assert "HTTPS" in result.error
    assert video.submits == []


@pytest.mark.asyncio
async def test_failed_hero_video_keeps_the_credit(make_generator, steps, ingredients, ledger, recipe_store):
    await ledger.add_credits("user-1", 1)
    video = FakeVideoClient(fail_prompts=(MAIN_PROMPT,))

    result = await generate(make_generator(video), steps, ingredients)

    assert not result.success
    assert result.attempts == 1
    assert (await ledger.get_balance("user-1")).bundle_credits == 1
    assert ledger.reservations("user-1") == set()
    assert await recipe_store.get_hero_video_url("recipe-1") is None
    assert metrics.get_snapshot()["counters"]["hero.failed"] == 1


# ── Prompts ──────────────────────────────────────────────────────────────────

def test_technique_visuals_follow_step_order():
    steps = [
        Step(step_number=1, instruction="Chop the onions"),
        Step(step_number=2, instruction="Simmer the sauce"),
        Step(step_number=3, instruction="Stir in the eggs"),
        Step(step_number=4, instruction="Garnish with herbs"),
    ]

    visuals = technique_visuals(steps)

    assert len(visuals) == 3
    assert visuals[0].startswith("precise knife cuts")
    assert visuals[1].startswith("gentle bubbles")


def test_unknown_inputs_fall_back_to_defaults():
    assert technique_visuals([Step(step_number=1, instruction="Wait patiently")]) == [DEFAULT_TECHNIQUE]
    assert color_palette([Ingredient(name="water")]) == DEFAULT_PALETTE
    assert cuisine_style(None) == DEFAULT_CUISINE_STYLE
    assert cuisine_style("Martian") == DEFAULT_CUISINE_STYLE


def test_cuisine_and_palette_are_matched(ingredients):
    assert cuisine_style("middle_eastern").startswith("warm spices")
    assert color_palette(ingredients) == "rich reds, golden yolk, fresh greens"


def test_hero_prompt_mentions_the_moment(steps, ingredients):
    prompt = build_hero_video_prompt("Shakshuka", ingredients, steps, "Middle Eastern",
                                     hero_moment="Bread dipped into a runny yolk")

    assert prompt.startswith("Cinematic close-up food video of Shakshuka.")
    assert "Bread dipped into a runny yolk." in prompt


def test_hero_prompts_are_capped(steps, ingredients):
    title = "Slow-roasted heritage tomato and saffron braised lamb shoulder " * 10

    main = build_hero_video_prompt(title, ingredients, steps)
    alternate = build_alternate_hero_prompt(title, ingredients, steps)

    assert len(main) == HERO_PROMPT_MAX_CHARS
    assert main.endswith("...")
    assert len(alternate) == HERO_PROMPT_MAX_CHARS
    assert alternate.startswith("Overhead cinematic food video of Slow-roasted")
