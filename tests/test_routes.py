"""
HTTP tests for the FastAPI routers, with the service mocked out
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from dishreel.errors import InsufficientCreditsError
from dishreel.main import app
from dishreel.pipeline.models import (
    AnalysisResult,
    ConcatResult,
    CreditAccount,
    GenerationJob,
    HeroVideoResult,
    JobStatus,
    ProgressRecord,
    Step,
    StepStatus,
    StepVideo,
)
from dishreel.pipeline.routes import get_service

GENERATE_BODY = {
    "recipe_id": "recipe-1",
    "user_id": "user-1",
    "dish_name": "Shakshuka",
    "base_image_url": "https://images.test/dish.jpg",
    "steps": [{"stepNumber": 1, "instruction": "Chop the onions"}],
}


def progress_record(status=JobStatus.GENERATING):
    job = GenerationJob.new("recipe-1", "user-1", "Shakshuka", "https://images.test/dish.jpg",
                            [Step(step_number=1, instruction="Chop the onions")])
    job.status = status
    job.sequence = 3
    return ProgressRecord.from_job(job)


@pytest.fixture
def service():
    mock = MagicMock()
    for name in (
        "analyze_image", "enrich_steps_for_video", "start_step_videos", "generate_single_step_video",
        "retry_failed_steps", "concatenate_step_videos", "publish_final_video", "get_progress",
        "clear_progress", "get_credits", "add_credits", "generate_step_photos", "generate_hero_video",
    ):
        setattr(mock, name, AsyncMock())
    return mock


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_generate_returns_202_with_progress(client, service):
    service.start_step_videos.return_value = progress_record()

    resp = client.post("/videos/generate", json=GENERATE_BODY)

    assert resp.status_code == 202
    assert resp.json()["status"] == "generating"
    assert resp.json()["total_steps"] == 1
    kwargs = service.start_step_videos.call_args.kwargs
    assert kwargs["steps"][0].instruction == "Chop the onions"
    assert kwargs["enrich"] is False


def test_generate_without_credits_is_402(client, service):
    service.start_step_videos.side_effect = InsufficientCreditsError("No video credits remaining.")

    resp = client.post("/videos/generate", json=GENERATE_BODY)

    assert resp.status_code == 402
    assert resp.json()["detail"] == "No video credits remaining."


def test_generate_rejects_empty_steps(client):
    resp = client.post("/videos/generate", json={**GENERATE_BODY, "steps": []})
    assert resp.status_code == 422


def test_progress_unknown_job_is_404(client, service):
    service.get_progress.return_value = None

    resp = client.get("/videos/recipe-1/progress")

    assert resp.status_code == 404


def test_progress_snapshot(client, service):
    service.get_progress.return_value = progress_record(JobStatus.COMPLETED)

    resp = client.get("/videos/recipe-1/progress")

    assert resp.status_code == 200
    assert resp.json()["sequence"] == 3
    assert resp.json()["status"] == "completed"


def test_single_step(client, service):
    service.generate_single_step_video.return_value = StepVideo(
        step_index=0, step_number=2, status=StepStatus.COMPLETED, video_url="https://cdn.test/step_2.mp4",
    )

    resp = client.post("/videos/step", json={
        "user_id": "user-1", "recipe_id": "recipe-1", "dish_name": "Shakshuka",
        "base_image_url": "https://images.test/dish.jpg", "instruction": "Stir", "step_number": 2,
    })

    assert resp.status_code == 200
    assert resp.json()["video_url"] == "https://cdn.test/step_2.mp4"


def test_retry_unknown_job_is_404(client, service):
    service.retry_failed_steps.side_effect = KeyError("recipe-1")

    resp = client.post("/videos/recipe-1/retry")

    assert resp.status_code == 404


def test_concatenate_without_user_stays_local(client, service):
    service.concatenate_step_videos.return_value = ConcatResult(success=True, local_path="/tmp/final.mp4", step_count=2)

    resp = client.post("/videos/concatenate", json={
        "recipe_id": "recipe-1", "step_video_urls": ["https://a.test/1.mp4", "https://a.test/2.mp4"],
    })

    assert resp.status_code == 200
    assert resp.json()["step_count"] == 2
    service.publish_final_video.assert_not_called()


def test_concatenate_with_user_publishes(client, service):
    service.publish_final_video.return_value = ConcatResult(
        success=True, permanent_url="https://cdn.test/final.mp4", step_count=2,
    )

    resp = client.post("/videos/concatenate", json={
        "recipe_id": "recipe-1", "user_id": "user-1", "step_video_urls": ["https://a.test/1.mp4"],
    })

    assert resp.json()["permanent_url"] == "https://cdn.test/final.mp4"
    service.publish_final_video.assert_awaited_once_with(
        "recipe-1", "user-1", ["https://a.test/1.mp4"], force=False,
    )


def test_analyze_failure_is_still_200(client, service):
    service.analyze_image.return_value = AnalysisResult(success=False, error="Model returned invalid JSON")

    resp = client.post("/recipes/analyze", json={"image_base64": "abcd", "dish_name": "Tiramisu"})

    assert resp.status_code == 200
    assert resp.json()["success"] is False
    service.analyze_image.assert_awaited_once_with("abcd", "Tiramisu", None)


def test_credits(client, service):
    service.get_credits.return_value = CreditAccount(account_id="user-1", bundle_credits=4)
    service.add_credits.return_value = CreditAccount(account_id="user-1", bundle_credits=9)

    assert client.get("/credits/user-1").json()["bundle_credits"] == 4
    resp = client.post("/credits/user-1/add", json={"amount": 5})
    assert resp.json()["bundle_credits"] == 9
    assert client.post("/credits/user-1/add", json={"amount": 0}).status_code == 422
    service.add_credits.assert_awaited_once_with("user-1", 5, 0)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_photo_credits_can_be_added(client, service):
    service.add_credits.return_value = CreditAccount(account_id="user-1", photo_credits=3)

    resp = client.post("/credits/user-1/add", json={"photos": 3})

    assert resp.json()["photo_credits"] == 3
    service.add_credits.assert_awaited_once_with("user-1", 0, 3)


def test_generate_rejects_duplicate_step_numbers(client, service):
    steps = [{"stepNumber": 1, "instruction": "Chop"}, {"stepNumber": 1, "instruction": "Stir"}]

    resp = client.post("/videos/generate", json={**GENERATE_BODY, "steps": steps})

    assert resp.status_code == 422
    service.start_step_videos.assert_not_called()


def test_generate_passes_steps_in_step_number_order(client, service):
    service.start_step_videos.return_value = progress_record()
    steps = [
        {"stepNumber": 3, "instruction": "Serve"},
        {"stepNumber": 1, "instruction": "Chop"},
        {"stepNumber": 2, "instruction": "Stir"},
    ]

    client.post("/videos/generate", json={**GENERATE_BODY, "steps": steps})

    passed = service.start_step_videos.call_args.kwargs["steps"]
    assert [s.step_number for s in passed] == [1, 2, 3]


def test_step_photos_charge_the_requesting_user(client, service):
    service.generate_step_photos.return_value = {1: "https://cdn.test/step_1.png"}

    resp = client.post("/recipes/recipe-1/step-photos", json={
        "user_id": "user-1", "dish_name": "Tiramisu",
        "steps": [{"stepNumber": 1, "instruction": "Whip the mascarpone"}],
    })

    assert resp.status_code == 200
    assert resp.json()["generated"] == 1
    args = service.generate_step_photos.call_args.args
    assert args[0] == "user-1"
    assert args[1] == "Tiramisu"


def test_step_photos_without_photo_credits_is_402(client, service):
    service.generate_step_photos.side_effect = InsufficientCreditsError("You don't have any photo credits.")

    resp = client.post("/recipes/recipe-1/step-photos", json={
        "user_id": "user-1", "dish_name": "Tiramisu",
        "steps": [{"stepNumber": 1, "instruction": "Whip the mascarpone"}],
    })

    assert resp.status_code == 402


def test_step_photos_require_user(client):
    resp = client.post("/recipes/recipe-1/step-photos", json={
        "dish_name": "Tiramisu", "steps": [{"stepNumber": 1, "instruction": "Whip"}],
    })
    assert resp.status_code == 422


HERO_BODY = {
    "user_id": "user-1",
    "hero_image_url": "https://images.test/dish.jpg",
    "title": "Shakshuka",
    "ingredients": [{"name": "eggs", "amount": "4"}],
    "steps": [{"stepNumber": 1, "instruction": "Simmer the tomatoes"}],
    "cuisine": "Middle Eastern",
}


def test_hero_video(client, service):
    service.generate_hero_video.return_value = HeroVideoResult(
        success=True, video_url="https://cdn.test/tiktok.mp4", attempts=1,
    )

    resp = client.post("/videos/recipe-1/tiktok", json=HERO_BODY)

    assert resp.status_code == 200
    assert resp.json()["video_url"] == "https://cdn.test/tiktok.mp4"
    kwargs = service.generate_hero_video.call_args.kwargs
    assert kwargs["recipe_id"] == "recipe-1"
    assert kwargs["cuisine"] == "Middle Eastern"
    assert kwargs["regenerate"] is False


def test_hero_video_without_credits_is_402(client, service):
    service.generate_hero_video.side_effect = InsufficientCreditsError("No video credits remaining.")

    resp = client.post("/videos/recipe-1/tiktok", json=HERO_BODY)

    assert resp.status_code == 402
