"""
Unit tests for job stores and the ProgressTracker
"""

import pytest

from dishreel.pipeline.models import GenerationJob, JobStatus, Step, StepStatus
from dishreel.pipeline.progress import InMemoryJobStore, ProgressTracker, RedisJobStore


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_job(recipe_id="recipe-1", sequence=1, status=JobStatus.GENERATING):
    job = GenerationJob.new(
        recipe_id, "user-1", "Shakshuka", "https://images.test/dish.jpg",
        [Step(step_number=1, instruction="Chop"), Step(step_number=2, instruction="Stir")],
    )
    job.sequence = sequence
    job.status = status
    return job


@pytest.mark.asyncio
async def test_publish_returns_snapshot():
    tracker = ProgressTracker(InMemoryJobStore())
    job = make_job()
    job.step_videos[0].status = StepStatus.COMPLETED
    job.step_videos[0].video_url = "https://cdn.test/step_1.mp4"

    record = await tracker.publish(job)

    assert record.recipe_id == "recipe-1"
    assert record.total_steps == 2
    assert record.completed_steps == 1
    assert record.sequence == 1


@pytest.mark.asyncio
async def test_stale_write_is_discarded():
    """A write with an older sequence never replaces a newer one"""
    tracker = ProgressTracker(InMemoryJobStore())
    await tracker.publish(make_job(sequence=5, status=JobStatus.COMPLETED))

    assert await tracker.publish(make_job(sequence=3)) is None
    assert await tracker.publish(make_job(sequence=5)) is None

    progress = await tracker.get_progress("recipe-1")
    assert progress.sequence == 5
    assert progress.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_stored_job_is_a_copy():
    store = InMemoryJobStore()
    job = make_job()
    await store.put(job)

    job.step_videos[0].status = StepStatus.FAILED
    loaded = await store.get("recipe-1")
    loaded.status = JobStatus.FAILED

    again = await store.get("recipe-1")
    assert again.step_videos[0].status == StepStatus.PENDING
    assert again.status == JobStatus.GENERATING


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = Clock()
    store = InMemoryJobStore(ttl_seconds=60, clock=clock)
    await store.put(make_job())

    clock.now += 61

    assert await store.get("recipe-1") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_expired_entry_accepts_any_sequence():
    clock = Clock()
    store = InMemoryJobStore(ttl_seconds=60, clock=clock)
    await store.put(make_job(sequence=10))
    clock.now += 61

    assert await store.put(make_job(sequence=1))


@pytest.mark.asyncio
async def test_capacity_evicts_finished_jobs_first():
    store = InMemoryJobStore(max_entries=2)
    await store.put(make_job("running-old"))
    await store.put(make_job("done", status=JobStatus.COMPLETED))
    await store.put(make_job("running-new"))

    assert len(store) == 2
    assert await store.get("done") is None
    assert await store.get("running-old") is not None


@pytest.mark.asyncio
async def test_capacity_evicts_oldest_when_none_finished():
    store = InMemoryJobStore(max_entries=2)
    for key in ("a", "b", "c"):
        await store.put(make_job(key))

    assert await store.get("a") is None
    assert await store.get("c") is not None


@pytest.mark.asyncio
async def test_clear_forgets_job():
    tracker = ProgressTracker(InMemoryJobStore())
    await tracker.publish(make_job())

    await tracker.clear("recipe-1")

    assert await tracker.get_progress("recipe-1") is None


@pytest.mark.asyncio
async def test_watch_stops_at_terminal_state():
    tracker = ProgressTracker(InMemoryJobStore())
    await tracker.publish(make_job(sequence=7, status=JobStatus.FAILED))

    records = [r async for r in tracker.watch("recipe-1", interval=0)]

    assert [r.sequence for r in records] == [7]


@pytest.mark.asyncio
async def test_watch_unknown_job_yields_nothing():
    tracker = ProgressTracker(InMemoryJobStore())
    assert [r async for r in tracker.watch("missing", interval=0)] == []


class FakeRedis:
    """Just enough of redis.asyncio for RedisJobStore; eval emulates the CAS script."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def eval(self, script, numkeys, key, value, sequence, ttl):
        current = self.data.get(key)
        if current is not None and GenerationJob.model_validate_json(current).sequence >= sequence:
            return 0
        self.data[key] = value
        self.ttls[key] = ttl
        return 1

    async def delete(self, key):
        self.data.pop(key, None)


@pytest.mark.asyncio
async def test_redis_store_round_trip_and_ttl():
    redis = FakeRedis()
    store = RedisJobStore(redis, ttl_seconds=3600)

    assert await store.put(make_job(sequence=2))
    assert not await store.put(make_job(sequence=1))

    loaded = await store.get("recipe-1")
    assert loaded.sequence == 2
    assert redis.ttls["dishreel:job:recipe-1"] == 3600

    await store.delete("recipe-1")
    assert await store.get("recipe-1") is None
