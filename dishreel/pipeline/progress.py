"""
Job state storage and progress snapshots.

A GenerationJob is stored whole under its recipe id. Every write carries the
job's monotonic `sequence`; a store keeps only the newest one, so a late write
from a slower coroutine can never roll progress backwards.

Backends:
  InMemoryJobStore  per-key asyncio locks, TTL and a capacity bound
  RedisJobStore     JSON values, compare-and-set in a Lua script, EXPIRE TTL
"""

import time
import asyncio
import logging
from collections import OrderedDict, defaultdict
from typing import AsyncIterator, Callable, Optional

from .models import GenerationJob, JobStatus, ProgressRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600
DEFAULT_MAX_ENTRIES = 500

TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobStore:
    """Keyed store of GenerationJob snapshots."""

    async def get(self, key: str) -> Optional[GenerationJob]:
        raise NotImplementedError

    async def put(self, job: GenerationJob) -> bool:
        """Store `job` unless a newer sequence is already stored. Returns False if stale."""
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._jobs: "OrderedDict[str, tuple[float, GenerationJob]]" = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __len__(self) -> int:
        return len(self._jobs)

    def _expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self.ttl_seconds

    def _drop(self, key: str):
        self._jobs.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def _evict(self):
        for key in [k for k, (stored_at, _) in self._jobs.items() if self._expired(stored_at)]:
            logger.info(f"Job store: expired {key}")
            self._drop(key)

        while len(self._jobs) > self.max_entries:
            # oldest finished job first, oldest of any kind otherwise
            victim = next(
                (k for k, (_, job) in self._jobs.items() if job.status in TERMINAL_JOB_STATUSES),
                next(iter(self._jobs)),
            )
            logger.info(f"Job store: evicted {victim} (capacity {self.max_entries})")
            self._drop(victim)

    async def get(self, key: str) -> Optional[GenerationJob]:
        entry = self._jobs.get(key)
        if entry is None:
            return None
        stored_at, job = entry
        if self._expired(stored_at):
            self._drop(key)
            return None
        return job.model_copy(deep=True)

    async def put(self, job: GenerationJob) -> bool:
        async with self._locks[job.recipe_id]:
            entry = self._jobs.get(job.recipe_id)
            if entry is not None and not self._expired(entry[0]) and entry[1].sequence >= job.sequence:
                return False
            self._jobs[job.recipe_id] = (self._clock(), job.model_copy(deep=True))
            self._jobs.move_to_end(job.recipe_id)
        self._evict()
        return True

    async def delete(self, key: str) -> None:
        self._drop(key)


_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
  local ok, decoded = pcall(cjson.decode, current)
  if ok and decoded['sequence'] and tonumber(decoded['sequence']) >= tonumber(ARGV[2]) then
    return 0
  end
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
return 1
"""


class RedisJobStore(JobStore):
    KEY_PREFIX = "dishreel:job:"

    def __init__(self, redis_client, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._redis = redis_client
        self.ttl_seconds = int(ttl_seconds)

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "RedisJobStore":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url, decode_responses=True), ttl_seconds)

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def get(self, key: str) -> Optional[GenerationJob]:
        raw = await self._redis.get(self._key(key))
        if not raw:
            return None
        return GenerationJob.model_validate_json(raw)

    async def put(self, job: GenerationJob) -> bool:
        result = await self._redis.eval(
            _CAS_SCRIPT, 1, self._key(job.recipe_id),
            job.model_dump_json(), job.sequence, self.ttl_seconds,
        )
        return bool(int(result))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class ProgressTracker:
    """Publishes job snapshots and serves ProgressRecords to readers."""

    def __init__(self, store: JobStore):
        self._store = store

    async def publish(self, job: GenerationJob) -> Optional[ProgressRecord]:
        accepted = await self._store.put(job)
        if not accepted:
            logger.debug(f"[{job.recipe_id}] discarded stale progress seq={job.sequence}")
            return None
        return ProgressRecord.from_job(job)

    async def get_job(self, recipe_id: str) -> Optional[GenerationJob]:
        return await self._store.get(recipe_id)

    async def get_progress(self, recipe_id: str) -> Optional[ProgressRecord]:
        job = await self._store.get(recipe_id)
        return ProgressRecord.from_job(job) if job else None

    async def clear(self, recipe_id: str) -> None:
        await self._store.delete(recipe_id)
        logger.info(f"[{recipe_id}] progress cleared")

    async def watch(
        self,
        recipe_id: str,
        interval: float = 1.0,
        timeout: float = 900.0,
    ) -> AsyncIterator[ProgressRecord]:
        """Yield each new record until the job finishes, disappears or `timeout` passes."""
        deadline = time.monotonic() + timeout
        last_sequence = -1
        while True:
            record = await self.get_progress(recipe_id)
            if record is None:
                return
            if record.sequence != last_sequence:
                last_sequence = record.sequence
                yield record
            if record.status in TERMINAL_JOB_STATUSES or time.monotonic() >= deadline:
                return
            await asyncio.sleep(interval)
