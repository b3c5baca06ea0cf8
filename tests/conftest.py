"""
Shared fixtures: in-memory collaborators and fakes for external services.
"""

import os

import httpx
import pytest

os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("KIE_API_KEY", "test-kie-key")

from dishreel import metrics
from dishreel.errors import AssemblyError, StorageError, TerminalServiceError
from dishreel.pipeline.credits import InMemoryCreditLedger
from dishreel.pipeline.models import Step, TaskState, TaskStatus
from dishreel.pipeline.orchestrator import VideoSynthesisOrchestrator
from dishreel.pipeline.progress import InMemoryJobStore, ProgressTracker
from dishreel.pipeline.recipe_store import InMemoryRecipeStore
from dishreel.pipeline.storage import ArtifactStore
from dishreel.pipeline.task_poller import TaskPoller


async def no_sleep(_seconds):
    return None


class FakeStore(ArtifactStore):
    """Records uploads and returns a CDN-style URL."""

    def __init__(self, fail_keys=()):
        self.puts = []
        self.fail_keys = set(fail_keys)

    async def put(self, key, data, content_type):
        if key in self.fail_keys:
            raise StorageError(f"upload refused for {key}")
        self.puts.append((key, data, content_type))
        return f"https://cdn.test/{key}"


class FakeVideoClient:
    """
    Scripted video service. Each submit gets task id "task-{n}" (n = submit
    count); `fail_prompts` holds substrings of prompts whose task fails.
    """

    def __init__(self, fail_prompts=(), pending_polls=0, never_finish=False, reject_prompts=()):
        self.submits = []
        self.status_calls = []
        self.fail_prompts = tuple(fail_prompts)
        self.reject_prompts = tuple(reject_prompts)
        self.pending_polls = pending_polls
        self.never_finish = never_finish
        self._prompts = {}
        self._polls = {}

    async def submit(self, prompt, image_url, duration=None):
        self.submits.append((prompt, image_url, duration))
        if any(p in prompt for p in self.reject_prompts):
            raise TerminalServiceError("Kie.ai rejected task: prompt blocked", 422)
        task_id = f"task-{len(self.submits)}"
        self._prompts[task_id] = prompt
        return task_id

    async def get_status(self, task_id):
        self.status_calls.append(task_id)
        self._polls[task_id] = self._polls.get(task_id, 0) + 1
        if self.never_finish or self._polls[task_id] <= self.pending_polls:
            return TaskStatus(state=TaskState.RUNNING)
        if any(p in self._prompts[task_id] for p in self.fail_prompts):
            return TaskStatus(state=TaskState.FAILED, error="content policy violation")
        return TaskStatus(state=TaskState.SUCCEEDED, output_url=f"https://tmp.kie.test/{task_id}.mp4")


class FakeTool:
    """Concat tool that records each manifest and writes a stub output."""

    def __init__(self, available=True, fail=False):
        self._available = available
        self.fail = fail
        self.manifests = []

    def available(self):
        return self._available

    async def concat(self, manifest_path, output_path):
        self.manifests.append(manifest_path.read_text())
        if self.fail:
            raise AssemblyError("ffmpeg concat failed: invalid data")
        output_path.write_bytes(b"final")


class FakeDownloader:
    def __init__(self, fail_urls=()):
        self.fail_urls = set(fail_urls)
        self.calls = []

    async def __call__(self, url, dest):
        self.calls.append((url, dest))
        if url in self.fail_urls:
            raise StorageError(f"Download failed for {url}")
        dest.write_bytes(url.encode())


def video_download_transport():
    """Serves b"video:<path>" for every GET, 200 for every HEAD."""

    def handler(request: httpx.Request):
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, content=f"video:{request.url.path}".encode())

    return httpx.MockTransport(handler)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def steps():
    return [
        Step(step_number=1, instruction="Chop the onions finely"),
        Step(step_number=2, instruction="Heat oil in a pan"),
        Step(step_number=3, instruction="Stir in the tomatoes"),
        Step(step_number=4, instruction="Simmer for ten minutes"),
        Step(step_number=5, instruction="Garnish with basil and serve"),
    ]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def tracker():
    return ProgressTracker(InMemoryJobStore())


@pytest.fixture
def ledger():
    return InMemoryCreditLedger()


@pytest.fixture
def recipe_store():
    return InMemoryRecipeStore()


@pytest.fixture
def http_client():
    return httpx.AsyncClient(transport=video_download_transport())


@pytest.fixture
def make_orchestrator(store, tracker, ledger, recipe_store, http_client):
    def _make(video_client, **kwargs):
        kwargs.setdefault("poller", TaskPoller(poll_interval=0, timeout=60, sleep=no_sleep))
        return VideoSynthesisOrchestrator(
            video_client, store, tracker, ledger, recipe_store,
            http_client=http_client, **kwargs,
        )

    return _make
