"""
Kie.ai Veo client: submit an image-to-video task, then read its status.

Submission goes through `request_with_backoff` (5xx/429/network retried up to
3 times). Status reads are single requests; the TaskPoller decides what a
failed read means.
"""

import logging
from typing import Optional

import httpx

from .backoff import request_with_backoff
from .errors import ConfigurationError, TerminalServiceError
from .pipeline.models import TaskState, TaskStatus

logger = logging.getLogger(__name__)

KIE_API_BASE = "https://api.kie.ai/api/v1"

SUCCESS_STATUSES = {"SUCCESS", "success", "completed", "SUCCEEDED"}
FAILED_STATUSES = {
    "GENERATE_FAILED", "CREATE_TASK_FAILED", "SENSITIVE_WORD_ERROR",
    "fail", "failed", "FAILED", "CANCELLED", "cancelled",
}
RUNNING_STATUSES = {"GENERATING", "RUNNING", "running", "processing"}


def _extract_task_id(body: dict) -> Optional[str]:
    data = body.get("data") or {}
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id") or data.get("id")
    return task_id or body.get("taskId") or body.get("task_id") or body.get("id")


def _json_body(resp: httpx.Response, label: str) -> dict:
    """Decoded JSON object of `resp`; anything else is a terminal service error."""
    try:
        body = resp.json()
    except ValueError as e:
        raise TerminalServiceError(
            f"{label} returned a non-JSON body: {resp.text[:200]!r}", resp.status_code
        ) from e
    if not isinstance(body, dict):
        raise TerminalServiceError(
            f"{label} returned {type(body).__name__} instead of an object", resp.status_code
        )
    return body


def _extract_video_url(record: dict) -> Optional[str]:
    response = record.get("response")
    if isinstance(response, dict):
        urls = response.get("resultUrls") or []
        if urls and isinstance(urls, list):
            return urls[0]

    results = record.get("results") or record.get("works") or []
    if results and isinstance(results, list) and isinstance(results[0], dict):
        first = results[0]
        url = first.get("url") or first.get("videoUrl") or first.get("video_url")
        if url:
            return url

    return record.get("videoUrl") or record.get("url") or record.get("video_url")


def normalize_status(body: dict) -> TaskStatus:
    """
    Map a record-info payload onto TaskStatus.

    Kie.ai reports progress two ways: data.status (SUCCESS / GENERATING /
    GENERATE_FAILED ...) and Veo's data.successFlag (0 running, 1 success,
    2/3 failed). A success without a video URL counts as a failure.
    """
    record = body.get("data") if isinstance(body, dict) else None
    if not isinstance(record, dict):
        record = {}

    raw_status = record.get("status") or ""
    flag = record.get("successFlag")

    if raw_status in SUCCESS_STATUSES or flag == 1:
        url = _extract_video_url(record)
        if not url:
            return TaskStatus(state=TaskState.FAILED, error="Task succeeded but returned no video URL")
        return TaskStatus(state=TaskState.SUCCEEDED, output_url=url)

    if raw_status in FAILED_STATUSES or flag in (2, 3):
        error = (
            record.get("errorMessage") or record.get("failReason")
            or record.get("error") or record.get("msg") or body.get("msg")
            or "Unknown video generation error"
        )
        return TaskStatus(state=TaskState.FAILED, error=str(error))

    if raw_status in RUNNING_STATUSES:
        return TaskStatus(state=TaskState.RUNNING)
    return TaskStatus(state=TaskState.PENDING)


class KieVideoClient:
    """Submit/status calls against the Kie.ai Veo endpoints."""

    def __init__(
        self,
        api_key: str,
        api_base: str = KIE_API_BASE,
        model: str = "veo3_fast",
        aspect_ratio: str = "9:16",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30,
        backoff_options: Optional[dict] = None,
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.aspect_ratio = aspect_ratio
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._backoff_options = backoff_options or {}

    def _headers(self) -> dict:
        if not self.api_key:
            raise ConfigurationError("KIE_API_KEY not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, prompt: str, image_url: str, duration: Optional[float] = None) -> str:
        """Start an image-to-video task and return its task id."""
        payload = {
            "prompt": prompt,
            "model": self.model,
            "aspectRatio": self.aspect_ratio,
            "imageUrls": [image_url],
        }
        if duration:
            payload["duration"] = int(duration)

        url = f"{self.api_base}/veo/generate"
        logger.info(f"Kie.ai submit: model={self.model}, prompt={prompt[:80]}...")
        resp = await request_with_backoff(
            self._client, "POST", url,
            headers=self._headers(), json=payload, label="Kie.ai submit",
            **self._backoff_options,
        )

        body = _json_body(resp, "Kie.ai submit")
        code = body.get("code")
        if code is not None and code != 200:
            raise TerminalServiceError(f"Kie.ai rejected task: {body.get('msg') or body}", code)

        task_id = _extract_task_id(body)
        if not task_id:
            raise TerminalServiceError(f"Kie.ai submit returned no task id: {str(body)[:200]}")
        return str(task_id)

    async def get_status(self, task_id: str) -> TaskStatus:
        resp = await request_with_backoff(
            self._client, "GET", f"{self.api_base}/veo/record-info",
            headers=self._headers(), params={"taskId": task_id},
            max_retries=0, label="Kie.ai status",
        )
        return normalize_status(_json_body(resp, "Kie.ai status"))

    async def aclose(self):
        await self._client.aclose()
