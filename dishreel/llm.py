"""
Gemini REST client used for recipe analysis (vision) and step enrichment (text).

Calls `models/{model}:generateContent` over httpx with JSON response mode and
returns the parsed JSON payload. One request per call: callers decide whether
a failure is worth another attempt.
"""

import json
import base64
import logging
from typing import Any, Optional

import httpx

from .errors import ConfigurationError, ModelOutputError, ServiceError

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def image_part(data: bytes, mime_type: str = "image/jpeg") -> dict:
    """Build an inlineData part from raw image bytes."""
    return {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}}


def text_part(text: str) -> dict:
    return {"text": text}


def parse_json_response(text: str) -> Any:
    """Parse JSON from a model response, handling markdown code blocks."""
    text = (text or "").strip()
    if not text:
        raise ModelOutputError("Model returned an empty response")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError as e:
                raise ModelOutputError(f"Model returned invalid JSON: {text[:200]}") from e
        raise ModelOutputError(f"Model returned invalid JSON: {text[:200]}")


def extract_text(result: dict) -> str:
    """Pull the first candidate's text out of a generateContent response."""
    try:
        return result["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise ModelOutputError(f"Model response has no text candidate: {str(result)[:200]}") from e


class GeminiClient:
    """Thin async wrapper around the generateContent endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        api_base: str = API_BASE,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self._client = http_client
        self._timeout = timeout

    def _api_url(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    async def _post(self, body: dict) -> httpx.Response:
        params = {"key": self.api_key}
        if self._client is not None:
            return await self._client.post(self._api_url(), params=params, json=body)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._api_url(), params=params, json=body)

    async def generate_json(
        self,
        parts: list[dict],
        system_instruction: Optional[str] = None,
        temperature: float = 0.4,
    ) -> Any:
        """
        Send `parts` and return the decoded JSON answer.

        Raises:
            ConfigurationError: no API key.
            ServiceError:       non-200 response or network failure.
            ModelOutputError:   the answer is not JSON.
        """
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY not set")

        body: dict = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": "application/json",
            },
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        try:
            resp = await self._post(body)
        except httpx.HTTPError as e:
            raise ServiceError(f"Gemini request failed: {e}") from e

        if resp.status_code != 200:
            raise ServiceError(
                f"Gemini API error {resp.status_code}: {resp.text[:500]}", resp.status_code
            )

        text = extract_text(resp.json())
        logger.info(f"Gemini {self.model} responded ({len(text)} chars)")
        return parse_json_response(text)
