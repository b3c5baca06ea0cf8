"""
Durable artifact storage for the pipeline.

All step videos are stored under:
  recipe-videos/{user_id}/{recipe_id}/step_{n}.mp4
and generated stills under:
  generated/{timestamp}-{suffix}.png

Two backends share the ArtifactStore interface: Cloudflare R2 through the S3
API (boto3) and Supabase Storage. Neither assumes overwrite semantics, so
keys carry a version suffix when an artifact is regenerated.
"""

import time
import uuid
import asyncio
import logging
from typing import Optional

import httpx

from ..config import Settings
from ..errors import ConfigurationError, StorageError

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────

def normalize_key(key: str) -> str:
    return key.lstrip("/")


def step_video_key(user_id: str, recipe_id: str, step_number: int, attempt: int = 1) -> str:
    """Key for a step video; regenerations get a _v{attempt} suffix."""
    suffix = "" if attempt <= 1 else f"_v{attempt}"
    return f"recipe-videos/{user_id}/{recipe_id}/step_{step_number}{suffix}.mp4"


def final_video_key(user_id: str, recipe_id: str, timestamp: Optional[int] = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    return f"recipe-videos/{user_id}/{recipe_id}/final_{ts}.mp4"


def hero_video_key(recipe_id: str, regenerated: bool = False, timestamp: Optional[int] = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    prefix = "tiktok_regen" if regenerated else "tiktok"
    return f"tiktok-videos/{recipe_id}/{prefix}_{ts}.mp4"


def generated_image_key(timestamp: Optional[int] = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time() * 1000)
    return f"generated/{ts}-{uuid.uuid4().hex[:8]}.png"


async def download_bytes(url: str, http_client: Optional[httpx.AsyncClient] = None,
                         timeout: float = 120) -> bytes:
    """Download a public URL and return raw bytes."""
    try:
        if http_client is not None:
            resp = await http_client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(url, follow_redirects=True)
        resp.raise_for_status()
        return resp.content
    except httpx.HTTPError as e:
        raise StorageError(f"Download failed for {url[:120]}: {e}") from e


# ── Stores ───────────────────────────────────────────────────────────────────

class ArtifactStore:
    """put(key, data, content_type) -> permanent public URL."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError


class R2ArtifactStore(ArtifactStore):
    def __init__(self, account_id: str, access_key_id: str, secret_access_key: str,
                 bucket: str, public_url: str, client=None):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self._s3 = client
        self._credentials = (account_id, access_key_id, secret_access_key)

    def _client(self):
        if self._s3 is None:
            import boto3
            from botocore.config import Config as BotoConfig

            account_id, access_key_id, secret_access_key = self._credentials
            if not account_id or not access_key_id or not secret_access_key:
                raise ConfigurationError("R2_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY must be set")
            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        key = normalize_key(key)
        s3 = self._client()
        try:
            await asyncio.to_thread(
                s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise StorageError(f"R2 upload failed for {key}: {e}") from e

        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url


class SupabaseArtifactStore(ArtifactStore):
    def __init__(self, url: str, service_key: str, bucket: str = "generated-files", client=None):
        self.bucket = bucket
        self._client = client
        self._url = url
        self._key = service_key

    def _get_client(self):
        if self._client is None:
            from supabase import create_client

            if not self._url or not self._key:
                raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self._url, self._key)
        return self._client

    def _upload(self, key: str, data: bytes, content_type: str) -> str:
        bucket = self._get_client().storage.from_(self.bucket)
        bucket.upload(
            path=key,
            file=data,
            file_options={"content-type": content_type, "x-upsert": "false"},
        )
        return bucket.get_public_url(key)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        key = normalize_key(key)
        try:
            public_url = await asyncio.to_thread(self._upload, key, data, content_type)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Supabase upload failed for key={key}: {e}")
            raise StorageError(f"Supabase upload failed for {key}: {e}") from e

        public_url = public_url.rstrip("?")
        logger.info(f"Uploaded to Supabase storage: {public_url}")
        return public_url


def build_artifact_store(settings: Settings) -> ArtifactStore:
    if settings.storage_backend == "r2":
        return R2ArtifactStore(
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket=settings.r2_bucket_name,
            public_url=settings.r2_public_url,
        )
    return SupabaseArtifactStore(
        url=settings.supabase_url,
        service_key=settings.supabase_service_role_key,
        bucket=settings.supabase_bucket,
    )
