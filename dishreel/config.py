"""
Centralized configuration for the dishreel service.

Values are resolved once from the environment (and a local .env file, if
present) into a `Settings` dataclass. Everything reads configuration through
`get_settings()`; tests build their own `Settings` and pass it in.

Missing credentials are not an error here: the component that needs a key
raises `ConfigurationError` when it is actually used.
"""

import os
import tempfile
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


@dataclass
class Settings:
    # ── Models ───────────────────────────────────────────────────────────
    gemini_api_key: str = ""
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    vision_model: str = "gemini-2.0-flash"
    text_model: str = "gemini-2.0-flash"

    # ── Video generation (Kie.ai) ────────────────────────────────────────
    kie_api_key: str = ""
    kie_api_base: str = "https://api.kie.ai/api/v1"
    video_model: str = "veo3_fast"
    video_aspect_ratio: str = "9:16"
    poll_interval: float = 5.0
    poll_timeout: float = 300.0

    # ── Still images ─────────────────────────────────────────────────────
    openai_api_key: str = ""
    openai_api_base: str = "https://api.openai.com/v1"
    image_model: str = "dall-e-3"

    # ── Storage ──────────────────────────────────────────────────────────
    storage_backend: str = "supabase"  # supabase | r2
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_bucket: str = "generated-files"
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "assets"
    r2_public_url: str = ""

    # ── Job state / credits ──────────────────────────────────────────────
    redis_url: str = ""
    job_ttl_seconds: int = 24 * 3600
    job_store_max_entries: int = 500
    data_backend: str = "memory"  # memory | supabase (credits + recipe cache)
    monthly_video_limit: int = 50

    # ── Assembly ─────────────────────────────────────────────────────────
    video_cache_dir: str = ""
    ffmpeg_binary: str = "ffmpeg"

    def __post_init__(self):
        if not self.video_cache_dir:
            self.video_cache_dir = os.path.join(tempfile.gettempdir(), "dishreel")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build the process-wide Settings from the environment (cached)."""
    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", ""),
        vision_model=os.getenv("GEMINI_VISION_MODEL", "gemini-2.0-flash"),
        text_model=os.getenv("GEMINI_TEXT_MODEL", "gemini-2.0-flash"),
        kie_api_key=os.getenv("KIE_API_KEY", ""),
        kie_api_base=os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1"),
        video_model=os.getenv("VIDEO_MODEL", "veo3_fast"),
        video_aspect_ratio=os.getenv("VIDEO_ASPECT_RATIO", "9:16"),
        poll_interval=_env_float("VIDEO_POLL_INTERVAL", 5.0),
        poll_timeout=_env_float("VIDEO_POLL_TIMEOUT", 300.0),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        image_model=os.getenv("IMAGE_MODEL", "dall-e-3"),
        storage_backend=os.getenv("STORAGE_BACKEND", "supabase").lower(),
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        supabase_bucket=os.getenv("SUPABASE_BUCKET", "generated-files"),
        r2_account_id=os.getenv("R2_ACCOUNT_ID", ""),
        r2_access_key_id=os.getenv("R2_ACCESS_KEY_ID", ""),
        r2_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY", ""),
        r2_bucket_name=os.getenv("R2_BUCKET_NAME", "assets"),
        r2_public_url=os.getenv("R2_PUBLIC_URL", ""),
        redis_url=os.getenv("REDIS_URL", ""),
        job_ttl_seconds=_env_int("JOB_TTL_SECONDS", 24 * 3600),
        job_store_max_entries=_env_int("JOB_STORE_MAX_ENTRIES", 500),
        data_backend=os.getenv("DATA_BACKEND", "memory").lower(),
        monthly_video_limit=_env_int("MONTHLY_VIDEO_LIMIT", 50),
        video_cache_dir=os.getenv("VIDEO_CACHE_DIR", ""),
        ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
    )
