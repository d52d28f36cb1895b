"""Centralized configuration for the Journeys session engine.

All environment variables, tunable constants, and config file loaders
live here. Runtime user preferences are the separate PersistedSettings
value (see models.py), injected into components by the orchestrator.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

from journeys.models import Story

load_dotenv()

PACKAGE_DIR = Path(__file__).parent


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _list_env(name: str, default: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in os.getenv(name, default).split(",") if item.strip())


# --- Service Identity ---

SERVICE_ID = os.getenv("SERVICE_ID", "journeys")

# --- Narrative ---

NARRATIVE_MODEL = os.getenv("NARRATIVE_MODEL", "google-gla:gemini-2.5-pro")
CLARIFY_MODEL = os.getenv("CLARIFY_MODEL", "google-gla:gemini-2.5-flash")
NARRATIVE_TEMPERATURE = _float_env("NARRATIVE_TEMPERATURE", 0.8)
NARRATIVE_TIMEOUT_SECONDS = _float_env("NARRATIVE_TIMEOUT_SECONDS", 60.0)
CLARIFY_TIMEOUT_SECONDS = _float_env("CLARIFY_TIMEOUT_SECONDS", 30.0)

# --- Images ---

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
PRIMARY_IMAGE_MODEL = os.getenv("PRIMARY_IMAGE_MODEL", "imagen-4.0-generate-001")
IMAGE_ASPECT_RATIO = os.getenv("IMAGE_ASPECT_RATIO", "16:9")
IMAGE_TIMEOUT_SECONDS = _float_env("IMAGE_TIMEOUT_SECONDS", 60.0)

FAL_API_KEY = os.getenv("FAL_API_KEY", "")
FAL_BASE_URL = os.getenv("FAL_BASE_URL", "https://fal.run")
SECONDARY_IMAGE_MODEL = os.getenv("SECONDARY_IMAGE_MODEL", "fal-ai/flux/dev")

PLACEHOLDER_IMAGE_URL = os.getenv(
    "PLACEHOLDER_IMAGE_URL",
    "https://images.unsplash.com/photo-1506905925346-21bda4d32df4?w=1280&h=720&fit=crop",
)

# --- Clips ---

CLIP_MODEL_ID = os.getenv("CLIP_MODEL_ID", "fal-ai/image-to-video")
CLIP_STILL_MODEL = os.getenv("CLIP_STILL_MODEL", "fal-ai/flux/dev")
CLIP_IMAGE_TO_VIDEO_MODELS = _list_env(
    "CLIP_IMAGE_TO_VIDEO_MODELS",
    "fal-ai/kling-video/v1/standard/image-to-video,"
    "fal-ai/minimax-video/image-to-video,"
    "fal-ai/luma-dream-machine/image-to-video",
)
CLIP_TEXT_TO_VIDEO_MODEL = os.getenv("CLIP_TEXT_TO_VIDEO_MODEL", "fal-ai/minimax-video")
CLIP_DURATION_SECONDS = _int_env("CLIP_DURATION_SECONDS", 6)
CLIP_TIMEOUT_SECONDS = _float_env("CLIP_TIMEOUT_SECONDS", 45.0)
MAX_CLIPS_PER_STORY = _int_env("MAX_CLIPS_PER_STORY", 2)

# --- Narration ---

ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")
ELEVENLABS_BASE_URL = os.getenv("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1")
ELEVENLABS_MODEL_ID = os.getenv("ELEVENLABS_MODEL_ID", "eleven_monolingual_v1")
ELEVENLABS_DEFAULT_VOICE_ID = os.getenv("ELEVENLABS_DEFAULT_VOICE_ID", "fjnwTZkKtQOJaYzGLa6n")

SPEECHIFY_API_KEY = os.getenv("SPEECHIFY_API_KEY", "")
SPEECHIFY_BASE_URL = os.getenv("SPEECHIFY_BASE_URL", "https://api.sws.speechify.com/v1")
SPEECHIFY_DEFAULT_VOICE_ID = os.getenv("SPEECHIFY_DEFAULT_VOICE_ID", "jesse")

SPEECH_TIMEOUT_SECONDS = _float_env("SPEECH_TIMEOUT_SECONDS", 60.0)
HOSTED_SPEED_SENTINEL = 1.0

# --- Retry ---

RETRY_MAX_RETRIES = _int_env("RETRY_MAX_RETRIES", 3)
RETRY_INITIAL_DELAY_SECONDS = _float_env("RETRY_INITIAL_DELAY_SECONDS", 1.0)
RETRY_MAX_DELAY_SECONDS = _float_env("RETRY_MAX_DELAY_SECONDS", 30.0)
RETRY_JITTER = _float_env("RETRY_JITTER", 0.25)
MEDIA_RETRY_INITIAL_DELAY_SECONDS = _float_env("MEDIA_RETRY_INITIAL_DELAY_SECONDS", 2.0)

# --- Local Data ---

DATA_DIR = Path(os.getenv("JOURNEYS_DATA_DIR", ".journeys"))
CACHE_DIR = DATA_DIR / "cache"
STORE_DIR = DATA_DIR / "store"

# --- Generation Cache ---

MEDIA_CACHE_MAX_AGE_DAYS = _int_env("MEDIA_CACHE_MAX_AGE_DAYS", 30)
MEDIA_CACHE_MAX_ENTRIES = _int_env("MEDIA_CACHE_MAX_ENTRIES", 50)
AUDIO_CACHE_MAX_AGE_DAYS = _int_env("AUDIO_CACHE_MAX_AGE_DAYS", 7)
AUDIO_CACHE_MAX_ENTRIES = _int_env("AUDIO_CACHE_MAX_ENTRIES", 100)

# --- Session Store ---

STORAGE_CAPACITY_BYTES = _int_env("STORAGE_CAPACITY_BYTES", 5 * 1024 * 1024)
STORAGE_ASSUMED_CAPACITY_BYTES = _int_env("STORAGE_ASSUMED_CAPACITY_BYTES", 5 * 1024 * 1024)
STORAGE_WARN_PERCENT = _float_env("STORAGE_WARN_PERCENT", 80.0)
COMPRESSED_HISTORY_LIMIT = _int_env("COMPRESSED_HISTORY_LIMIT", 50)
COMPLETED_STORY_RETAIN = _int_env("COMPLETED_STORY_RETAIN", 20)
INCOMPLETE_STORY_RETAIN = _int_env("INCOMPLETE_STORY_RETAIN", 30)

# --- Story Catalog ---

STORY_CATALOG_PATH = Path(
    os.getenv("STORY_CATALOG_PATH", str(PACKAGE_DIR / "catalog" / "stories.yml"))
)


# --- Config Loaders ---


def load_story_catalog(path: Path | None = None) -> list[Story]:
    """Load the story catalog from YAML.

    Raises FileNotFoundError if the file is missing; entries that fail
    validation propagate pydantic's ValidationError.
    """
    catalog_path = path or STORY_CATALOG_PATH
    with open(catalog_path) as f:
        data = yaml.safe_load(f) or {}
    return [Story.model_validate(entry) for entry in data.get("stories", [])]


def get_story(story_id: str, path: Path | None = None) -> Story | None:
    for story in load_story_catalog(path):
        if story.id == story_id:
            return story
    return None


def story_titles(path: Path | None = None) -> dict[str, str]:
    return {story.id: story.title for story in load_story_catalog(path)}
