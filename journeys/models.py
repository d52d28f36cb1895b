"""Pydantic models for the Journeys session engine.

All BaseModel subclasses and enums live here. Methods are limited to
pure, copy-returning helpers on Session.

Sections:
  1. Enums
  2. Catalog models (stories, zones, profile)
  3. Session models (segments, session state)
  4. Settings models (persisted user preferences)
  5. Agent output models (LLM structured output)
  6. Store reporting models
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _uuid() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# 1. Enums
# ---------------------------------------------------------------------------


class SegmentKind(str, Enum):
    NARRATOR = "narrator"
    USER = "user"
    LESSON = "lesson"
    QUESTION = "question"
    ANSWER = "answer"


class MediaKind(str, Enum):
    IMAGE = "image"
    CLIP = "clip"
    AUDIO = "audio"


class NarrationProvider(str, Enum):
    BUILTIN = "builtin"
    ELEVENLABS = "elevenlabs"
    SPEECHIFY = "speechify"


# ---------------------------------------------------------------------------
# 2. Catalog models
# ---------------------------------------------------------------------------


class EnvironmentZone(BaseModel):
    id: str
    name: str
    description: str


class Story(BaseModel):
    id: str
    title: str
    description: str = ""
    initial_prompt: str
    reference: str | None = None
    cover_image: str | None = None
    characters: list[str] = Field(default_factory=list)
    environment_zones: list[EnvironmentZone] = Field(default_factory=list)


class UserProfile(BaseModel):
    name: str
    description: str = ""
    avatar_ref: str = ""


# ---------------------------------------------------------------------------
# 3. Session models
# ---------------------------------------------------------------------------


class Segment(BaseModel):
    segment_id: str = Field(default_factory=_uuid)
    kind: SegmentKind
    text: str
    image_ref: str | None = None
    clip_ref: str | None = None
    is_loading_image: bool = False
    is_loading_clip: bool = False

    def lessons(self) -> list[str]:
        """Lesson strings carried by a lesson segment (JSON list, or legacy plain text)."""
        if self.kind != SegmentKind.LESSON:
            return []
        try:
            parsed = json.loads(self.text)
        except json.JSONDecodeError:
            return [self.text] if self.text.strip() else []
        if isinstance(parsed, list):
            return [str(item) for item in parsed if str(item).strip()]
        return [str(parsed)]


class Session(BaseModel):
    """Authoritative state of one story run, persisted per story id."""

    story_id: str
    segments: list[Segment] = Field(default_factory=list)
    choices: list[str] = Field(default_factory=list)
    story_history: list[str] = Field(default_factory=list)
    user_choice_count: int = 0
    current_environment: str = ""
    clips_generated: int = 0
    is_completed: bool = False
    completion_date: datetime | None = None
    last_updated: datetime = Field(default_factory=_now)

    def find_segment(self, segment_id: str) -> int | None:
        for index, segment in enumerate(self.segments):
            if segment.segment_id == segment_id:
                return index
        return None

    def with_segment(self, segment_id: str, **changes) -> Session:
        """Copy with one segment updated in place; unchanged copy if the id is unknown."""
        index = self.find_segment(segment_id)
        if index is None or not changes:
            return self
        segments = list(self.segments)
        segments[index] = segments[index].model_copy(update=changes)
        return self.model_copy(update={"segments": segments})

    def for_persistence(self) -> Session:
        """Copy with every loading flag cleared."""
        if not any(s.is_loading_image or s.is_loading_clip for s in self.segments):
            return self
        segments = [
            s.model_copy(update={"is_loading_image": False, "is_loading_clip": False})
            for s in self.segments
        ]
        return self.model_copy(update={"segments": segments})


# ---------------------------------------------------------------------------
# 4. Settings models
# ---------------------------------------------------------------------------


class NarrationSettings(BaseModel):
    enabled: bool = False
    provider: NarrationProvider = NarrationProvider.BUILTIN
    voice_id: str = ""
    voice_name: str = "Default"
    speed: float = Field(default=1.0, gt=0, le=4.0)
    autoplay: bool = False


class HostedVoiceSettings(BaseModel):
    voice_id: str
    autoplay: bool = False
    api_key_override: str = ""


class MediaTierSettings(BaseModel):
    clips_enabled: bool = False
    session_limit: int = Field(default=10, ge=0)
    current_session_count: int = Field(default=0, ge=0)
    use_secondary_fallback: bool = True


class PersistedSettings(BaseModel):
    narration: NarrationSettings = Field(default_factory=NarrationSettings)
    elevenlabs: HostedVoiceSettings = Field(
        default_factory=lambda: HostedVoiceSettings(voice_id="fjnwTZkKtQOJaYzGLa6n")
    )
    speechify: HostedVoiceSettings = Field(
        default_factory=lambda: HostedVoiceSettings(voice_id="jesse")
    )
    media_tier: MediaTierSettings = Field(default_factory=MediaTierSettings)


# ---------------------------------------------------------------------------
# 5. Agent output models
# ---------------------------------------------------------------------------


class StoryTurnOutput(BaseModel):
    """Structured output of the narrative agent for one turn."""

    narrative: str = Field(description="The next part of the story, 1-3 paragraphs")
    image_prompt: str = Field(
        default="",
        description="A vivid, photo-realistic visual description of the current scene",
    )
    choices: list[str] = Field(
        default_factory=list,
        description="2-3 short choices for the user; empty when the story is complete",
    )
    lessons: list[str] = Field(
        default_factory=list,
        description="Moral or lesson statements revealed in this part, if any",
    )
    is_complete: bool = Field(
        default=False, description="True when the story has reached its natural end"
    )
    is_important_scene: bool = Field(
        default=False,
        description="True for pivotal, visually dramatic moments worth animating",
    )
    location: str | None = Field(
        default=None, description="Name of the place where this scene happens"
    )


# ---------------------------------------------------------------------------
# 6. Store reporting models
# ---------------------------------------------------------------------------


class StoryLesson(BaseModel):
    story_id: str
    story_title: str = ""
    lesson: str
    completion_date: datetime | None = None
    segment_index: int
    lesson_index: int = 0


class StorageInfo(BaseModel):
    used_bytes: int
    capacity_bytes: int
    percent_used: float
    available_bytes: int
    stories_with_progress: int
