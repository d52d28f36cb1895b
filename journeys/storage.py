"""Quota-aware persistence for sessions, settings and the user profile.

All sessions live as one JSON document under PROGRESS_KEY in a small
key-value backend with a byte capacity. Saving degrades instead of
failing: verbose encoding, then the compressed encoding, then cleanup of
old segments followed by one more compressed write.

Persisted progress is versioned:
  - legacy (unversioned): {story_id: session}, verbose or compressed
  - v1: {"schema_version": 1, "sessions": {story_id: session}}
  - v2: {"v": 2, "p": {story_id: compressed session}}
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Protocol

from pydantic import BaseModel, ValidationError

from journeys.config import (
    COMPLETED_STORY_RETAIN,
    COMPRESSED_HISTORY_LIMIT,
    INCOMPLETE_STORY_RETAIN,
    STORAGE_ASSUMED_CAPACITY_BYTES,
    STORAGE_CAPACITY_BYTES,
    STORAGE_WARN_PERCENT,
)
from journeys.errors import StorageCapacityError
from journeys.models import (
    HostedVoiceSettings,
    MediaTierSettings,
    NarrationSettings,
    PersistedSettings,
    Segment,
    SegmentKind,
    Session,
    StorageInfo,
    StoryLesson,
    UserProfile,
)

logger = logging.getLogger(__name__)

PROFILE_KEY = "journeys-profile"
PROGRESS_KEY = "journeys-progress"
SETTINGS_KEY = "journeys-settings"

VERBOSE_SCHEMA_VERSION = 1
COMPRESSED_SCHEMA_VERSION = 2


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryKeyValueStore:
    """In-memory backend; sizes are counted in characters of key plus value."""

    def __init__(self, capacity_bytes: int | None = None) -> None:
        self.capacity_bytes = capacity_bytes
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.capacity_bytes is not None:
            used = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
            if used + len(key) + len(value) > self.capacity_bytes:
                raise StorageCapacityError(f"writing {key} would exceed {self.capacity_bytes} bytes")
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileKeyValueStore:
    """One JSON file per key under ``root``, bounded by a total byte capacity."""

    def __init__(self, root: Path, capacity_bytes: int = STORAGE_CAPACITY_BYTES) -> None:
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        encoded = value.encode("utf-8")
        target = self._path(key)
        used = sum(p.stat().st_size for p in self.root.glob("*.json") if p != target) if self.root.exists() else 0
        if used + len(encoded) > self.capacity_bytes:
            raise StorageCapacityError(f"writing {key} would exceed {self.capacity_bytes} bytes")
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".tmp")
        tmp.write_bytes(encoded)
        os.replace(tmp, target)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))


# ---------------------------------------------------------------------------
# Progress encodings
# ---------------------------------------------------------------------------


def encode_verbose(sessions: Mapping[str, Session]) -> str:
    return json.dumps(
        {
            "schema_version": VERBOSE_SCHEMA_VERSION,
            "sessions": {sid: s.model_dump(mode="json") for sid, s in sessions.items()},
        },
        separators=(",", ":"),
    )


def _compress_session(session: Session) -> dict:
    compact: dict = {
        "s": [_compress_segment(seg) for seg in session.segments],
        "c": session.choices,
        "h": session.story_history[-COMPRESSED_HISTORY_LIMIT:],
        "u": session.user_choice_count,
        "comp": session.is_completed,
        "lu": session.last_updated.isoformat(),
    }
    if session.current_environment:
        compact["env"] = session.current_environment
    if session.clips_generated:
        compact["g"] = session.clips_generated
    if session.completion_date:
        compact["cd"] = session.completion_date.isoformat()
    return compact


def _compress_segment(segment: Segment) -> dict:
    compact = {"t": segment.kind.value, "txt": segment.text}
    if segment.image_ref:
        compact["img"] = segment.image_ref
    if segment.clip_ref:
        compact["clip"] = segment.clip_ref
    return compact


def encode_compressed(sessions: Mapping[str, Session]) -> str:
    return json.dumps(
        {
            "v": COMPRESSED_SCHEMA_VERSION,
            "p": {sid: _compress_session(s) for sid, s in sessions.items()},
        },
        separators=(",", ":"),
    )


def _expand_session(story_id: str, compact: dict) -> Session:
    segments = [
        Segment(kind=SegmentKind(raw["t"]), text=raw["txt"], image_ref=raw.get("img"), clip_ref=raw.get("clip"))
        for raw in compact.get("s", [])
    ]
    return Session(
        story_id=story_id,
        segments=segments,
        choices=compact.get("c", []),
        story_history=compact.get("h", []),
        user_choice_count=compact.get("u", 0),
        current_environment=compact.get("env", ""),
        clips_generated=compact.get("g", 0),
        is_completed=compact.get("comp", False),
        completion_date=compact.get("cd"),
        last_updated=compact.get("lu") or _now(),
    )


def _decode_session(story_id: str, raw: dict) -> Session:
    if "s" in raw and "segments" not in raw:
        return _expand_session(story_id, raw)
    return Session.model_validate({"story_id": story_id, **raw})


def _migrate_lessons(session: Session) -> Session:
    changed = False
    segments = []
    for segment in session.segments:
        if segment.kind == SegmentKind.LESSON:
            try:
                is_list = isinstance(json.loads(segment.text), list)
            except json.JSONDecodeError:
                is_list = False
            if not is_list:
                segment = segment.model_copy(update={"text": json.dumps([segment.text])})
                changed = True
        segments.append(segment)
    return session.model_copy(update={"segments": segments}) if changed else session


def migrate_progress(data: dict) -> dict[str, Session]:
    """Decode any known progress layout into sessions of the current schema."""
    if data.get("v") == COMPRESSED_SCHEMA_VERSION and isinstance(data.get("p"), dict):
        raw_sessions = data["p"]
    elif data.get("schema_version") == VERBOSE_SCHEMA_VERSION and isinstance(data.get("sessions"), dict):
        raw_sessions = data["sessions"]
    else:
        raw_sessions = data
        logger.info("progress_migrated", extra={"from_schema": "legacy", "stories": len(data)})

    sessions: dict[str, Session] = {}
    for story_id, raw in raw_sessions.items():
        if not isinstance(raw, dict):
            continue
        raw = dict(raw)
        raw.pop("story_id", None)
        raw.pop("storyId", None)
        try:
            sessions[story_id] = _migrate_lessons(_decode_session(story_id, raw))
        except (ValidationError, KeyError, ValueError) as exc:
            logger.warning("progress_load_failed", extra={"story_id": story_id, "error": str(exc)})
    return sessions


def cleanup_sessions(sessions: Mapping[str, Session]) -> dict[str, Session]:
    """Trim segment and history tails; completed stories also drop pending choices."""
    cleaned = {}
    for story_id, session in sessions.items():
        if session.is_completed:
            cleaned[story_id] = session.model_copy(update={
                "segments": session.segments[-COMPLETED_STORY_RETAIN:],
                "story_history": session.story_history[-COMPLETED_STORY_RETAIN:],
                "choices": [],
            })
        else:
            cleaned[story_id] = session.model_copy(update={
                "segments": session.segments[-INCOMPLETE_STORY_RETAIN:],
                "story_history": session.story_history[-INCOMPLETE_STORY_RETAIN:],
            })
    return cleaned


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    def __init__(self, kv: KeyValueStore, assumed_capacity_bytes: int = STORAGE_ASSUMED_CAPACITY_BYTES) -> None:
        self._kv = kv
        self._assumed_capacity = assumed_capacity_bytes

    # --- Progress ---

    def load_all(self) -> dict[str, Session]:
        raw = self._kv.get(PROGRESS_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("progress_load_failed", extra={"error": str(exc)})
            return {}
        if not isinstance(data, dict):
            return {}
        return migrate_progress(data)

    def load(self, story_id: str) -> Session | None:
        return self.load_all().get(story_id)

    def save(self, story_id: str, session: Session) -> bool:
        """Persist one session; returns False only when every degradation tier failed."""
        try:
            sessions = self.load_all()
            sessions[story_id] = session.for_persistence()
            return self._write_sessions(sessions)
        except OSError as exc:
            logger.error("progress_save_failed", extra={"story_id": story_id, "error": str(exc)})
            return False

    def _write_sessions(self, sessions: dict[str, Session]) -> bool:
        try:
            self._kv.set(PROGRESS_KEY, encode_verbose(sessions))
            logger.debug("progress_saved", extra={"stories": len(sessions)})
            return True
        except StorageCapacityError as exc:
            logger.warning("storage_quota_exceeded", extra={"encoding": "verbose", "reason": str(exc)})

        try:
            self._kv.set(PROGRESS_KEY, encode_compressed(sessions))
            logger.info("progress_saved_compressed", extra={"stories": len(sessions)})
            return True
        except StorageCapacityError as exc:
            logger.warning("storage_cleanup", extra={"reason": str(exc)})

        try:
            self._kv.set(PROGRESS_KEY, encode_compressed(cleanup_sessions(sessions)))
            logger.info("progress_saved_after_cleanup", extra={"stories": len(sessions)})
            return True
        except StorageCapacityError as exc:
            logger.error("progress_save_failed", extra={"error": str(exc)})
            return False

    def delete(self, story_id: str) -> None:
        sessions = self.load_all()
        if sessions.pop(story_id, None) is None:
            return
        if sessions:
            self._write_sessions(sessions)
        else:
            self._kv.delete(PROGRESS_KEY)

    def delete_all(self) -> None:
        self._kv.delete(PROGRESS_KEY)

    def has_progress(self, story_id: str) -> bool:
        session = self.load(story_id)
        return session is not None and bool(session.segments)

    def is_completed(self, story_id: str) -> bool:
        session = self.load(story_id)
        return session is not None and session.is_completed

    # --- Quota ---

    def check_usage(self) -> int:
        """Approximate bytes used across every key."""
        total = 0
        for key in self._kv.keys():
            value = self._kv.get(key) or ""
            total += len(key) + len(value.encode("utf-8"))
        return total

    def is_near_quota(self) -> bool:
        return self.check_usage() / self._assumed_capacity * 100 > STORAGE_WARN_PERCENT

    def force_cleanup(self) -> bool:
        sessions = self.load_all()
        if not sessions:
            return True
        before = self.check_usage()
        try:
            self._kv.set(PROGRESS_KEY, encode_compressed(cleanup_sessions(sessions)))
        except StorageCapacityError as exc:
            logger.error("progress_save_failed", extra={"error": str(exc), "phase": "cleanup"})
            return False
        logger.info("storage_cleanup", extra={"bytes_before": before, "bytes_after": self.check_usage()})
        return True

    def storage_info(self) -> StorageInfo:
        used = self.check_usage()
        return StorageInfo(
            used_bytes=used,
            capacity_bytes=self._assumed_capacity,
            percent_used=round(used / self._assumed_capacity * 100, 2),
            available_bytes=max(self._assumed_capacity - used, 0),
            stories_with_progress=len(self.load_all()),
        )

    # --- Settings ---

    def load_settings(self) -> PersistedSettings:
        """Stored settings merged section by section over the defaults."""
        defaults = PersistedSettings()
        raw = self._kv.get(SETTINGS_KEY)
        if not raw:
            return defaults
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("settings_load_failed", extra={"error": str(exc)})
            return defaults
        if not isinstance(data, dict):
            return defaults

        merged = {}
        for section, default_value in defaults:
            stored = data.get(section)
            if not isinstance(stored, dict):
                merged[section] = default_value
                continue
            try:
                merged[section] = type(default_value).model_validate(
                    {**default_value.model_dump(), **stored}
                )
            except ValidationError as exc:
                logger.warning("settings_load_failed", extra={"section": section, "error": str(exc)})
                merged[section] = default_value
        return PersistedSettings(**merged)

    def _write_settings(self, settings: PersistedSettings) -> PersistedSettings:
        """Persist ``settings``; a full backend leaves the stored copy stale but never raises."""
        try:
            self._kv.set(SETTINGS_KEY, settings.model_dump_json())
        except StorageCapacityError as exc:
            logger.warning("settings_save_failed", extra={"error": str(exc)})
        return settings

    def _replace_section(self, section: str, value: BaseModel) -> PersistedSettings:
        settings = self.load_settings().model_copy(update={section: value})
        return self._write_settings(settings)

    def set_narration_settings(self, narration: NarrationSettings) -> PersistedSettings:
        return self._replace_section("narration", narration)

    def set_elevenlabs_settings(self, elevenlabs: HostedVoiceSettings) -> PersistedSettings:
        return self._replace_section("elevenlabs", elevenlabs)

    def set_speechify_settings(self, speechify: HostedVoiceSettings) -> PersistedSettings:
        return self._replace_section("speechify", speechify)

    def set_media_tier_settings(self, media_tier: MediaTierSettings) -> PersistedSettings:
        return self._replace_section("media_tier", media_tier)

    def record_clip_usage(self, media_tier: MediaTierSettings | None = None) -> PersistedSettings:
        """Count one generated clip against ``media_tier``, or the stored tier when omitted."""
        tier = media_tier or self.load_settings().media_tier
        return self.set_media_tier_settings(
            tier.model_copy(update={"current_session_count": tier.current_session_count + 1})
        )

    def reset_clip_usage(self) -> PersistedSettings:
        tier = self.load_settings().media_tier
        return self.set_media_tier_settings(tier.model_copy(update={"current_session_count": 0}))

    # --- Profile ---

    def save_profile(self, profile: UserProfile) -> None:
        """Raises StorageCapacityError when the backend is full."""
        self._kv.set(PROFILE_KEY, json.dumps({
            "profile": profile.model_dump(mode="json"),
            "saved_at": _now().isoformat(),
        }))

    def load_profile(self) -> UserProfile | None:
        raw = self._kv.get(PROFILE_KEY)
        if not raw:
            return None
        try:
            return UserProfile.model_validate(json.loads(raw)["profile"])
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError):
            return None

    def delete_profile(self) -> None:
        self._kv.delete(PROFILE_KEY)

    # --- Lessons ---

    def collect_lessons(self, titles: Mapping[str, str] | None = None) -> list[StoryLesson]:
        """Every lesson from completed stories, newest completion first."""
        titles = titles or {}
        lessons: list[StoryLesson] = []
        for story_id, session in self.load_all().items():
            if not session.is_completed:
                continue
            for segment_index, segment in enumerate(session.segments):
                for lesson_index, text in enumerate(segment.lessons()):
                    lessons.append(StoryLesson(
                        story_id=story_id,
                        story_title=titles.get(story_id, story_id),
                        lesson=text,
                        completion_date=session.completion_date,
                        segment_index=segment_index,
                        lesson_index=lesson_index,
                    ))
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        lessons.sort(key=lambda lesson: lesson.completion_date or epoch, reverse=True)
        return lessons

    # --- Backup ---

    def export_data(self) -> str:
        profile = self.load_profile()
        return json.dumps({
            "profile": profile.model_dump(mode="json") if profile else None,
            "progress": json.loads(encode_verbose(self.load_all())),
            "settings": self.load_settings().model_dump(mode="json"),
            "export_date": _now().isoformat(),
        }, indent=2)

    def import_data(self, payload: str) -> bool:
        try:
            data = json.loads(payload)
            profile = UserProfile.model_validate(data["profile"]) if data.get("profile") else None
            sessions = migrate_progress(data["progress"]) if data.get("progress") else {}
            settings = PersistedSettings.model_validate(data["settings"]) if data.get("settings") else None
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as exc:
            logger.error("data_import_failed", extra={"error": str(exc)})
            return False

        try:
            if profile:
                self.save_profile(profile)
            if sessions and not self._write_sessions(sessions):
                return False
            if settings:
                self._write_settings(settings)
        except StorageCapacityError as exc:
            logger.error("data_import_failed", extra={"error": str(exc)})
            return False
        return True

    def clear_all_data(self) -> None:
        """Remove profile and progress; settings survive."""
        self.delete_profile()
        self.delete_all()
