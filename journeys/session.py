"""Session orchestrator: the turn loop of one story journey.

A turn awaits the narrative client, appends the new segments, surfaces the
choices, persists, and then launches media resolution as a detached task
that patches the narrator segment by id. At most one turn runs at a time;
a second request while one is pending is ignored.

Every state change goes through ``_update`` with a pure transform on a
Session copy, and is persisted right after.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Coroutine

from journeys.cache import FileBlobStore, GenerationCache
from journeys.config import CACHE_DIR, PLACEHOLDER_IMAGE_URL, STORE_DIR
from journeys.media import MediaOrchestrator, MediaRequest, MediaUpdate
from journeys.models import (
    EnvironmentZone,
    PersistedSettings,
    Segment,
    SegmentKind,
    Session,
    Story,
    UserProfile,
)
from journeys.narration import AudioOutput, NarrationController, SpeechEngine
from journeys.narrative import (
    NarrativeClient,
    NarrativeResult,
    build_choice_entry,
    build_opening_prompt,
    build_turn_prompt,
)
from journeys.providers import (
    ElevenLabsProvider,
    FalClipProvider,
    FalImageProvider,
    GeminiImageProvider,
    SpeechifyProvider,
)
from journeys.storage import FileKeyValueStore, SessionStore, cleanup_sessions

logger = logging.getLogger(__name__)

STORAGE_TRIMMED_ADVISORY = "Storage was nearly full. Older story segments were trimmed."
STORAGE_FULL_ADVISORY = "Storage is nearly full. New progress may not be saved."


def _now() -> datetime:
    return datetime.now(timezone.utc)


def match_environment(location: str | None, zones: list[EnvironmentZone]) -> str | None:
    """Zone description for a location hint, or the hint itself when no zone matches."""
    if not location:
        return None
    hint = location.strip().lower()
    for zone in zones:
        zone_id, zone_name = zone.id.lower(), zone.name.lower()
        if zone_id in hint or hint in zone_id or zone_name in hint or hint in zone_name:
            return zone.description
    return location.strip()


def describe_characters(profile: UserProfile, story: Story, text: str) -> str:
    """Visual anchors for the user's character and any story character mentioned in ``text``."""
    parts = [f'{profile.name} ({profile.description})' if profile.description else profile.name]
    lowered = text.lower()
    parts.extend(name for name in story.characters if name.lower() in lowered)
    return ", ".join(parts)


def progress_percent(session: Session | None) -> int:
    """Estimated story progress from the number of choices made."""
    if session is None:
        return 0
    if session.is_completed:
        return 100
    count = session.user_choice_count
    if count <= 3:
        return round(count / 3 * 30)
    if count <= 8:
        return round(30 + (count - 3) / 5 * 40)
    if count <= 12:
        return round(70 + (count - 8) / 4 * 25)
    return 95


class SessionOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        narrative: NarrativeClient,
        media: MediaOrchestrator,
        narration: NarrationController | None = None,
        settings: PersistedSettings | None = None,
        on_change: Callable[[Session], None] | None = None,
        on_advisory: Callable[[str], None] | None = None,
    ):
        self._store = store
        self._narrative = narrative
        self._media = media
        self._narration = narration
        self._settings = settings or store.load_settings()
        self._on_change = on_change
        self._on_advisory = on_advisory

        self._session: Session | None = None
        self._story: Story | None = None
        self._profile: UserProfile | None = None
        self._is_generating = False
        self._is_answering = False
        self._turn = 0
        self._relieved_turn: int | None = None
        self._tasks: set[asyncio.Task] = set()
        self.advisories: list[str] = []
        if narration is not None and narration.on_advisory is None:
            narration.on_advisory = self._advise

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def settings(self) -> PersistedSettings:
        return self._settings

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @property
    def is_answering(self) -> bool:
        return self._is_answering

    def progress_percent(self) -> int:
        return progress_percent(self._session)

    # --- State ---

    def _update(self, transform: Callable[[Session], Session]) -> None:
        current = self._session
        if current is None:
            return
        updated = transform(current)
        if updated is current:
            return
        self._session = updated.model_copy(update={"last_updated": _now()})
        self._store.save(self._session.story_id, self._session)
        self._relieve_storage_pressure()
        if self._on_change:
            self._on_change(self._session)

    def _relieve_storage_pressure(self) -> None:
        """Trim stored and in-memory history at most once per turn when usage crosses the warning line."""
        if self._relieved_turn == self._turn or not self._store.is_near_quota():
            return
        self._relieved_turn = self._turn
        if self._store.force_cleanup():
            story_id = self._session.story_id
            self._session = cleanup_sessions({story_id: self._session})[story_id]
        if self._store.is_near_quota():
            logger.warning("storage_near_quota", extra={"percent_used": self._store.storage_info().percent_used})
            self._advise(STORAGE_FULL_ADVISORY)
        else:
            self._advise(STORAGE_TRIMMED_ADVISORY)

    def _advise(self, message: str) -> None:
        logger.info("advisory_raised", extra={"advisory": message})
        self.advisories.append(message)
        if self._on_advisory:
            self._on_advisory(message)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Turn loop ---

    async def start(self, profile: UserProfile, story: Story, resume: bool = True) -> Session:
        self._profile = profile
        self._story = story

        saved = self._store.load(story.id) if resume else None
        if saved is not None:
            self._session = saved
            logger.info("session_resumed", extra={"story_id": story.id, "segments": len(saved.segments)})
            return saved

        self._session = Session(story_id=story.id)
        logger.info("session_started", extra={"story_id": story.id})
        opening = build_opening_prompt(story, profile)
        await self._run_turn(opening, opening)
        return self._session

    async def choose(self, choice: str) -> bool:
        """Record the user's choice and generate the next segment.

        Returns False without touching state when a turn is already running,
        no session is active, or the story is complete.
        """
        if self._is_generating or self._session is None or self._session.is_completed:
            logger.info("turn_rejected", extra={"reason": "busy" if self._is_generating else "inactive"})
            return False

        prompt = build_turn_prompt(self._session.story_history, self._profile, choice)
        self._update(lambda s: s.model_copy(update={
            "segments": [*s.segments, Segment(kind=SegmentKind.USER, text=choice)],
            "choices": [],
            "user_choice_count": s.user_choice_count + 1,
        }))
        return await self._run_turn(prompt, build_choice_entry(self._profile, choice))

    async def _run_turn(self, prompt: str, history_entry: str) -> bool:
        if self._is_generating:
            logger.info("turn_rejected", extra={"reason": "busy"})
            return False
        self._is_generating = True
        self._turn += 1
        try:
            logger.info("turn_started", extra={"story_id": self._session.story_id})
            self._update(lambda s: s.model_copy(update={
                "story_history": [*s.story_history, f"PROMPT: {history_entry}"],
            }))
            result = await self._narrative.next_segment(prompt)
            if result.is_degraded:
                self._apply_degraded(result)
            else:
                self._apply_result(result)
            return True
        finally:
            self._is_generating = False

    def _apply_degraded(self, result: NarrativeResult) -> None:
        logger.warning(
            "turn_degraded",
            extra={"story_id": self._session.story_id, "error_kind": result.error_kind.value if result.error_kind else None},
        )
        self._update(lambda s: s.model_copy(update={
            "story_history": s.story_history[:-1],
            "segments": [*s.segments, Segment(kind=SegmentKind.NARRATOR, text=result.narrative)],
            "choices": result.choices,
        }))

    def _apply_result(self, result: NarrativeResult) -> None:
        narrator = Segment(kind=SegmentKind.NARRATOR, text=result.narrative, is_loading_image=True)
        new_segments = [narrator]
        if result.lessons:
            new_segments.append(Segment(kind=SegmentKind.LESSON, text=json.dumps(result.lessons, ensure_ascii=False)))
        environment = match_environment(result.location_hint, self._story.environment_zones)

        def transform(s: Session) -> Session:
            update = {
                "story_history": [*s.story_history, f"RESPONSE: {result.history_payload()}"],
                "segments": [*s.segments, *new_segments],
                "choices": [] if result.is_complete else result.choices,
                "current_environment": environment or s.current_environment,
            }
            if result.is_complete:
                update.update(is_completed=True, completion_date=_now())
            return s.model_copy(update=update)

        self._update(transform)
        if result.is_complete:
            logger.info("story_completed", extra={"story_id": self._session.story_id, "choices": self._session.user_choice_count})
        logger.info(
            "turn_completed",
            extra={"story_id": self._session.story_id, "segment_id": narrator.segment_id, "is_complete": result.is_complete},
        )

        self._spawn(self._resolve_media(MediaRequest(
            segment_id=narrator.segment_id,
            prompt=result.media_prompt,
            is_important_scene=result.is_important_scene,
            clips_generated=self._session.clips_generated,
            character_context=describe_characters(self._profile, self._story, result.narrative),
            environment=self._session.current_environment,
        )))

        if self._narration and self._narration.autoplay_enabled():
            self._spawn(self._narration.play(narrator.segment_id, narrator.text))

    # --- Media ---

    async def _resolve_media(self, request: MediaRequest) -> None:
        try:
            await self._media.resolve(request, self._apply_media_update)
        except Exception:
            logger.error("media_task_failed", extra={"segment_id": request.segment_id}, exc_info=True)
            self._apply_media_update(MediaUpdate(
                request.segment_id,
                image_ref=PLACEHOLDER_IMAGE_URL,
                is_loading_image=False,
                is_loading_clip=False,
                source="placeholder",
            ))

    def _apply_media_update(self, update: MediaUpdate) -> None:
        if update.advisory:
            self._advise(update.advisory)
        if self._session is None or self._session.find_segment(update.segment_id) is None:
            logger.info("media_update_orphaned", extra={"segment_id": update.segment_id})
        else:
            def transform(s: Session) -> Session:
                patched = s.with_segment(update.segment_id, **update.segment_changes())
                if update.clip_generated:
                    patched = patched.model_copy(update={"clips_generated": s.clips_generated + 1})
                return patched

            self._update(transform)
        # A billed clip counts even when its segment is gone.
        if update.clip_generated:
            tier = self._store.record_clip_usage(self._settings.media_tier).media_tier
            self._settings = self._settings.model_copy(update={"media_tier": tier})

    # --- Questions ---

    async def ask(self, question: str) -> str | None:
        """Answer a free-form question from the story so far; None when busy or inactive."""
        question = question.strip()
        if not question or self._session is None or self._is_answering or self._is_generating:
            logger.info("question_rejected", extra={"busy": self._is_answering or self._is_generating})
            return None
        self._is_answering = True
        try:
            self._update(lambda s: s.model_copy(update={
                "segments": [*s.segments, Segment(kind=SegmentKind.QUESTION, text=question)],
            }))
            answer = await self._narrative.clarify("\n".join(self._session.story_history), question)
            self._update(lambda s: s.model_copy(update={
                "segments": [*s.segments, Segment(kind=SegmentKind.ANSWER, text=answer)],
            }))
            logger.info("question_answered", extra={"story_id": self._session.story_id})
            return answer
        finally:
            self._is_answering = False

    # --- Settings ---

    def apply_settings(self, settings: PersistedSettings) -> None:
        self._settings = settings
        self._media.configure(settings.media_tier)
        if self._narration:
            self._narration.configure(settings)
        logger.info("settings_applied", extra={"narration_provider": settings.narration.provider.value})

    # --- Lifecycle ---

    async def wait_for_background(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        if self._narration:
            self._narration.stop()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_default_orchestrator(
    engine: SpeechEngine | None = None,
    audio_output: AudioOutput | None = None,
    on_change: Callable[[Session], None] | None = None,
    on_advisory: Callable[[str], None] | None = None,
) -> SessionOrchestrator:
    """Wire file-backed storage, the media cache and the configured providers."""
    store = SessionStore(FileKeyValueStore(STORE_DIR))
    settings = store.load_settings()
    cache = GenerationCache(FileBlobStore(CACHE_DIR))

    media = MediaOrchestrator(
        cache,
        primary=GeminiImageProvider(),
        secondary=FalImageProvider(),
        clip_provider=FalClipProvider(),
        settings=settings.media_tier,
    )
    narration = NarrationController(
        settings,
        cache,
        elevenlabs=ElevenLabsProvider(),
        speechify=SpeechifyProvider(),
        engine=engine,
        audio_output=audio_output,
    )
    orchestrator = SessionOrchestrator(
        store,
        NarrativeClient(),
        media,
        narration=narration,
        settings=settings,
        on_change=on_change,
        on_advisory=on_advisory,
    )
    return orchestrator
