"""Tests for the session orchestrator: turn loop, persistence, media correlation, questions."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

import journeys.session as session_module
from journeys.cache import GenerationCache, MemoryBlobStore
from journeys.config import PLACEHOLDER_IMAGE_URL
from journeys.errors import ProviderError, ProviderErrorKind, StorageCapacityError
from journeys.media import MediaOrchestrator, MediaUpdate, to_data_url
from journeys.models import (
    MediaTierSettings,
    NarrationSettings,
    PersistedSettings,
    SegmentKind,
)
from journeys.narration import NarrationController
from journeys.narrative import DEGRADED_NARRATIVE, RETRY_CHOICE, NarrativeClient
from journeys.retry import RetryPolicy
from journeys.session import (
    STORAGE_FULL_ADVISORY,
    STORAGE_TRIMMED_ADVISORY,
    SessionOrchestrator,
    build_default_orchestrator,
    describe_characters,
    match_environment,
    progress_percent,
)
from journeys.storage import SETTINGS_KEY, MemoryKeyValueStore, SessionStore
from tests.factories import (
    FakeClipProvider,
    FakeImageProvider,
    FakeSpeechEngine,
    FakeSpeechProvider,
    make_agent,
    make_profile,
    make_segment,
    make_session,
    make_story,
    make_turn_output,
)


async def _no_sleep(delay):
    return None


def _agent(*items):
    """Agent mock yielding outputs in order; exception items are raised instead."""
    effects = []
    for item in items:
        if isinstance(item, BaseException):
            effects.append(item)
            continue
        result = MagicMock()
        result.output = item
        effects.append(result)
    return make_agent(side_effect=effects)


def _gated_agent(gate: asyncio.Event, *outputs):
    queue = list(outputs)

    async def run(*args, **kwargs):
        await gate.wait()
        result = MagicMock()
        result.output = queue.pop(0)
        return result

    return make_agent(side_effect=run)


class _Harness:
    def __init__(
        self,
        *outputs,
        agent=None,
        clarifier=None,
        primary=None,
        clips=None,
        settings=None,
        narration=None,
        store=None,
        media=None,
    ):
        self.store = store or SessionStore(MemoryKeyValueStore())
        self.agent = agent or _agent(*outputs)
        self.clarifier = clarifier or make_agent("Goliath is a Philistine champion.")
        self.primary = primary or FakeImageProvider()
        self.settings = settings or PersistedSettings()
        self.media = media or MediaOrchestrator(
            GenerationCache(MemoryBlobStore()),
            self.primary,
            clip_provider=clips,
            settings=self.settings.media_tier,
            retry_policy=RetryPolicy(max_retries=0),
            sleep=_no_sleep,
        )
        self.changes = []
        self.advisories = []
        self.orchestrator = SessionOrchestrator(
            self.store,
            NarrativeClient(agent=self.agent, clarifier=self.clarifier, timeout=5),
            self.media,
            narration=narration,
            settings=self.settings,
            on_change=self.changes.append,
            on_advisory=self.advisories.append,
        )

    async def start(self, **kwargs):
        session = await self.orchestrator.start(make_profile(), make_story(), **kwargs)
        return session

    @property
    def session(self):
        return self.orchestrator.session


# --- Helpers ---


class TestMatchEnvironment:
    @pytest.mark.parametrize(
        "location, expected",
        [
            ("Valley of Elah", "wide valley with rolling hills"),
            ("valley-of-elah", "wide valley with rolling hills"),
            ("the Israelite Camp at dusk", "tents and campfires on a hillside"),
            ("Bethlehem", "Bethlehem"),
            (None, None),
            ("", None),
        ],
    )
    def test_matching(self, location, expected):
        assert match_environment(location, make_story().environment_zones) == expected


class TestDescribeCharacters:
    def test_includes_user_and_mentioned_characters(self):
        text = "David picks up five stones."
        assert describe_characters(make_profile(), make_story(), text) == (
            "Miriam (a young woman in a blue linen cloak), David"
        )

    def test_profile_without_description(self):
        assert describe_characters(make_profile(description=""), make_story(), "quiet") == "Miriam"


class TestProgressPercent:
    @pytest.mark.parametrize(
        "count, expected",
        [(0, 0), (3, 30), (8, 70), (12, 95), (20, 95)],
    )
    def test_curve(self, count, expected):
        assert progress_percent(make_session(user_choice_count=count)) == expected

    def test_completed_and_missing(self):
        assert progress_percent(make_session(is_completed=True)) == 100
        assert progress_percent(None) == 0


# --- Starting ---


class TestStart:
    @pytest.mark.asyncio
    async def test_new_session_runs_opening_turn(self):
        harness = _Harness(make_turn_output())
        session = await harness.start()

        assert [s.kind for s in session.segments] == [SegmentKind.NARRATOR]
        assert session.choices == ["Ask about the sling", "Offer him water"]
        assert session.story_history[0].startswith("PROMPT: Start the story. The user, named Miriam")
        assert session.story_history[1].startswith("RESPONSE: ")
        assert session.current_environment == "wide valley with rolling hills"

        opening = harness.agent.run.call_args.args[0]
        assert "Miriam" in opening
        assert "a young woman in a blue linen cloak" in opening

    @pytest.mark.asyncio
    async def test_media_lands_on_narrator_segment(self):
        harness = _Harness(make_turn_output())
        await harness.start()
        assert harness.session.segments[0].is_loading_image is True

        await harness.orchestrator.wait_for_background()
        segment = harness.session.segments[0]
        assert segment.image_ref.startswith("data:image/png;base64,")
        assert segment.is_loading_image is False

        prompt = harness.primary.calls[0]
        assert prompt.startswith("A young shepherd in a wide valley")
        assert "Setting: wide valley with rolling hills" in prompt
        assert "Miriam (a young woman in a blue linen cloak), David" in prompt

    @pytest.mark.asyncio
    async def test_resumes_saved_session(self):
        harness = _Harness(make_turn_output())
        saved = make_session()
        harness.store.save(saved.story_id, saved)

        session = await harness.start()
        assert [s.text for s in session.segments] == [s.text for s in saved.segments]
        harness.agent.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_fresh_start_ignores_saved_session(self):
        harness = _Harness(make_turn_output())
        harness.store.save("david-goliath", make_session())

        session = await harness.start(resume=False)
        assert len(session.segments) == 1
        assert session.user_choice_count == 0

    @pytest.mark.asyncio
    async def test_progress_is_persisted(self):
        harness = _Harness(make_turn_output())
        await harness.start()
        saved = harness.store.load("david-goliath")
        assert saved.story_history == harness.session.story_history
        assert harness.changes[-1] is harness.session


# --- Turns ---


class TestChoose:
    @pytest.mark.asyncio
    async def test_records_choice_and_appends_response(self):
        harness = _Harness(make_turn_output(), make_turn_output(narrative="Goliath laughs.", choices=["Stand firm"]))
        await harness.start()

        assert await harness.orchestrator.choose("Ask about the sling")
        session = harness.session
        assert [s.kind for s in session.segments] == [SegmentKind.NARRATOR, SegmentKind.USER, SegmentKind.NARRATOR]
        assert session.segments[1].text == "Ask about the sling"
        assert session.segments[2].text == "Goliath laughs."
        assert session.choices == ["Stand firm"]
        assert session.user_choice_count == 1
        assert session.story_history[2] == 'PROMPT: Miriam chose to: "Ask about the sling"'
        assert session.story_history[3].startswith("RESPONSE: ")

        turn_prompt = harness.agent.run.call_args.args[0]
        assert session.story_history[1] in turn_prompt
        assert '"Ask about the sling"' in turn_prompt

    @pytest.mark.asyncio
    async def test_without_session_is_rejected(self):
        harness = _Harness()
        assert await harness.orchestrator.choose("anything") is False

    @pytest.mark.asyncio
    async def test_second_choice_while_generating_is_ignored(self):
        gate = asyncio.Event()
        gate.set()
        harness = _Harness(agent=_gated_agent(gate, make_turn_output(), make_turn_output(), make_turn_output()))
        await harness.start()

        gate.clear()
        pending = asyncio.create_task(harness.orchestrator.choose("Ask about the sling"))
        await asyncio.sleep(0)
        assert harness.orchestrator.is_generating

        segments_before = len(harness.session.segments)
        assert await harness.orchestrator.choose("Offer him water") is False
        assert len(harness.session.segments) == segments_before

        gate.set()
        assert await pending is True
        assert harness.session.user_choice_count == 1
        assert harness.agent.run.await_count == 2

    @pytest.mark.asyncio
    async def test_degraded_turn_keeps_context_clean(self):
        harness = _Harness(make_turn_output(), RuntimeError("model exploded"), make_turn_output(narrative="Again."))
        await harness.start()
        history_before = list(harness.session.story_history)

        assert await harness.orchestrator.choose("Ask about the sling")
        session = harness.session
        assert session.story_history == history_before
        assert session.segments[-1].text == DEGRADED_NARRATIVE
        assert session.choices == [RETRY_CHOICE]
        assert session.is_completed is False

        assert await harness.orchestrator.choose(RETRY_CHOICE)
        assert harness.session.segments[-1].text == "Again."
        prompts = [entry for entry in harness.session.story_history if entry.startswith("PROMPT: ")]
        responses = [entry for entry in harness.session.story_history if entry.startswith("RESPONSE: ")]
        assert len(prompts) == len(responses) == 2

    @pytest.mark.asyncio
    async def test_degraded_segment_gets_no_media(self):
        harness = _Harness(make_turn_output(), RuntimeError("model exploded"))
        await harness.start()
        await harness.orchestrator.choose("Ask about the sling")
        await harness.orchestrator.wait_for_background()
        assert len(harness.primary.calls) == 1
        assert harness.session.segments[-1].is_loading_image is False

    @pytest.mark.asyncio
    async def test_completion(self):
        harness = _Harness(make_turn_output(), make_turn_output(is_complete=True, choices=["ignored"]))
        await harness.start()
        await harness.orchestrator.choose("Ask about the sling")

        session = harness.session
        assert session.is_completed is True
        assert session.completion_date is not None
        assert session.choices == []
        assert harness.orchestrator.progress_percent() == 100
        assert await harness.orchestrator.choose("More") is False
        assert harness.store.is_completed("david-goliath")

    @pytest.mark.asyncio
    async def test_repetitive_ending_completes_story(self):
        looping = "The story is complete. What is your final choice? The story is finished."
        harness = _Harness(make_turn_output(), make_turn_output(narrative=looping))
        await harness.start()
        await harness.orchestrator.choose("Ask about the sling")
        assert harness.session.is_completed is True
        assert harness.session.choices == []

    @pytest.mark.asyncio
    async def test_lessons_become_a_segment(self):
        harness = _Harness(
            make_turn_output(),
            make_turn_output(lessons=["Faith over fear", "Courage"], is_complete=True),
        )
        await harness.start()
        await harness.orchestrator.choose("Ask about the sling")

        lesson = harness.session.segments[-1]
        assert lesson.kind == SegmentKind.LESSON
        assert json.loads(lesson.text) == ["Faith over fear", "Courage"]
        assert [item.lesson for item in harness.store.collect_lessons()] == ["Faith over fear", "Courage"]

    @pytest.mark.asyncio
    async def test_unknown_location_kept_verbatim(self):
        harness = _Harness(make_turn_output(), make_turn_output(location="Bethlehem"))
        await harness.start()
        await harness.orchestrator.choose("Go home")
        assert harness.session.current_environment == "Bethlehem"

    @pytest.mark.asyncio
    async def test_missing_location_keeps_environment(self):
        harness = _Harness(make_turn_output(), make_turn_output(location=None))
        await harness.start()
        await harness.orchestrator.choose("Wait")
        assert harness.session.current_environment == "wide valley with rolling hills"


# --- Media ---


def _crowded_store() -> SessionStore:
    """Store pushed just past the warning line by an old, completed story."""
    kv = MemoryKeyValueStore()
    old = make_session(
        story_id="moses-red-sea",
        segments=[make_segment(text=f"The waters part a little further, step {i}.") for i in range(200)],
        choices=[],
        is_completed=True,
    )
    SessionStore(kv).save("moses-red-sea", old)
    return SessionStore(kv, assumed_capacity_bytes=int(SessionStore(kv).check_usage() / 0.9))


class _SettingsRejectingStore(MemoryKeyValueStore):
    def set(self, key, value):
        if key == SETTINGS_KEY:
            raise StorageCapacityError(f"writing {key} would exceed capacity")
        super().set(key, value)


class _BrokenMedia:
    def configure(self, settings):
        pass

    async def resolve(self, request, publish):
        raise RuntimeError("renderer crashed")


class TestMedia:
    @pytest.mark.asyncio
    async def test_out_of_order_results_land_on_their_segments(self):
        gate = asyncio.Event()
        primary = FakeImageProvider(
            gates={"first-scene": gate},
            payload_fn=lambda prompt: prompt.split(".")[0].encode(),
        )
        harness = _Harness(
            make_turn_output(image_prompt="first-scene"),
            make_turn_output(image_prompt="second-scene"),
            primary=primary,
        )
        await harness.start()
        await harness.orchestrator.choose("Ask about the sling")
        await asyncio.sleep(0)
        gate.set()
        await harness.orchestrator.wait_for_background()

        narrators = [s for s in harness.session.segments if s.kind == SegmentKind.NARRATOR]
        assert narrators[0].image_ref == to_data_url(b"first-scene", "image/png")
        assert narrators[1].image_ref == to_data_url(b"second-scene", "image/png")

    @pytest.mark.asyncio
    async def test_persisted_copy_has_no_loading_flags(self):
        gate = asyncio.Event()
        harness = _Harness(make_turn_output(image_prompt="slow"), primary=FakeImageProvider(gates={"slow": gate}))
        await harness.start()

        assert harness.session.segments[0].is_loading_image is True
        assert harness.store.load("david-goliath").segments[0].is_loading_image is False
        gate.set()
        await harness.orchestrator.wait_for_background()

    @pytest.mark.asyncio
    async def test_advisory_is_surfaced(self):
        primary = FakeImageProvider(errors=[ProviderError(ProviderErrorKind.QUOTA, "gemini")])
        harness = _Harness(make_turn_output(), primary=primary)
        await harness.start()
        await harness.orchestrator.wait_for_background()

        assert harness.session.segments[0].image_ref == PLACEHOLDER_IMAGE_URL
        assert harness.advisories == harness.orchestrator.advisories
        assert len(harness.advisories) == 1

    @pytest.mark.asyncio
    async def test_failed_media_task_leaves_placeholder(self):
        harness = _Harness(make_turn_output(), media=_BrokenMedia())
        await harness.start()
        await harness.orchestrator.wait_for_background()

        segment = harness.session.segments[0]
        assert segment.image_ref == PLACEHOLDER_IMAGE_URL
        assert segment.is_loading_image is False

    @pytest.mark.asyncio
    async def test_orphaned_update_is_dropped(self):
        harness = _Harness(make_turn_output())
        await harness.start()
        await harness.orchestrator.wait_for_background()
        before = harness.session

        harness.orchestrator._apply_media_update(MediaUpdate("no-such-segment", image_ref="data:x"))
        assert harness.session is before

    @pytest.mark.asyncio
    async def test_clip_updates_counters(self):
        settings = PersistedSettings(media_tier=MediaTierSettings(clips_enabled=True))
        clips = FakeClipProvider()
        harness = _Harness(make_turn_output(is_important_scene=True), clips=clips, settings=settings)
        await harness.start()
        await harness.orchestrator.wait_for_background()

        segment = harness.session.segments[0]
        assert segment.clip_ref.startswith("data:video/mp4;base64,")
        assert segment.is_loading_clip is False
        assert harness.session.clips_generated == 1
        assert harness.store.load_settings().media_tier.current_session_count == 1
        assert harness.orchestrator.settings.media_tier.current_session_count == 1
        assert harness.primary.calls == []

    @pytest.mark.asyncio
    async def test_clip_survives_full_settings_storage(self):
        settings = PersistedSettings(media_tier=MediaTierSettings(clips_enabled=True))
        harness = _Harness(
            make_turn_output(is_important_scene=True),
            clips=FakeClipProvider(),
            settings=settings,
            store=SessionStore(_SettingsRejectingStore()),
        )
        await harness.start()
        await harness.orchestrator.wait_for_background()

        segment = harness.session.segments[0]
        assert segment.clip_ref.startswith("data:video/mp4;base64,")
        assert segment.image_ref is None
        assert harness.session.clips_generated == 1
        assert harness.orchestrator.settings.media_tier.current_session_count == 1
        assert harness.store.load_settings().media_tier.current_session_count == 0
        assert harness.primary.calls == []

    @pytest.mark.asyncio
    async def test_clip_for_orphaned_segment_still_counts(self):
        harness = _Harness(make_turn_output())
        await harness.start()
        await harness.orchestrator.wait_for_background()
        before = harness.session

        harness.orchestrator._apply_media_update(
            MediaUpdate("no-such-segment", clip_ref="data:video/mp4;base64,AA==", clip_generated=True)
        )
        assert harness.session is before
        assert harness.orchestrator.settings.media_tier.current_session_count == 1
        assert harness.store.load_settings().media_tier.current_session_count == 1


# --- Questions ---


class TestAsk:
    @pytest.mark.asyncio
    async def test_answer_is_appended(self):
        harness = _Harness(make_turn_output())
        await harness.start()

        answer = await harness.orchestrator.ask("  Who is the giant? ")
        assert answer == "Goliath is a Philistine champion."
        kinds = [s.kind for s in harness.session.segments[-2:]]
        assert kinds == [SegmentKind.QUESTION, SegmentKind.ANSWER]
        assert harness.session.segments[-2].text == "Who is the giant?"

        prompt = harness.clarifier.run.call_args.args[0]
        assert harness.session.story_history[1] in prompt

    @pytest.mark.asyncio
    async def test_questions_do_not_enter_history(self):
        harness = _Harness(make_turn_output())
        await harness.start()
        history = list(harness.session.story_history)
        await harness.orchestrator.ask("Who is the giant?")
        assert harness.session.story_history == history

    @pytest.mark.asyncio
    async def test_rejected_without_session_or_text(self):
        harness = _Harness(make_turn_output())
        assert await harness.orchestrator.ask("Why?") is None
        await harness.start()
        assert await harness.orchestrator.ask("   ") is None


# --- Settings and narration ---


class TestSettingsAndNarration:
    def _narration(self, settings, engine=None):
        return NarrationController(
            settings,
            GenerationCache(MemoryBlobStore()),
            FakeSpeechProvider(name="elevenlabs"),
            FakeSpeechProvider(name="speechify"),
            engine=engine,
        )

    @pytest.mark.asyncio
    async def test_autoplay_narrates_new_segment(self):
        settings = PersistedSettings(narration=NarrationSettings(enabled=True, autoplay=True))
        engine = FakeSpeechEngine()
        harness = _Harness(make_turn_output(), settings=settings, narration=self._narration(settings, engine))
        await harness.start()
        await harness.orchestrator.wait_for_background()

        assert engine.spoken[0][0] == harness.session.segments[0].text

    @pytest.mark.asyncio
    async def test_narration_advisories_reach_orchestrator(self):
        settings = PersistedSettings(narration=NarrationSettings(enabled=True, autoplay=True))
        harness = _Harness(make_turn_output(), settings=settings, narration=self._narration(settings))
        await harness.start()
        await harness.orchestrator.wait_for_background()

        assert any("Built-in narration" in message for message in harness.advisories)

    def test_apply_settings_reconfigures_collaborators(self):
        settings = PersistedSettings()
        narration = self._narration(settings)
        harness = _Harness(narration=narration)
        updated = PersistedSettings(media_tier=MediaTierSettings(clips_enabled=True, session_limit=4))

        harness.orchestrator.apply_settings(updated)
        assert harness.orchestrator.settings is updated
        assert harness.media.settings.session_limit == 4

    @pytest.mark.asyncio
    async def test_cleanup_that_relieves_pressure_advises_once(self):
        harness = _Harness(make_turn_output(), make_turn_output(), store=_crowded_store())
        harness.store.force_cleanup = MagicMock(wraps=harness.store.force_cleanup)
        await harness.start()
        await harness.orchestrator.choose("Offer him water")
        await harness.orchestrator.wait_for_background()

        assert harness.advisories == [STORAGE_TRIMMED_ADVISORY]
        assert harness.store.force_cleanup.call_count == 1
        assert not harness.store.is_near_quota()
        assert len(harness.store.load("moses-red-sea").segments) == 20

    @pytest.mark.asyncio
    async def test_lasting_pressure_warns_once_per_turn(self):
        kv = MemoryKeyValueStore()
        kv.set("filler", "x" * 1900)
        harness = _Harness(make_turn_output(), make_turn_output(), store=SessionStore(kv, assumed_capacity_bytes=2000))
        harness.store.force_cleanup = MagicMock(wraps=harness.store.force_cleanup)

        await harness.start()
        await harness.orchestrator.wait_for_background()
        assert harness.advisories == [STORAGE_FULL_ADVISORY]

        await harness.orchestrator.choose("Offer him water")
        await harness.orchestrator.wait_for_background()
        assert harness.advisories == [STORAGE_FULL_ADVISORY, STORAGE_FULL_ADVISORY]
        assert harness.store.force_cleanup.call_count == 2


# --- Lifecycle ---


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_aclose_cancels_pending_media(self):
        gate = asyncio.Event()
        harness = _Harness(make_turn_output(image_prompt="slow"), primary=FakeImageProvider(gates={"slow": gate}))
        await harness.start()
        await harness.orchestrator.aclose()
        assert harness.session.segments[0].is_loading_image is True

    def test_build_default_orchestrator(self, tmp_path, monkeypatch):
        monkeypatch.setattr(session_module, "STORE_DIR", tmp_path / "store")
        monkeypatch.setattr(session_module, "CACHE_DIR", tmp_path / "cache")
        orchestrator = build_default_orchestrator()
        assert isinstance(orchestrator, SessionOrchestrator)
        assert orchestrator.session is None
        assert orchestrator.settings == PersistedSettings()
