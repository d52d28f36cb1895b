"""Narrative client: one structured LLM call per story turn.

The client never raises to the turn loop. Any failure (timeout, quota,
malformed output) comes back as a degraded result carrying an apologetic
narrative and a single retry choice, flagged so the caller can keep it out
of the generation context.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field

from pydantic_ai import Agent
from pydantic_ai.settings import ModelSettings

from journeys.config import (
    CLARIFY_MODEL,
    CLARIFY_TIMEOUT_SECONDS,
    NARRATIVE_MODEL,
    NARRATIVE_TEMPERATURE,
    NARRATIVE_TIMEOUT_SECONDS,
)
from journeys.errors import ProviderError, ProviderErrorKind, to_provider_error
from journeys.models import Story, StoryTurnOutput, UserProfile
from journeys.prompt_loader import load_prompt

logger = logging.getLogger(__name__)

DEFAULT_CHOICE = "Continue the story."
RETRY_CHOICE = "Try again"
DEGRADED_NARRATIVE = "The story seems to have paused. Please try continuing or reload the session."
CLARIFY_FALLBACK = "I'm sorry, I couldn't process that question right now. Please continue with the story."

REPETITION_MARKERS = (
    "what is your final choice",
    "what is your final question",
    "what is your final thought",
    "the story is complete",
    "the story is done",
    "the story is finished",
    "the story is ending",
    "the story is concluding",
)
REPETITION_THRESHOLD = 3


@dataclass
class NarrativeResult:
    narrative: str
    media_prompt: str
    choices: list[str]
    lessons: list[str] = field(default_factory=list)
    is_complete: bool = False
    is_important_scene: bool = False
    location_hint: str | None = None
    is_degraded: bool = False
    error_kind: ProviderErrorKind | None = None

    def history_payload(self) -> str:
        """JSON form recorded as the RESPONSE entry of the story history."""
        payload = asdict(self)
        for key in ("is_degraded", "error_kind"):
            payload.pop(key)
        return json.dumps(payload, ensure_ascii=False)


def degraded_result(kind: ProviderErrorKind | None = None) -> NarrativeResult:
    return NarrativeResult(
        narrative=DEGRADED_NARRATIVE,
        media_prompt="",
        choices=[RETRY_CHOICE],
        is_degraded=True,
        error_kind=kind,
    )


def detect_repetition(narrative: str) -> bool:
    """True when the narrative repeats enough closing phrases to signal a stuck ending."""
    text = narrative.lower()
    return sum(1 for marker in REPETITION_MARKERS if marker in text) >= REPETITION_THRESHOLD


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def build_opening_prompt(story: Story, profile: UserProfile) -> str:
    return (
        story.initial_prompt
        .replace("{userName}", profile.name)
        .replace("{userAvatarDescription}", profile.description)
    )


def build_turn_prompt(history: list[str], profile: UserProfile, choice: str) -> str:
    return load_prompt(__file__, "next_turn").format(
        history="\n".join(history),
        user_name=profile.name,
        user_description=profile.description,
        choice=choice,
    )


def build_choice_entry(profile: UserProfile, choice: str) -> str:
    """Compact history record of a user choice."""
    return f'{profile.name} chose to: "{choice}"'


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class NarrativeClient:
    def __init__(
        self,
        agent: Agent | None = None,
        clarifier: Agent | None = None,
        timeout: float = NARRATIVE_TIMEOUT_SECONDS,
        clarify_timeout: float = CLARIFY_TIMEOUT_SECONDS,
    ):
        self._agent = agent or Agent(
            NARRATIVE_MODEL,
            system_prompt=load_prompt(__file__, "story_system"),
            output_type=StoryTurnOutput,
            retries=2,
            defer_model_check=True,
        )
        self._clarifier = clarifier or Agent(
            CLARIFY_MODEL,
            output_type=str,
            defer_model_check=True,
        )
        self._timeout = timeout
        self._clarify_timeout = clarify_timeout

    async def next_segment(self, prompt: str) -> NarrativeResult:
        try:
            result = await asyncio.wait_for(
                self._agent.run(
                    prompt,
                    model_settings=ModelSettings(temperature=NARRATIVE_TEMPERATURE),
                ),
                timeout=self._timeout,
            )
            return self._normalize(result.output)
        except Exception as exc:
            error = to_provider_error(exc, "narrative")
            logger.warning(
                "narrative_degraded",
                extra={"error_kind": error.kind.value, "error": str(error), "model": NARRATIVE_MODEL},
            )
            return degraded_result(error.kind)

    def _normalize(self, output: StoryTurnOutput) -> NarrativeResult:
        narrative = output.narrative.strip()
        if not narrative:
            raise ProviderError(ProviderErrorKind.VALIDATION, "narrative", "empty narrative")

        choices = [choice.strip() for choice in output.choices if choice.strip()]
        lessons = [lesson.strip() for lesson in output.lessons if lesson.strip()]
        is_complete = output.is_complete
        if not is_complete and detect_repetition(narrative):
            logger.info("narrative_loop_detected", extra={"choices": len(choices)})
            is_complete = True

        return NarrativeResult(
            narrative=narrative,
            media_prompt=output.image_prompt.strip() or narrative[:500],
            choices=[] if is_complete else (choices or [DEFAULT_CHOICE]),
            lessons=lessons,
            is_complete=is_complete,
            is_important_scene=output.is_important_scene,
            location_hint=(output.location or "").strip() or None,
        )

    async def clarify(self, context: str, question: str) -> str:
        prompt = load_prompt(__file__, "clarify").format(context=context, question=question)
        try:
            result = await asyncio.wait_for(self._clarifier.run(prompt), timeout=self._clarify_timeout)
        except Exception as exc:
            error = to_provider_error(exc, "clarification")
            logger.warning("clarification_failed", extra={"error_kind": error.kind.value, "error": str(error)})
            return CLARIFY_FALLBACK
        answer = str(result.output).strip()
        return answer or CLARIFY_FALLBACK
