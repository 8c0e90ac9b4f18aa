"""Pass 1 — Transition Analyzer.

Scores every adjacent scene-pair transition.  Pairs are analysed five at a
time; a pair whose AI call fails gets a deterministic heuristic analysis
built from tension and tone metadata, so N scenes always yield N-1 results.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from ..cancellation import CancellationToken
from ..capability import AnalysisCapability, AnalysisRequest, AnalysisResponse, build_reader_context
from ..decoding import decode_transition, normalize_severity
from ..errors import FatalConfigurationError
from ..models import (
    CompressedScene,
    Scene,
    ScenePairAnalysis,
    TransitionFlags,
    TransitionIssue,
)
from ..timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_USER_TEMPLATE = (_PROMPTS_DIR / "transition_user.txt").read_text().strip()

_BATCH_SIZE = 5

_OPPOSITE_TONES = (
    frozenset(["happy", "sad"]),
    frozenset(["tense", "relaxed"]),
    frozenset(["suspense", "peaceful"]),
    frozenset(["angry", "calm"]),
)

_TRANSITION_WORDS = ("transition", "flow", "jarring", "abrupt", "sudden")

ProgressFn = Callable[[int, Optional[str]], None]


class TransitionAnalyzer:

    def __init__(self, capability: AnalysisCapability, *, model_override: str | None = None):
        self.capability = capability
        self.model_override = model_override
        self.models_used: dict[str, str] = {}

    @timed_pass("transitions")
    async def analyze_transitions(
        self,
        compressed: list[CompressedScene],
        token: CancellationToken | None = None,
        on_progress: ProgressFn | None = None,
        results: list[ScenePairAnalysis] | None = None,
    ) -> list[ScenePairAnalysis]:
        """Analyse all N-1 adjacent transitions, in position order.

        Stops between batches once ``token`` is cancelled and returns the
        pairs analysed so far.  Pairs are appended to ``results`` as each
        batch settles, so a caller-owned list shows them mid-pass.
        """
        if results is None:
            results = []
        if len(compressed) < 2:
            log.debug("Not enough scenes for transition analysis")
            return results

        total_pairs = len(compressed) - 1

        for start in range(0, total_pairs, _BATCH_SIZE):
            if token is not None and token.cancelled:
                log.info("Transition analysis cancelled after %d/%d pairs", len(results), total_pairs)
                break

            batch_end = min(start + _BATCH_SIZE, total_pairs)
            settled = await asyncio.gather(
                *(self._analyze_pair(compressed[j], compressed[j + 1], j) for j in range(start, batch_end)),
                return_exceptions=True,
            )
            for j, outcome in zip(range(start, batch_end), settled):
                if isinstance(outcome, FatalConfigurationError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    log.debug("Transition %d failed, using heuristic: %s", j, outcome)
                    outcome = fallback_transition(compressed[j], compressed[j + 1], j)
                results.append(outcome)

            if on_progress is not None:
                on_progress(min(100, batch_end * 100 // total_pairs), compressed[batch_end].id)

        return results

    async def _analyze_pair(self, a: CompressedScene, b: CompressedScene, position: int) -> ScenePairAnalysis:
        prompt = build_transition_prompt(a, b)
        context = build_reader_context([a, b])
        options = {"prompt": prompt, "focus_areas": ["transitions"]}
        if self.model_override:
            options["model_override"] = self.model_override

        request = AnalysisRequest(
            scene=Scene(
                id=f"{a.id}-{b.id}",
                text=prompt,
                word_count=400,
                position=position,
                original_position=position,
                characters=sorted(context.known_characters),
                location_markers=a.metadata.locations + b.metadata.locations,
            ),
            analysis_type="simple",
            reader_context=context,
            options=options,
        )

        try:
            response = await self.capability.analyze(request)
        except FatalConfigurationError:
            raise
        except Exception as exc:
            log.debug("AI transition analysis failed for %s->%s: %s", a.id, b.id, exc)
            return fallback_transition(a, b, position)

        self.models_used[f"{a.id}-{b.id}"] = response.metadata.model_used
        return parse_transition_response(response, a, b, position)


def build_transition_prompt(a: CompressedScene, b: CompressedScene) -> str:
    return _USER_TEMPLATE.format(
        a_position=a.position,
        a_summary=a.summary,
        a_closing=a.closing,
        a_characters=", ".join(a.metadata.characters) or "none",
        a_locations=", ".join(a.metadata.locations) or "none",
        a_tone=a.metadata.emotional_tone,
        a_tension=a.metadata.tension_level,
        b_position=b.position,
        b_summary=b.summary,
        b_opening=b.opening,
        b_characters=", ".join(b.metadata.characters) or "none",
        b_locations=", ".join(b.metadata.locations) or "none",
        b_tone=b.metadata.emotional_tone,
        b_tension=b.metadata.tension_level,
    )


def parse_transition_response(
    response: AnalysisResponse,
    a: CompressedScene,
    b: CompressedScene,
    position: int,
) -> ScenePairAnalysis:
    data = decode_transition(response.payload)
    issues = [
        TransitionIssue(
            type=issue.type,
            severity=issue.severity,
            description=issue.description,
            suggestion=issue.suggestion,
        )
        for issue in data.issues
    ]

    # Generic continuity issues that read like transition problems.
    for issue in response.issues:
        if is_transition_related(issue.description):
            issues.append(TransitionIssue(
                type="jarring_pace_change",
                severity=normalize_severity(issue.severity),
                description=issue.description or "Transition issue",
                suggestion=issue.suggested_fix,
            ))

    return ScenePairAnalysis(
        scene_a_id=a.id,
        scene_b_id=b.id,
        position=position,
        transition_score=data.transition_score,
        issues=issues,
        strengths=data.strengths,
        flags=TransitionFlags(
            needs_scene_break=data.flags.needs_scene_break,
            needs_transition_scene=data.flags.needs_transition_scene,
            chapter_boundary_candidate=data.flags.chapter_boundary_candidate,
        ),
    )


def is_transition_related(description: str) -> bool:
    desc = (description or "").lower()
    return any(word in desc for word in _TRANSITION_WORDS)


def is_jarring_mood_shift(tone_a: str, tone_b: str) -> bool:
    return tone_a != tone_b and frozenset([tone_a, tone_b]) in _OPPOSITE_TONES


def fallback_transition(a: CompressedScene, b: CompressedScene, position: int) -> ScenePairAnalysis:
    """Heuristic analysis from tension and tone metadata alone."""
    issues = []
    tension_a, tension_b = a.metadata.tension_level, b.metadata.tension_level
    tension_delta = abs(tension_a - tension_b)
    if tension_delta > 5:
        issues.append(TransitionIssue(
            type="jarring_pace_change",
            severity="should-fix",
            description=f"Large tension shift from {tension_a} to {tension_b}",
            suggestion="Consider adding transitional narrative to smooth the tension change",
        ))

    tone_a, tone_b = a.metadata.emotional_tone, b.metadata.emotional_tone
    if tone_a and tone_b and is_jarring_mood_shift(tone_a, tone_b):
        issues.append(TransitionIssue(
            type="emotional_whiplash",
            severity="should-fix",
            description=f"Abrupt mood shift from {tone_a} to {tone_b}",
            suggestion="Add emotional transition or scene break",
        ))

    return ScenePairAnalysis(
        scene_a_id=a.id,
        scene_b_id=b.id,
        position=position,
        transition_score=0.5 if issues else 0.7,
        issues=issues,
        flags=TransitionFlags(
            needs_scene_break=tension_delta > 7,
            needs_transition_scene=len(issues) > 2,
            chapter_boundary_candidate=tension_delta > 5,
        ),
    )
