"""Pass 4 — Arc Validator.

Validates three-act structure, character arcs and pacing across the whole
manuscript with a single call to the higher-capability model.  Any
non-fatal failure yields a deterministic analysis computed from scene
counts alone.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Callable, Optional

from ..cancellation import CancellationToken
from ..capability import AnalysisCapability, AnalysisRequest, AnalysisResponse, build_reader_context
from ..compressor import truncate_words
from ..decoding import decode_arc
from ..errors import FatalConfigurationError
from ..models import (
    CharacterArc,
    CompressedScene,
    CriticalFix,
    Manuscript,
    ManuscriptAnalysis,
    ManuscriptSkeleton,
    PacingCurve,
    PacingSpan,
    Scene,
)
from ..timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_USER_TEMPLATE = (_PROMPTS_DIR / "arc_user.txt").read_text().strip()

_MAIN_CHARACTER_COUNT = 5
_SCENES_PER_CHAPTER = 10
_ACT_NAMES = ("Act I", "Act II", "Act III")

ProgressFn = Callable[[int, Optional[str]], None]


class ArcValidator:

    def __init__(self, capability: AnalysisCapability, *, model_override: str | None = None):
        self.capability = capability
        self.model_override = model_override
        self.models_used: dict[str, str] = {}

    @timed_pass("arc")
    async def validate_arc(
        self,
        skeleton: ManuscriptSkeleton,
        manuscript: Manuscript,
        token: CancellationToken | None = None,
        on_progress: ProgressFn | None = None,
    ) -> ManuscriptAnalysis:
        """Whole-manuscript structural analysis.

        Only ``FatalConfigurationError`` escapes; every other failure is
        replaced by ``fallback_arc``.
        """
        scenes = skeleton.scenes
        characters = main_characters(scenes)
        acts = split_acts(scenes)

        if not scenes or (token is not None and token.cancelled):
            analysis = fallback_arc(scenes, characters, acts)
        else:
            try:
                analysis = await self._validate(skeleton, manuscript, characters, acts)
            except FatalConfigurationError:
                raise
            except Exception:
                log.warning("Arc validation failed, using structural heuristic", exc_info=True)
                analysis = fallback_arc(scenes, characters, acts)

        if on_progress is not None:
            on_progress(100, None)
        return analysis

    async def _validate(
        self,
        skeleton: ManuscriptSkeleton,
        manuscript: Manuscript,
        characters: list[str],
        acts: list[list[CompressedScene]],
    ) -> ManuscriptAnalysis:
        prompt = build_arc_prompt(skeleton, characters, acts)
        options = {"prompt": prompt, "focus_areas": ["structure", "character-arcs", "theme"]}
        if self.model_override:
            options["model_override"] = self.model_override

        request = AnalysisRequest(
            scene=Scene(
                id=f"manuscript-{manuscript.id}",
                text=prompt,
                word_count=sum(s.metadata.word_count for s in skeleton.scenes),
                characters=characters,
            ),
            analysis_type="full",
            reader_context=build_reader_context(skeleton.scenes),
            options=options,
        )

        response = await self.capability.analyze(request)
        self.models_used["arc"] = response.metadata.model_used
        return parse_arc_response(response, acts)


def main_characters(scenes: list[CompressedScene]) -> list[str]:
    """Top characters by number of scenes they appear in, ties by first appearance."""
    counts: Counter[str] = Counter()
    for scene in scenes:
        counts.update(dict.fromkeys(c for c in scene.metadata.characters if c))
    return [name for name, _ in counts.most_common(_MAIN_CHARACTER_COUNT)]


def split_acts(scenes: list[CompressedScene]) -> list[list[CompressedScene]]:
    """25/50/25 split by scene count."""
    n = len(scenes)
    first = int(n * 0.25 + 0.5)
    second = int(n * 0.75 + 0.5)
    return [scenes[:first], scenes[first:second], scenes[second:]]


def infer_theme(scenes: list[CompressedScene]) -> str:
    if not scenes:
        return "journey and transformation"
    avg = sum(s.metadata.tension_level for s in scenes) / len(scenes)
    if avg > 7:
        return "conflict and resolution"
    if avg < 3:
        return "character development"
    return "journey and transformation"


def build_arc_prompt(
    skeleton: ManuscriptSkeleton,
    characters: list[str],
    acts: list[list[CompressedScene]],
) -> str:
    blocks = []
    offset = 0
    for number, (name, act) in enumerate(zip(_ACT_NAMES, acts), start=1):
        if act:
            first_chapter = offset // _SCENES_PER_CHAPTER + 1
            last_chapter = (offset + len(act) - 1) // _SCENES_PER_CHAPTER + 1
            summary = truncate_words(" ".join(s.summary for s in act), 120)
            scene_range = f"{act[0].id}..{act[-1].id}"
        else:
            first_chapter = last_chapter = 0
            summary = "(no content)"
            scene_range = "none"
        blocks.append(
            f'<act number="{number}" name="{name}" scenes="{scene_range}" '
            f'chapters="{first_chapter}-{last_chapter}">\n  <summary>{summary}</summary>\n</act>'
        )
        offset += len(act)

    return _USER_TEMPLATE.format(
        total_scenes=len(skeleton.scenes),
        main_characters=", ".join(characters) or "none identified",
        primary_theme=infer_theme(skeleton.scenes),
        overview=skeleton.overview,
        act_blocks="\n".join(blocks),
    )


def _count_balance(acts: list[list[CompressedScene]]) -> tuple[float, float, float]:
    total = sum(len(a) for a in acts)
    if total == 0:
        return (0.25, 0.5, 0.25)
    return tuple(len(a) / total for a in acts)


def parse_arc_response(
    response: AnalysisResponse,
    acts: list[list[CompressedScene]],
) -> ManuscriptAnalysis:
    data = decode_arc(response.payload)

    if data.act_balance is None:
        act_balance = _count_balance(acts)
    else:
        values = data.act_balance
        # Percentages (25, 50, 25) rather than fractions.
        if sum(values) > 1.5:
            values = [v / 100 for v in values]
        act_balance = tuple(max(0.0, min(1.0, v)) for v in values)

    return ManuscriptAnalysis(
        structural_integrity=data.structural_integrity,
        act_balance=act_balance,
        character_arcs={
            name: CharacterArc(
                completeness=arc.completeness,
                consistency=arc.consistency,
                issues=arc.issues + arc.key_missing_elements,
            )
            for name, arc in data.character_arcs.items()
        },
        plot_holes=data.plot_holes,
        unresolved_elements=data.unresolved_elements,
        pacing_curve=PacingCurve(
            slow_spots=[PacingSpan(s.start, s.end, s.reason) for s in data.pacing_curve.slow_spots],
            rushed_sections=[PacingSpan(s.start, s.end, s.reason) for s in data.pacing_curve.rushed_sections],
        ),
        thematic_coherence=data.thematic_coherence,
        opening_effectiveness=data.opening_effectiveness,
        ending_satisfaction=data.ending_satisfaction,
        critical_fixes=[
            CriticalFix(
                issue=fix.issue,
                affected_scenes=fix.affected_scenes,
                priority=fix.priority,
                suggestion=fix.suggestion,
            )
            for fix in data.critical_fixes
        ],
    )


def fallback_arc(
    scenes: list[CompressedScene],
    characters: list[str],
    acts: list[list[CompressedScene]],
) -> ManuscriptAnalysis:
    """Structure-only analysis from scene counts and character presence."""
    arcs = {}
    for name in characters:
        present = [any(name in s.metadata.characters for s in act) for act in acts]
        issues = [f"Absent from {act_name}" for act_name, here in zip(_ACT_NAMES, present) if not here]
        arcs[name] = CharacterArc(
            completeness=round(sum(present) / len(acts), 2),
            consistency=0.6,
            issues=issues,
        )

    return ManuscriptAnalysis(
        structural_integrity=0.7,
        act_balance=_count_balance(acts),
        character_arcs=arcs,
    )
