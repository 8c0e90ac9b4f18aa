"""Pass 3 — Chapter Analyzer.

Groups compressed scenes into chapters and scores each chapter's
coherence.  Chapters run one at a time.

Health flags: the provider reports each dimension as "problem present";
the stored ``ChapterHealth`` holds the negation, "dimension healthy".
"""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path
from typing import Callable, Optional

from ..cancellation import CancellationToken
from ..capability import AnalysisCapability, AnalysisRequest, AnalysisResponse, ReaderKnowledge
from ..decoding import decode_chapter
from ..errors import FatalConfigurationError
from ..models import (
    ChapterFlowAnalysis,
    ChapterHealth,
    ChapterRecommendations,
    CompressedScene,
    Manuscript,
    PacingProfile,
    Scene,
)
from ..timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_USER_TEMPLATE = (_PROMPTS_DIR / "chapter_user.txt").read_text().strip()

CHAPTER_SIZE = 10
_CHAPTER_MARKER = re.compile(r"chapter\s+\d+|chapter\s+[ivxlcdm]+|\[chapter|^chapter\s", re.IGNORECASE)

ProgressFn = Callable[[int, Optional[str]], None]


class ChapterAnalyzer:

    def __init__(self, capability: AnalysisCapability, *, model_override: str | None = None):
        self.capability = capability
        self.model_override = model_override
        self.models_used: dict[str, str] = {}

    @timed_pass("chapters")
    async def analyze_chapters(
        self,
        manuscript: Manuscript,
        compressed: list[CompressedScene],
        token: CancellationToken | None = None,
        on_progress: ProgressFn | None = None,
        results: list[ChapterFlowAnalysis] | None = None,
    ) -> list[ChapterFlowAnalysis]:
        """Analyse each chapter in order, appending to ``results`` as it goes."""
        if results is None:
            results = []
        if not compressed:
            log.debug("No scenes to analyze")
            return results

        chapters = identify_chapters(manuscript, compressed)

        for number, scenes in enumerate(chapters, start=1):
            if token is not None and token.cancelled:
                log.info("Chapter analysis cancelled after %d/%d chapters", len(results), len(chapters))
                break

            try:
                analysis = await self._analyze_chapter(scenes, number)
            except FatalConfigurationError:
                raise
            except Exception:
                log.debug("Chapter %d analysis failed, using heuristic", number, exc_info=True)
                analysis = fallback_chapter(scenes, number)
            results.append(analysis)

            if on_progress is not None:
                on_progress(len(results) * 100 // len(chapters), scenes[-1].id)

        return results

    async def _analyze_chapter(self, scenes: list[CompressedScene], number: int) -> ChapterFlowAnalysis:
        total_words = sum(s.metadata.word_count for s in scenes)
        prompt = build_chapter_prompt(scenes, number, total_words)
        options = {"prompt": prompt, "focus_areas": ["chapter-coherence"]}
        if self.model_override:
            options["model_override"] = self.model_override

        request = AnalysisRequest(
            scene=Scene(
                id=f"chapter-{number}",
                text=prompt,
                word_count=total_words,
                position=scenes[0].position,
                original_position=scenes[0].position,
            ),
            analysis_type="consistency",
            reader_context=ReaderKnowledge(),
            options=options,
        )

        try:
            response = await self.capability.analyze(request)
        except FatalConfigurationError:
            raise
        except Exception as exc:
            log.debug("AI analysis failed for chapter %d: %s", number, exc)
            return fallback_chapter(scenes, number)

        self.models_used[f"chapter-{number}"] = response.metadata.model_used
        return parse_chapter_response(response, scenes, number)


def is_chapter_boundary(scene: Scene | None, is_first: bool) -> bool:
    if is_first:
        return True
    if scene is None or not scene.text:
        return False
    return bool(_CHAPTER_MARKER.search(scene.text[:200]))


def identify_chapters(manuscript: Manuscript, compressed: list[CompressedScene]) -> list[list[CompressedScene]]:
    """Split scenes at explicit chapter markers or every ``CHAPTER_SIZE`` scenes."""
    by_id = {s.id: s for s in manuscript.scenes}
    chapters: list[list[CompressedScene]] = []
    current: list[CompressedScene] = []

    for i, scene in enumerate(compressed):
        if is_chapter_boundary(by_id.get(scene.id), i == 0) and current:
            chapters.append(current)
            current = []
        current.append(scene)
        if len(current) >= CHAPTER_SIZE:
            chapters.append(current)
            current = []

    if current:
        chapters.append(current)
    return chapters


def build_chapter_prompt(scenes: list[CompressedScene], number: int, total_words: int) -> str:
    summaries = "\n".join(
        f"- [{s.id}] (tension {s.metadata.tension_level}/10, {s.metadata.emotional_tone}) {s.summary}"
        for s in scenes
    )
    return _USER_TEMPLATE.format(
        chapter_number=number,
        scene_count=len(scenes),
        word_count=total_words,
        opening_hook=scenes[0].opening[:200],
        closing_line=scenes[-1].closing[-200:],
        scene_summaries=summaries,
    )


def parse_chapter_response(
    response: AnalysisResponse,
    scenes: list[CompressedScene],
    number: int,
) -> ChapterFlowAnalysis:
    data = decode_chapter(response.payload)
    return ChapterFlowAnalysis(
        chapter_number=number,
        scene_ids=[s.id for s in scenes],
        coherence_score=data.coherence_score,
        issues=ChapterHealth(
            unity=not data.issues.unity,
            completeness=not data.issues.completeness,
            balanced_pacing=not data.issues.balanced_pacing,
            narrative_purpose=not data.issues.narrative_purpose,
        ),
        recommendations=ChapterRecommendations(
            should_split=data.should_split,
            should_merge_with_next=data.should_merge_with_next,
            orphaned_scenes=data.orphaned_scenes,
            missing_elements=data.missing_elements,
        ),
        pacing_profile=PacingProfile(
            front_loaded=data.pacing_issues.front_loaded,
            saggy_middle=data.pacing_issues.saggy_middle,
            rushed_ending=data.pacing_issues.rushed_ending,
        ),
    )


def _mean(values: list[int]) -> float:
    return sum(values) / (len(values) or 1)


def fallback_chapter(scenes: list[CompressedScene], number: int) -> ChapterFlowAnalysis:
    """Heuristic chapter analysis from scene count and tension thirds."""
    tensions = [s.metadata.tension_level for s in scenes]
    n = len(tensions)
    avg = _mean(tensions)
    first_cut, second_cut = math.ceil(n / 3), math.ceil(2 * n / 3)
    front = _mean(tensions[:first_cut])
    middle = _mean(tensions[first_cut:second_cut])
    end = _mean(tensions[second_cut:])

    return ChapterFlowAnalysis(
        chapter_number=number,
        scene_ids=[s.id for s in scenes],
        coherence_score=0.6,
        issues=ChapterHealth(
            unity=not n > 15,
            completeness=not n < 3,
            balanced_pacing=not abs(front - end) > 3,
            narrative_purpose=not avg < 3,
        ),
        recommendations=ChapterRecommendations(
            should_split=n > 15,
            should_merge_with_next=n < 3,
            missing_elements=["Conflict or tension"] if avg < 3 else [],
        ),
        pacing_profile=PacingProfile(
            front_loaded=front > middle + 2 and front > end + 2,
            saggy_middle=middle < front - 2 and middle < end - 2,
            rushed_ending=end > middle + 3,
        ),
    )
