"""Manuscript compression.

Turns full scenes into token-bounded ``CompressedScene`` objects (boundary
excerpts, heuristic metadata, summary) and folds those into a
chapter/act/overview skeleton for the arc pass.  Compression never fails:
any per-scene error yields a heuristic fallback for that scene.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from .capability import AnalysisCapability, AnalysisRequest, ReaderKnowledge
from .decoding import decode_summary
from .models import (
    ActSummary,
    ChapterSummary,
    CompressedScene,
    Manuscript,
    ManuscriptSkeleton,
    Scene,
    SceneMetadata,
)
from .timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_SUMMARY_TEMPLATE = (_PROMPTS_DIR / "summary_user.txt").read_text().strip()

_BATCH_SIZE = 5

# Checked in order; first match wins.
_TONE_PATTERNS = (
    ("tense", re.compile(r"(?:fight|argument|conflict|anger|rage)\b", re.IGNORECASE)),
    ("sad", re.compile(r"(?:cry|tears|sorrow|grief|mourn)\b", re.IGNORECASE)),
    ("happy", re.compile(r"(?:laugh|joy|smile|celebrate|cheer)\b", re.IGNORECASE)),
    ("suspense", re.compile(r"(?:mystery|unknown|shadow|creep|sneak)\b", re.IGNORECASE)),
)
_TENSION_WORDS = re.compile(
    r"\b(fight|chase|escape|danger|threat|scream|attack|die|kill|blood)\b", re.IGNORECASE,
)

_DEPTH_OPTIONS = {
    "quick": {"max_boundary_words": 100, "max_summary_words": 75},
    "standard": {"max_boundary_words": 200, "max_summary_words": 150},
    "thorough": {"max_boundary_words": 200, "max_summary_words": 150, "use_ai_for_summaries": True},
}


def options_for_depth(depth: str) -> dict:
    """Compressor keyword arguments for an analysis depth."""
    return dict(_DEPTH_OPTIONS.get(depth, _DEPTH_OPTIONS["standard"]))


def detect_emotional_tone(text: str) -> str:
    for tone, pattern in _TONE_PATTERNS:
        if pattern.search(text):
            return tone
    return "neutral"


def calculate_tension_level(text: str) -> int:
    if not text:
        return 1
    return min(10, max(1, len(_TENSION_WORDS.findall(text))))


def truncate_words(text: str, max_words: int) -> str:
    if not text:
        return ""
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + "..."


def _names(value) -> list[str]:
    """De-duplicated string entries of a list-like field; anything else is empty."""
    if not isinstance(value, (list, tuple, set)):
        return []
    return list(dict.fromkeys(v for v in value if isinstance(v, str)))


class ManuscriptCompressor:
    """Builds compressed scenes and the manuscript skeleton."""

    def __init__(
        self,
        capability: AnalysisCapability | None = None,
        *,
        max_boundary_words: int = 200,
        max_summary_words: int = 150,
        use_ai_for_summaries: bool = False,
        previous_context_scenes: int = 0,
        delay_ms_between_batches: int | None = None,
        chapter_size: int = 10,
    ):
        self.capability = capability
        self.max_boundary_words = max_boundary_words
        self.max_summary_words = max_summary_words
        self.use_ai_for_summaries = use_ai_for_summaries and capability is not None
        self.previous_context_scenes = previous_context_scenes
        if delay_ms_between_batches is None:
            delay_ms_between_batches = 350 if use_ai_for_summaries else 0
        self.delay_ms_between_batches = delay_ms_between_batches
        self.chapter_size = max(1, chapter_size)

    async def compress_scene(self, scene: Scene, position: int) -> CompressedScene:
        return await self._compress(scene, position, [])

    @timed_pass("compression")
    async def prepare_scenes_for_analysis(self, scenes: list[Scene]) -> list[CompressedScene]:
        """Compress every scene in batches of five, falling back per scene."""
        if not scenes:
            return []

        out: list[CompressedScene] = []
        for start in range(0, len(scenes), _BATCH_SIZE):
            batch = scenes[start:start + _BATCH_SIZE]
            coros = []
            for offset, scene in enumerate(batch):
                position = start + offset
                prev = self.previous_context_scenes
                previous = scenes[max(0, position - prev):position] if prev > 0 else []
                coros.append(self._compress(scene, position, previous))

            results = await asyncio.gather(*coros, return_exceptions=True)
            for offset, result in enumerate(results):
                if isinstance(result, BaseException):
                    scene = batch[offset]
                    log.debug("Failed to compress scene %s: %s", scene.id, result)
                    result = self._fallback_compression(scene, start + offset)
                out.append(result)

            if len(scenes) > 50 and start % 20 == 0:
                log.debug("Compressed %d/%d scenes", min(start + len(batch), len(scenes)), len(scenes))

            more = start + _BATCH_SIZE < len(scenes)
            if self.use_ai_for_summaries and self.delay_ms_between_batches > 0 and more:
                await asyncio.sleep(self.delay_ms_between_batches / 1000)

        return out

    async def create_manuscript_skeleton(
        self,
        manuscript: Manuscript,
        compressed: list[CompressedScene] | None = None,
    ) -> ManuscriptSkeleton:
        """Hierarchical chapter/act/overview view of the manuscript.

        ``compressed`` lets a caller that already compressed the scenes
        skip a second compression round.
        """
        scenes = compressed if compressed is not None else await self.prepare_scenes_for_analysis(manuscript.scenes)
        chapters = self._summarize_chapters(scenes)
        acts = self._summarize_acts(chapters)
        overview = truncate_words(" ".join(a.summary for a in acts), self.max_summary_words * 3)
        return ManuscriptSkeleton(scenes=scenes, chapters=chapters, acts=acts, overview=overview)

    # ------------------------------------------------------------------

    async def _compress(self, scene: Scene, position: int, previous: list[Scene]) -> CompressedScene:
        text = scene.text or ""
        summary = ""
        if self.use_ai_for_summaries:
            summary = await self._try_ai_summary(scene, previous)
        if not summary:
            summary = truncate_words(text, self.max_summary_words)

        return CompressedScene(
            id=scene.id,
            position=position,
            opening=self._opening(text),
            closing=self._closing(text),
            summary=summary,
            metadata=self._metadata(scene),
        )

    def _fallback_compression(self, scene: Scene, position: int) -> CompressedScene:
        text = getattr(scene, "text", "") or ""
        return CompressedScene(
            id=getattr(scene, "id", None) or f"unknown-{position}",
            position=position,
            opening=self._opening(text),
            closing=self._closing(text),
            summary=truncate_words(text, self.max_summary_words),
            metadata=SceneMetadata(
                word_count=len(text.split()),
                characters=_names(getattr(scene, "characters", None)),
                locations=_names(getattr(scene, "location_markers", None)),
                emotional_tone=detect_emotional_tone(text),
                tension_level=calculate_tension_level(text),
            ),
        )

    def _opening(self, text: str) -> str:
        words = text.split()
        if len(words) <= self.max_boundary_words:
            return text
        return " ".join(words[:self.max_boundary_words])

    def _closing(self, text: str) -> str:
        words = text.split()
        if len(words) <= self.max_boundary_words:
            return text
        return " ".join(words[-self.max_boundary_words:])

    @staticmethod
    def _metadata(scene: Scene) -> SceneMetadata:
        text = scene.text or ""
        return SceneMetadata(
            word_count=scene.word_count or len(text.split()),
            characters=list(dict.fromkeys(scene.characters)),
            locations=list(dict.fromkeys(scene.location_markers)),
            emotional_tone=detect_emotional_tone(text),
            tension_level=calculate_tension_level(text),
        )

    async def _try_ai_summary(self, scene: Scene, previous: list[Scene]) -> str:
        prompt = _SUMMARY_TEMPLATE.format(
            max_words=self.max_summary_words,
            scene_id=scene.id,
            scene_text=scene.text,
        )
        request = AnalysisRequest(
            scene=scene,
            previous_scenes=previous,
            analysis_type="simple",
            reader_context=ReaderKnowledge(known_characters=set(scene.characters)),
            options={"prompt": prompt},
        )
        try:
            response = await self.capability.analyze(request)
        except Exception as exc:
            log.debug("AI summary failed for scene %s, using truncation: %s", scene.id, exc)
            return ""
        return truncate_words(decode_summary(response.payload), self.max_summary_words)

    def _summarize_chapters(self, scenes: list[CompressedScene]) -> list[ChapterSummary]:
        chapters = []
        for start in range(0, len(scenes), self.chapter_size):
            group = scenes[start:start + self.chapter_size]
            combined = " ".join([s.summary.strip() for s in group if s.summary.strip()][:3])
            key_characters = list(dict.fromkeys(c for s in group for c in s.metadata.characters))

            preface = f"Chapter covering {len(group)} scene(s)."
            char_line = f" Key characters: {', '.join(key_characters)}." if key_characters else ""
            body = combined or " ".join(s.opening for s in group)
            chapters.append(ChapterSummary(
                summary=truncate_words(f"{preface}{char_line} {body}".strip(), self.max_summary_words),
                scene_ids=[s.id for s in group],
            ))
        return chapters

    def _summarize_acts(self, chapters: list[ChapterSummary]) -> list[ActSummary]:
        n = len(chapters)
        if n == 0:
            return []

        act1_end = max(1, int(n * 0.3 + 0.5))
        act2_end = max(act1_end + 1, int(n * 0.8 + 0.5))
        ranges = [
            (0, min(act1_end, n) - 1),
            (min(act1_end, n), min(act2_end, n) - 1),
            (min(act2_end, n), n - 1),
        ]

        acts = []
        for name, (start, end) in zip(("Act I", "Act II", "Act III"), ranges):
            if start > end or start >= n:
                acts.append(ActSummary(summary=f"{name}: (no content)", chapter_range=(start, max(start, end))))
                continue
            combined = " ".join(c.summary for c in chapters[start:end + 1])
            acts.append(ActSummary(
                summary=truncate_words(f"{name}: {combined}", self.max_summary_words * 2),
                chapter_range=(start, end),
            ))
        return acts
