"""
Tests for the Chapter Pass

Tests for coherence/passes/chapters.py
"""

import pytest

from coherence.capability import AnalysisResponse
from coherence.errors import InvalidKeyError
from coherence.passes.chapters import (
    ChapterAnalyzer,
    fallback_chapter,
    identify_chapters,
    is_chapter_boundary,
    parse_chapter_response,
)

from conftest import FakeAnalyzer, make_compressed, make_scene


def _compressed(manuscript):
    return [make_compressed(s.id, position=i) for i, s in enumerate(manuscript.scenes)]


class TestChapterBoundaries:
    """Tests for chapter grouping."""

    def test_markers(self):
        assert is_chapter_boundary(None, True) is True
        assert is_chapter_boundary(make_scene("a", "Chapter 3\nIt rained."), False) is True
        assert is_chapter_boundary(make_scene("a", "CHAPTER XII begins"), False) is True
        assert is_chapter_boundary(make_scene("a", "It rained."), False) is False
        assert is_chapter_boundary(None, False) is False

    def test_groups_of_ten_without_markers(self, manuscript_factory):
        manuscript = manuscript_factory(23)

        chapters = identify_chapters(manuscript, _compressed(manuscript))

        assert [len(c) for c in chapters] == [10, 10, 3]

    def test_explicit_marker_starts_new_chapter(self, manuscript_factory):
        manuscript = manuscript_factory(6, texts={4: "Chapter 2\nMorning came."})

        chapters = identify_chapters(manuscript, _compressed(manuscript))

        assert [[s.id for s in c] for c in chapters] == [["s0", "s1", "s2", "s3"], ["s4", "s5"]]


class TestFallbackChapter:
    """Tests for the scene-count heuristic."""

    def test_short_low_tension_chapter(self):
        scenes = [make_compressed(f"s{i}", tension=1) for i in range(2)]

        result = fallback_chapter(scenes, 1)

        assert result.coherence_score == 0.6
        assert result.issues.completeness is False
        assert result.issues.narrative_purpose is False
        assert result.issues.unity is True
        assert result.recommendations.should_merge_with_next is True
        assert result.recommendations.missing_elements == ["Conflict or tension"]

    def test_saggy_middle_and_rushed_ending(self):
        tensions = [6, 6, 6, 1, 1, 1, 9, 9, 9]
        scenes = [make_compressed(f"s{i}", tension=t) for i, t in enumerate(tensions)]

        result = fallback_chapter(scenes, 2)

        assert result.pacing_profile.saggy_middle is True
        assert result.pacing_profile.rushed_ending is True
        assert result.pacing_profile.front_loaded is False
        assert result.issues.balanced_pacing is True


class TestParseChapter:
    """Tests for provider polarity handling."""

    def test_problem_flags_are_negated(self):
        response = AnalysisResponse(payload={
            "coherenceScore": 0.9,
            "issues": {"unity": False, "completeness": False, "balancedPacing": True, "narrativePurpose": False},
            "pacingIssues": {"saggyMiddle": True},
            "orphanedScenes": ["s1"],
        })

        result = parse_chapter_response(response, [make_compressed("s0"), make_compressed("s1")], 1)

        assert result.issues.unity is True
        assert result.issues.balanced_pacing is False
        assert result.pacing_profile.saggy_middle is True
        assert result.recommendations.orphaned_scenes == ["s1"]
        assert result.scene_ids == ["s0", "s1"]

    def test_missing_flags_mean_unhealthy(self):
        result = parse_chapter_response(AnalysisResponse(payload={}), [make_compressed("s0")], 1)
        assert result.issues.unity is False


class TestAnalyzeChapters:
    """Tests for ChapterAnalyzer.analyze_chapters."""

    @pytest.mark.asyncio
    async def test_no_scenes(self, fake_analyzer, manuscript_factory):
        assert await ChapterAnalyzer(fake_analyzer).analyze_chapters(manuscript_factory(0), []) == []

    @pytest.mark.asyncio
    async def test_one_result_per_chapter(self, manuscript_factory):
        fake = FakeAnalyzer(lambda request: {"coherenceScore": 0.8})
        manuscript = manuscript_factory(15)
        progress = []
        analyzer = ChapterAnalyzer(fake)

        results = await analyzer.analyze_chapters(
            manuscript, _compressed(manuscript), on_progress=lambda p, sid: progress.append((p, sid)),
        )

        assert [r.chapter_number for r in results] == [1, 2]
        assert all(r.coherence_score == 0.8 for r in results)
        assert [r.scene.id for r in fake.requests] == ["chapter-1", "chapter-2"]
        assert progress == [(50, "s9"), (100, "s14")]
        assert set(analyzer.models_used) == {"chapter-1", "chapter-2"}

    @pytest.mark.asyncio
    async def test_failure_uses_heuristic(self, fake_analyzer, manuscript_factory):
        manuscript = manuscript_factory(4)

        results = await ChapterAnalyzer(fake_analyzer).analyze_chapters(manuscript, _compressed(manuscript))

        assert len(results) == 1
        assert results[0].coherence_score == 0.6

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, manuscript_factory):
        manuscript = manuscript_factory(4)
        analyzer = ChapterAnalyzer(FakeAnalyzer(lambda request: InvalidKeyError("ollama", "HTTP 403")))

        with pytest.raises(InvalidKeyError):
            await analyzer.analyze_chapters(manuscript, _compressed(manuscript))

    @pytest.mark.asyncio
    async def test_appends_into_caller_list(self, manuscript_factory):
        manuscript = manuscript_factory(15)
        running = []
        seen = []

        results = await ChapterAnalyzer(FakeAnalyzer(lambda request: {})).analyze_chapters(
            manuscript, _compressed(manuscript),
            on_progress=lambda p, sid: seen.append(len(running)),
            results=running,
        )

        assert results is running
        assert seen == [1, 2]
