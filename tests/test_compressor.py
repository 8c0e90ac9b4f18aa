"""
Tests for Manuscript Compression

Tests for coherence/compressor.py
"""

import pytest

from coherence.compressor import (
    ManuscriptCompressor,
    calculate_tension_level,
    detect_emotional_tone,
    options_for_depth,
    truncate_words,
)
from coherence.models import Scene

from conftest import FakeAnalyzer, make_scene


class TestHeuristics:
    """Tests for tone, tension and truncation helpers."""

    def test_tone_first_match_wins(self):
        """Tense is checked before happy."""
        assert detect_emotional_tone("They laughed, then the fight began.") == "tense"

    def test_tone_detects_each_family(self):
        assert detect_emotional_tone("Her tears fell.") == "sad"
        assert detect_emotional_tone("A smile crossed his face.") == "happy"
        assert detect_emotional_tone("A shadow moved in the hall.") == "suspense"
        assert detect_emotional_tone("He drank his coffee.") == "neutral"

    def test_tension_bounds(self):
        assert calculate_tension_level("") == 1
        assert calculate_tension_level("Nothing happens here.") == 1
        assert calculate_tension_level("fight chase escape") == 3
        assert calculate_tension_level("blood " * 20) == 10

    def test_truncate_words(self):
        assert truncate_words("one two three", 5) == "one two three"
        assert truncate_words("one two three four", 2) == "one two..."
        assert truncate_words("", 3) == ""

    def test_depth_options(self):
        assert options_for_depth("quick") == {"max_boundary_words": 100, "max_summary_words": 75}
        assert options_for_depth("thorough")["use_ai_for_summaries"] is True
        assert options_for_depth("unknown") == options_for_depth("standard")


class TestCompressScene:
    """Tests for single-scene compression."""

    @pytest.mark.asyncio
    async def test_short_scene_keeps_full_text(self):
        compressor = ManuscriptCompressor()
        scene = make_scene("s1", "The fight ended. Anna wept.", characters=["Anna", "Ben", "Anna"],
                           location_markers=["hall", "hall"])

        result = await compressor.compress_scene(scene, 4)

        assert result.id == "s1"
        assert result.position == 4
        assert result.opening == scene.text
        assert result.closing == scene.text
        assert result.summary == scene.text
        assert result.metadata.characters == ["Anna", "Ben"]
        assert result.metadata.locations == ["hall"]
        assert result.metadata.emotional_tone == "tense"
        assert result.metadata.tension_level == 1

    @pytest.mark.asyncio
    async def test_long_scene_is_bounded(self):
        compressor = ManuscriptCompressor(max_boundary_words=3, max_summary_words=2)
        scene = make_scene("s1", "a b c d e f g")

        result = await compressor.compress_scene(scene, 0)

        assert result.opening == "a b c"
        assert result.closing == "e f g"
        assert result.summary == "a b..."

    @pytest.mark.asyncio
    async def test_word_count_falls_back_to_text(self):
        compressor = ManuscriptCompressor()
        result = await compressor.compress_scene(Scene(id="s", text="one two three"), 0)
        assert result.metadata.word_count == 3

    @pytest.mark.asyncio
    async def test_ai_summary_used_when_enabled(self):
        analyzer = FakeAnalyzer(lambda request: {"summary": "  Anna leaves town.  "})
        compressor = ManuscriptCompressor(analyzer, use_ai_for_summaries=True, delay_ms_between_batches=0)

        result = await compressor.compress_scene(make_scene("s1"), 0)

        assert result.summary == "Anna leaves town."
        assert analyzer.requests[0].analysis_type == "simple"
        assert "s1" in analyzer.requests[0].options["prompt"]

    @pytest.mark.asyncio
    async def test_ai_summary_failure_falls_back_to_truncation(self, fake_analyzer):
        compressor = ManuscriptCompressor(fake_analyzer, use_ai_for_summaries=True, max_summary_words=3)

        result = await compressor.compress_scene(make_scene("s1", "a b c d e"), 0)

        assert result.summary == "a b c..."


class TestPrepareScenes:
    """Tests for batched compression."""

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await ManuscriptCompressor().prepare_scenes_for_analysis([]) == []

    @pytest.mark.asyncio
    async def test_order_and_positions_preserved(self):
        scenes = [make_scene(f"s{i}") for i in range(12)]

        result = await ManuscriptCompressor().prepare_scenes_for_analysis(scenes)

        assert [c.id for c in result] == [s.id for s in scenes]
        assert [c.position for c in result] == list(range(12))

    @pytest.mark.asyncio
    async def test_previous_context_passed_to_summaries(self):
        analyzer = FakeAnalyzer(lambda request: {"summary": "ok"})
        compressor = ManuscriptCompressor(
            analyzer, use_ai_for_summaries=True, previous_context_scenes=2, delay_ms_between_batches=0,
        )
        scenes = [make_scene(f"s{i}") for i in range(4)]

        await compressor.prepare_scenes_for_analysis(scenes)

        by_scene = {r.scene.id: [p.id for p in r.previous_scenes] for r in analyzer.requests}
        assert by_scene["s0"] == []
        assert by_scene["s1"] == ["s0"]
        assert by_scene["s3"] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_failed_scene_falls_back_in_place(self, monkeypatch):
        text = make_scene("x").text
        scenes = [
            Scene(id=f"s{i}", text=text, word_count=500, characters=["Anna", "Anna", "Ben"], location_markers=["Mill"])
            for i in range(8)
        ]
        compressor = ManuscriptCompressor()
        real_compress = compressor._compress

        async def compress(scene, position, previous):
            if scene.id == "s6":
                raise RuntimeError("scene exploded")
            return await real_compress(scene, position, previous)

        monkeypatch.setattr(compressor, "_compress", compress)

        result = await compressor.prepare_scenes_for_analysis(scenes)

        assert [c.id for c in result] == [s.id for s in scenes]
        assert [c.position for c in result] == list(range(8))
        assert [c.metadata.word_count for c in result if c.id != "s6"] == [500] * 7
        fallback = result[6]
        assert fallback.metadata.word_count == len(text.split())
        assert fallback.metadata.characters == ["Anna", "Ben"]
        assert fallback.metadata.locations == ["Mill"]
        assert fallback.summary

    @pytest.mark.asyncio
    async def test_malformed_scene_does_not_abort_batch(self):
        scenes = [make_scene("s0"), make_scene("s1", characters=5), make_scene("s2", characters=["Anna"])]

        result = await ManuscriptCompressor().prepare_scenes_for_analysis(scenes)

        assert [(c.id, c.position) for c in result] == [("s0", 0), ("s1", 1), ("s2", 2)]
        assert result[1].metadata.characters == []
        assert result[2].metadata.characters == ["Anna"]

    def test_delay_defaults(self, fake_analyzer):
        assert ManuscriptCompressor(fake_analyzer).delay_ms_between_batches == 0
        assert ManuscriptCompressor(fake_analyzer, use_ai_for_summaries=True).delay_ms_between_batches == 350

    def test_ai_summaries_need_a_capability(self):
        assert ManuscriptCompressor(None, use_ai_for_summaries=True).use_ai_for_summaries is False


class TestSkeleton:
    """Tests for the chapter/act/overview skeleton."""

    @pytest.mark.asyncio
    async def test_chapters_of_ten(self, manuscript_factory):
        manuscript = manuscript_factory(25)

        skeleton = await ManuscriptCompressor().create_manuscript_skeleton(manuscript)

        assert len(skeleton.scenes) == 25
        assert [len(c.scene_ids) for c in skeleton.chapters] == [10, 10, 5]
        assert skeleton.chapters[2].scene_ids[0] == "s20"

    @pytest.mark.asyncio
    async def test_acts_cover_all_chapters(self, manuscript_factory):
        manuscript = manuscript_factory(100)

        skeleton = await ManuscriptCompressor().create_manuscript_skeleton(manuscript)

        assert len(skeleton.acts) == 3
        assert [a.chapter_range for a in skeleton.acts] == [(0, 2), (3, 7), (8, 9)]
        assert skeleton.acts[0].summary.startswith("Act I:")
        assert skeleton.overview

    @pytest.mark.asyncio
    async def test_single_chapter_leaves_later_acts_empty(self, manuscript_factory):
        skeleton = await ManuscriptCompressor().create_manuscript_skeleton(manuscript_factory(3))

        assert skeleton.acts[0].chapter_range == (0, 0)
        assert skeleton.acts[1].summary == "Act II: (no content)"
        assert skeleton.acts[2].summary == "Act III: (no content)"

    @pytest.mark.asyncio
    async def test_precomputed_scenes_are_reused(self, manuscript_factory):
        analyzer = FakeAnalyzer(lambda request: {"summary": "ok"})
        compressor = ManuscriptCompressor(analyzer, use_ai_for_summaries=True, delay_ms_between_batches=0)
        manuscript = manuscript_factory(3)
        compressed = await compressor.prepare_scenes_for_analysis(manuscript.scenes)
        calls = len(analyzer.requests)

        skeleton = await compressor.create_manuscript_skeleton(manuscript, compressed)

        assert skeleton.scenes is compressed
        assert len(analyzer.requests) == calls

    @pytest.mark.asyncio
    async def test_empty_manuscript(self, manuscript_factory):
        skeleton = await ManuscriptCompressor().create_manuscript_skeleton(manuscript_factory(0))

        assert skeleton.chapters == []
        assert skeleton.acts == []
        assert skeleton.overview == ""
