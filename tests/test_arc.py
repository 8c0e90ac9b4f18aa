"""
Tests for the Arc Pass

Tests for coherence/passes/arc.py
"""

import pytest

from coherence.cancellation import CancellationToken
from coherence.capability import AnalysisResponse
from coherence.errors import InvalidKeyError
from coherence.models import ManuscriptSkeleton
from coherence.passes.arc import (
    ArcValidator,
    build_arc_prompt,
    fallback_arc,
    infer_theme,
    main_characters,
    parse_arc_response,
    split_acts,
)

from conftest import FakeAnalyzer, make_compressed


def _cast(n):
    """Anna everywhere, Ben only in the first half."""
    return [
        make_compressed(f"s{i}", position=i, characters=["Anna", "Ben"] if i < n // 2 else ["Anna"])
        for i in range(n)
    ]


class TestStructureHelpers:
    """Tests for act splitting and character ranking."""

    def test_split_acts_25_50_25(self):
        acts = split_acts(_cast(8))
        assert [len(a) for a in acts] == [2, 4, 2]

    def test_split_acts_small(self):
        acts = split_acts(_cast(1))
        assert [len(a) for a in acts] == [0, 1, 0]

    def test_main_characters_by_scene_count(self):
        scenes = [
            make_compressed("a", characters=["Cara", "Dan", "Dan"]),
            make_compressed("b", characters=["Dan"]),
            make_compressed("c", characters=["Eve"]),
        ]
        assert main_characters(scenes) == ["Dan", "Cara", "Eve"]

    def test_main_characters_capped_at_five(self):
        scenes = [make_compressed("a", characters=[f"c{i}" for i in range(8)])]
        assert len(main_characters(scenes)) == 5

    def test_infer_theme(self):
        assert infer_theme([]) == "journey and transformation"
        assert infer_theme([make_compressed("a", tension=9)]) == "conflict and resolution"
        assert infer_theme([make_compressed("a", tension=1)]) == "character development"

    def test_prompt_lists_every_act(self):
        scenes = _cast(8)
        skeleton = ManuscriptSkeleton(scenes=scenes, overview="An overview.")

        prompt = build_arc_prompt(skeleton, ["Anna"], split_acts(scenes))

        assert prompt.count("<act ") == 3
        assert 'scenes="s0..s1"' in prompt
        assert "An overview." in prompt


class TestFallbackArc:
    """Tests for the count-based arc heuristic."""

    def test_character_absent_from_later_acts(self):
        scenes = _cast(8)
        acts = split_acts(scenes)

        result = fallback_arc(scenes, ["Anna", "Ben"], acts)

        assert result.structural_integrity == 0.7
        assert result.act_balance == (0.25, 0.5, 0.25)
        assert result.character_arcs["Anna"].completeness == 1.0
        assert result.character_arcs["Ben"].completeness == 0.67
        assert result.character_arcs["Ben"].issues == ["Absent from Act III"]

    def test_empty(self):
        result = fallback_arc([], [], [[], [], []])
        assert result.act_balance == (0.25, 0.5, 0.25)
        assert result.character_arcs == {}


class TestParseArc:
    """Tests for arc response parsing."""

    def test_percent_balance_normalised(self):
        response = AnalysisResponse(payload={
            "actBalance": [30, 40, 30],
            "characterArcs": {"Anna": {"completeness": 0.4, "issues": ["Stalls"], "keyMissingElements": ["Climax"]}},
            "criticalFixes": [{"issue": "Missing motive", "affectedScenes": ["s3"]}],
        })

        result = parse_arc_response(response, split_acts(_cast(4)))

        assert result.act_balance == pytest.approx((0.3, 0.4, 0.3))
        assert result.character_arcs["Anna"].issues == ["Stalls", "Climax"]
        assert result.critical_fixes[0].priority == 5

    def test_missing_balance_from_counts(self):
        result = parse_arc_response(AnalysisResponse(payload={}), split_acts(_cast(4)))
        assert result.act_balance == (0.25, 0.5, 0.25)
        assert result.structural_integrity == 0.6


class TestValidateArc:
    """Tests for ArcValidator.validate_arc."""

    @pytest.mark.asyncio
    async def test_single_full_call_with_deep_model(self, manuscript_factory):
        fake = FakeAnalyzer(lambda request: {"structuralIntegrity": 0.9})
        validator = ArcValidator(fake, model_override="deep-model")
        progress = []

        result = await validator.validate_arc(
            ManuscriptSkeleton(scenes=_cast(4)), manuscript_factory(4),
            on_progress=lambda p, sid: progress.append(p),
        )

        assert result.structural_integrity == 0.9
        assert len(fake.requests) == 1
        assert fake.requests[0].analysis_type == "full"
        assert validator.models_used == {"arc": "deep-model"}
        assert progress == [100]

    @pytest.mark.asyncio
    async def test_failure_uses_heuristic(self, fake_analyzer, manuscript_factory):
        result = await ArcValidator(fake_analyzer).validate_arc(
            ManuscriptSkeleton(scenes=_cast(4)), manuscript_factory(4),
        )
        assert result.structural_integrity == 0.7

    @pytest.mark.asyncio
    async def test_no_scenes_skips_call(self, fake_analyzer, manuscript_factory):
        result = await ArcValidator(fake_analyzer).validate_arc(ManuscriptSkeleton(), manuscript_factory(0))

        assert fake_analyzer.requests == []
        assert result.act_balance == (0.25, 0.5, 0.25)

    @pytest.mark.asyncio
    async def test_cancelled_skips_call(self, fake_analyzer, manuscript_factory):
        token = CancellationToken()
        token.cancel()

        await ArcValidator(fake_analyzer).validate_arc(
            ManuscriptSkeleton(scenes=_cast(4)), manuscript_factory(4), token,
        )

        assert fake_analyzer.requests == []

    @pytest.mark.asyncio
    async def test_fatal_error_propagates(self, manuscript_factory):
        validator = ArcValidator(FakeAnalyzer(lambda request: InvalidKeyError("ollama", "HTTP 401")))

        with pytest.raises(InvalidKeyError):
            await validator.validate_arc(ManuscriptSkeleton(scenes=_cast(4)), manuscript_factory(4))
