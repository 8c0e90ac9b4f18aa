"""
Pytest Configuration and Fixtures

Shared scene factories and a scripted stand-in for the AI capability.
"""

from typing import Any, Callable, Optional, Union

import pytest

from coherence.capability import AnalysisRequest, AnalysisResponse, ResponseMetadata
from coherence.errors import ServiceUnavailableError
from coherence.models import CompressedScene, Manuscript, Scene, SceneMetadata

CALM_TEXT = "She walked along the quiet river and watched the boats drift past the old mill."

Handler = Callable[[AnalysisRequest], Union[dict, BaseException, AnalysisResponse]]


def focus_of(request: AnalysisRequest) -> str:
    areas = request.options.get("focus_areas") or []
    return areas[0] if areas else "continuity"


class FakeAnalyzer:
    """Scripted ``AnalysisCapability``.

    ``handler`` maps a request to a payload dict, an ``AnalysisResponse``
    or an exception to raise.  Without a handler every call fails with a
    non-fatal ``ServiceUnavailableError`` so passes use their heuristics.
    """

    def __init__(self, handler: Optional[Handler] = None, model: str = "fake-model"):
        self.handler = handler
        self.model = model
        self.requests: list[AnalysisRequest] = []

    @classmethod
    def by_focus(cls, responses: dict[str, Any], **kwargs) -> "FakeAnalyzer":
        def handler(request):
            key = focus_of(request)
            if key not in responses:
                return ServiceUnavailableError("fake", 503)
            return responses[key]
        return cls(handler, **kwargs)

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        self.requests.append(request)
        if self.handler is None:
            raise ServiceUnavailableError("fake", 503)
        result = self.handler(request)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, AnalysisResponse):
            return result
        return AnalysisResponse(
            metadata=ResponseMetadata(
                model_used=request.options.get("model_override") or self.model,
                provider="fake",
            ),
            payload=result,
        )

    def calls_for(self, focus: str) -> list[AnalysisRequest]:
        return [r for r in self.requests if focus_of(r) == focus]


def make_scene(scene_id: str, text: str = CALM_TEXT, **kwargs) -> Scene:
    return Scene(id=scene_id, text=text, word_count=len(text.split()), **kwargs)


def make_compressed(
    scene_id: str,
    position: int = 0,
    tension: int = 1,
    tone: str = "neutral",
    characters: Optional[list[str]] = None,
    summary: str = "",
) -> CompressedScene:
    return CompressedScene(
        id=scene_id,
        position=position,
        opening=f"Opening of {scene_id}",
        closing=f"Closing of {scene_id}",
        summary=summary or f"Summary of {scene_id}",
        metadata=SceneMetadata(
            word_count=100,
            characters=characters or [],
            emotional_tone=tone,
            tension_level=tension,
        ),
    )


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    """Capability whose every call fails non-fatally."""
    return FakeAnalyzer()


@pytest.fixture
def scene_factory():
    return make_scene


@pytest.fixture
def compressed_factory():
    return make_compressed


@pytest.fixture
def manuscript_factory():
    """Build a manuscript of ``n`` calm scenes named s0..s{n-1}."""
    def build(n: int, texts: Optional[dict[int, str]] = None, characters: Optional[dict[int, list[str]]] = None):
        texts = texts or {}
        characters = characters or {}
        scenes = [
            make_scene(f"s{i}", texts.get(i, CALM_TEXT), position=i, original_position=i,
                       characters=characters.get(i, []))
            for i in range(n)
        ]
        order = [s.id for s in scenes]
        return Manuscript(id="m1", title="Test Manuscript", scenes=scenes,
                          original_order=list(order), current_order=list(order))
    return build
