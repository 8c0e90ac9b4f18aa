"""The single AI capability every pass depends on.

Passes never talk to a provider directly: they build an ``AnalysisRequest``
and hand it to whatever ``AnalysisCapability`` was injected into them.
A capability raises on failure; ``FatalConfigurationError`` subclasses abort
the whole run, anything else is handled where it is raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from .models import ContinuityIssue, Scene


@dataclass
class ReaderKnowledge:
    """What a reader plausibly knows at a given point in the manuscript."""

    known_characters: set[str] = field(default_factory=set)
    established_settings: list[str] = field(default_factory=list)
    established_timeline: list[str] = field(default_factory=list)
    revealed_plot_points: list[str] = field(default_factory=list)


@dataclass
class AnalysisRequest:
    scene: Scene
    previous_scenes: list[Scene] = field(default_factory=list)
    analysis_type: str = "simple"  # "simple" | "consistency" | "complex" | "full"
    reader_context: ReaderKnowledge = field(default_factory=ReaderKnowledge)
    # Recognised keys: "prompt", "focus_areas", "model_override".
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseMetadata:
    model_used: str = "unknown"
    provider: str = "unknown"
    duration_ms: int = 0
    confidence: float = 0.5
    cached: bool = False


@dataclass
class AnalysisResponse:
    issues: list[ContinuityIssue] = field(default_factory=list)
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)
    # Structured JSON returned by the provider, decoded per pass.
    payload: dict[str, Any] = field(default_factory=dict)


class AnalysisCapability(Protocol):
    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        ...


def build_reader_context(scenes) -> ReaderKnowledge:
    """Collect known characters and settings from compressed scenes, in order."""
    characters: set[str] = set()
    settings: list[str] = []
    for scene in scenes:
        for name in scene.metadata.characters:
            if name:
                characters.add(name)
        for loc in scene.metadata.locations:
            if loc and loc not in settings:
                settings.append(loc)
    return ReaderKnowledge(known_characters=characters, established_settings=settings)
