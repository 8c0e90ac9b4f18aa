"""Data models for the global coherence analysis pipeline."""

from dataclasses import dataclass, field
from typing import Any, Optional


SEVERITIES = ("consider", "should-fix", "must-fix")  # ordered low -> high impact

PASS_ORDER = ("transitions", "sequences", "chapters", "arc", "synthesis")


# ----------------------------------------------------------------------
# Manuscript input
# ----------------------------------------------------------------------

@dataclass
class Scene:
    """Raw narrative unit as loaded from the manuscript."""

    id: str
    text: str
    word_count: int = 0
    position: int = 0
    original_position: int = 0
    characters: list[str] = field(default_factory=list)
    time_markers: list[str] = field(default_factory=list)
    location_markers: list[str] = field(default_factory=list)
    has_been_moved: bool = False


@dataclass
class Manuscript:
    id: str
    title: str
    scenes: list[Scene] = field(default_factory=list)
    original_order: list[str] = field(default_factory=list)
    current_order: list[str] = field(default_factory=list)


@dataclass
class ContinuityIssue:
    """Scene-local issue produced by the per-scene detectors."""

    type: str  # "pronoun" | "timeline" | "character" | "plot" | "context" | "engagement"
    severity: str
    description: str
    text_span: tuple[int, int] = (0, 0)
    suggested_fix: str = ""


# ----------------------------------------------------------------------
# Compressed representation
# ----------------------------------------------------------------------

@dataclass
class SceneMetadata:
    word_count: int = 0
    characters: list[str] = field(default_factory=list)  # de-duplicated, first-seen order
    locations: list[str] = field(default_factory=list)
    emotional_tone: str = "neutral"  # "tense" | "sad" | "happy" | "suspense" | "neutral"
    tension_level: int = 1  # 1..10


@dataclass
class CompressedScene:
    """Token-bounded stand-in for a Scene, regenerated on every run."""

    id: str
    position: int
    opening: str
    closing: str
    summary: str
    metadata: SceneMetadata = field(default_factory=SceneMetadata)


@dataclass
class ChapterSummary:
    summary: str
    scene_ids: list[str] = field(default_factory=list)


@dataclass
class ActSummary:
    summary: str
    chapter_range: tuple[int, int] = (0, 0)


@dataclass
class ManuscriptSkeleton:
    scenes: list[CompressedScene] = field(default_factory=list)
    chapters: list[ChapterSummary] = field(default_factory=list)
    acts: list[ActSummary] = field(default_factory=list)
    overview: str = ""


# ----------------------------------------------------------------------
# Pass 1: transitions
# ----------------------------------------------------------------------

@dataclass
class TransitionIssue:
    type: str  # "jarring_pace_change" | "emotional_whiplash" | "time_gap" | "location_jump" | "unresolved_tension"
    severity: str
    description: str
    suggestion: str = ""


@dataclass
class TransitionFlags:
    needs_scene_break: bool = False
    needs_transition_scene: bool = False
    chapter_boundary_candidate: bool = False


@dataclass
class ScenePairAnalysis:
    scene_a_id: str
    scene_b_id: str
    position: int
    transition_score: float
    issues: list[TransitionIssue] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    flags: TransitionFlags = field(default_factory=TransitionFlags)


# ----------------------------------------------------------------------
# Pass 2: sequence issue variants (distinguished by ``type``)
# ----------------------------------------------------------------------

@dataclass
class NarrativeFlowIssue:
    severity: str
    description: str
    affected_scenes: list[str]
    pattern: str  # "broken_causality" | "passive_sequence" | "info_dump" | "info_gap"
    text_span: tuple[int, int] = (0, 100)
    type: str = "flow"


@dataclass
class PacingIssue:
    severity: str
    description: str
    affected_scenes: list[str]
    pattern: str  # "too_slow" | "too_fast" | "inconsistent"
    tension_delta: float = 0
    text_span: tuple[int, int] = (0, 100)
    type: str = "pacing"


@dataclass
class ThematicDiscontinuity:
    severity: str
    description: str
    affected_scenes: list[str]
    theme: str
    last_seen_scene: str
    broken_at_scene: str
    text_span: tuple[int, int] = (0, 100)
    type: str = "theme"


@dataclass
class CharacterArcIssue:
    severity: str
    description: str
    affected_scenes: list[str]
    character: str
    pattern: str  # "incomplete" | "inconsistent" | "disappeared"
    text_span: tuple[int, int] = (0, 100)
    type: str = "character_arc"


@dataclass
class SequenceResults:
    flow: list[NarrativeFlowIssue] = field(default_factory=list)
    pacing: list[PacingIssue] = field(default_factory=list)
    theme: list[ThematicDiscontinuity] = field(default_factory=list)


# ----------------------------------------------------------------------
# Pass 3: chapters
# ----------------------------------------------------------------------

@dataclass
class ChapterHealth:
    """``True`` means the dimension is healthy."""

    unity: bool = True
    completeness: bool = True
    balanced_pacing: bool = True
    narrative_purpose: bool = True


@dataclass
class ChapterRecommendations:
    should_split: bool = False
    should_merge_with_next: bool = False
    orphaned_scenes: list[str] = field(default_factory=list)
    missing_elements: list[str] = field(default_factory=list)


@dataclass
class PacingProfile:
    front_loaded: bool = False
    saggy_middle: bool = False
    rushed_ending: bool = False


@dataclass
class ChapterFlowAnalysis:
    chapter_number: int
    scene_ids: list[str]
    coherence_score: float
    issues: ChapterHealth = field(default_factory=ChapterHealth)
    recommendations: ChapterRecommendations = field(default_factory=ChapterRecommendations)
    pacing_profile: PacingProfile = field(default_factory=PacingProfile)


# ----------------------------------------------------------------------
# Pass 4: manuscript arc
# ----------------------------------------------------------------------

@dataclass
class CharacterArc:
    completeness: float = 0.6
    consistency: float = 0.6
    issues: list[str] = field(default_factory=list)


@dataclass
class PacingSpan:
    start: str
    end: str
    reason: str = ""


@dataclass
class PacingCurve:
    slow_spots: list[PacingSpan] = field(default_factory=list)
    rushed_sections: list[PacingSpan] = field(default_factory=list)


@dataclass
class CriticalFix:
    issue: str
    affected_scenes: list[str] = field(default_factory=list)
    priority: int = 5
    suggestion: str = ""


@dataclass
class ManuscriptAnalysis:
    structural_integrity: float
    act_balance: tuple[float, float, float]
    character_arcs: dict[str, CharacterArc] = field(default_factory=dict)
    plot_holes: list[str] = field(default_factory=list)
    unresolved_elements: list[str] = field(default_factory=list)
    pacing_curve: PacingCurve = field(default_factory=PacingCurve)
    thematic_coherence: float = 0.6
    opening_effectiveness: float = 0.6
    ending_satisfaction: float = 0.6
    critical_fixes: list[CriticalFix] = field(default_factory=list)


# ----------------------------------------------------------------------
# Pass 5 and run-level results
# ----------------------------------------------------------------------

@dataclass
class GlobalCoherenceSettings:
    enable_transitions: bool = True
    enable_sequences: bool = True
    enable_chapters: bool = True
    enable_arc: bool = True
    enable_synthesis: bool = True
    depth: str = "standard"  # "quick" | "standard" | "thorough"


@dataclass(frozen=True)
class PassError:
    pass_name: str
    error: str


@dataclass(frozen=True)
class GlobalCoherenceProgress:
    """Immutable progress snapshot; a new one is emitted on every change."""

    current_pass: str
    pass_number: int
    total_passes: int
    pass_progress: int = 0  # 0..100 within the current pass
    scenes_analyzed: int = 0
    total_scenes: int = 0
    current_scene: Optional[str] = None
    estimated_time_remaining: int = 0  # seconds
    errors: tuple[PassError, ...] = ()
    cancelled: bool = False
    partial_results: Optional[dict[str, Any]] = None


@dataclass
class PassMetrics:
    """Wall-clock timing for one analysis pass."""

    pass_name: str
    duration_ms: int = 0
    completed: bool = True


@dataclass
class SynthesisSummary:
    overall_coherence_score: float = 0.5
    action_plan: list[str] = field(default_factory=list)
    clusters: list[dict[str, Any]] = field(default_factory=list)
    net_benefit: str = "neutral"


@dataclass
class GlobalCoherenceAnalysis:
    scene_level: list[ScenePairAnalysis]
    chapter_level: list[ChapterFlowAnalysis]
    manuscript_level: ManuscriptAnalysis
    flow_issues: list[NarrativeFlowIssue] = field(default_factory=list)
    pacing_problems: list[PacingIssue] = field(default_factory=list)
    thematic_breaks: list[ThematicDiscontinuity] = field(default_factory=list)
    character_arc_disruptions: list[CharacterArcIssue] = field(default_factory=list)
    timestamp: float = 0.0  # epoch ms
    total_analysis_time: int = 0  # ms
    models_used: dict[str, str] = field(default_factory=dict)
    settings: GlobalCoherenceSettings = field(default_factory=GlobalCoherenceSettings)
    synthesis: Optional[SynthesisSummary] = None
    pass_metrics: list[PassMetrics] = field(default_factory=list)
