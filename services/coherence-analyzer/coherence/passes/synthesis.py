"""Pass 5 — Synthesis Engine.

Extracts flow, pacing, theme and character-arc issues from passes 1-4 with
fixed thresholds, then asks the provider to prioritise them.  High-impact
priorities escalate matching issues to ``must-fix``.  With fewer than three
extracted issues the AI call is skipped.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Optional

from ..capability import AnalysisCapability, AnalysisRequest, ReaderKnowledge
from ..decoding import SynthesisPayload, decode_synthesis
from ..errors import FatalConfigurationError
from ..models import (
    ChapterFlowAnalysis,
    CharacterArcIssue,
    GlobalCoherenceAnalysis,
    GlobalCoherenceSettings,
    Manuscript,
    ManuscriptAnalysis,
    NarrativeFlowIssue,
    PacingIssue,
    Scene,
    ScenePairAnalysis,
    SequenceResults,
    SynthesisSummary,
    ThematicDiscontinuity,
)
from ..timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_USER_TEMPLATE = (_PROMPTS_DIR / "synthesis_user.txt").read_text().strip()

MIN_ISSUES_FOR_SYNTHESIS = 3
_WEAK_TRANSITION = 0.5
_INCOMPLETE_ARC = 0.5

ProgressFn = Callable[[int, Optional[str]], None]


@dataclasses.dataclass
class ExtractedIssues:
    flow: list[NarrativeFlowIssue] = dataclasses.field(default_factory=list)
    pacing: list[PacingIssue] = dataclasses.field(default_factory=list)
    theme: list[ThematicDiscontinuity] = dataclasses.field(default_factory=list)
    character_arc: list[CharacterArcIssue] = dataclasses.field(default_factory=list)

    def total(self) -> int:
        return len(self.flow) + len(self.pacing) + len(self.theme) + len(self.character_arc)


class SynthesisEngine:

    def __init__(self, capability: AnalysisCapability, *, model_override: str | None = None):
        self.capability = capability
        self.model_override = model_override
        self.models_used: dict[str, str] = {}

    @timed_pass("synthesis")
    async def synthesize_findings(
        self,
        scene_level: list[ScenePairAnalysis],
        chapter_level: list[ChapterFlowAnalysis],
        manuscript_level: ManuscriptAnalysis,
        sequences: SequenceResults,
        manuscript: Manuscript,
        settings: GlobalCoherenceSettings,
        on_progress: ProgressFn | None = None,
    ) -> GlobalCoherenceAnalysis:
        """Aggregate all passes into one analysis.

        Never raises except ``FatalConfigurationError``; an AI failure
        returns the unsynthesised extraction.
        """
        extracted = extract_issues(scene_level, sequences, chapter_level, manuscript_level, manuscript)
        synthesis = None

        if extracted.total() < MIN_ISSUES_FOR_SYNTHESIS:
            log.info("Synthesis skipped: only %d issues extracted", extracted.total())
        else:
            if on_progress is not None:
                on_progress(50, None)
            try:
                payload = await self._synthesize(extracted, scene_level, chapter_level, manuscript_level, manuscript)
            except FatalConfigurationError:
                raise
            except Exception:
                log.warning("Synthesis AI call failed, returning unsynthesised findings", exc_info=True)
            else:
                extracted = escalate_priorities(extracted, payload)
                synthesis = SynthesisSummary(
                    overall_coherence_score=payload.overall_coherence_score,
                    action_plan=payload.action_plan,
                    clusters=payload.issues_clusters,
                    net_benefit=payload.reordering_assessment.net_benefit,
                )

        if on_progress is not None:
            on_progress(100, None)

        return GlobalCoherenceAnalysis(
            scene_level=scene_level,
            chapter_level=chapter_level,
            manuscript_level=manuscript_level,
            flow_issues=extracted.flow,
            pacing_problems=extracted.pacing,
            thematic_breaks=extracted.theme,
            character_arc_disruptions=extracted.character_arc,
            settings=settings,
            synthesis=synthesis,
        )

    async def _synthesize(
        self,
        extracted: ExtractedIssues,
        scene_level: list[ScenePairAnalysis],
        chapter_level: list[ChapterFlowAnalysis],
        manuscript_level: ManuscriptAnalysis,
        manuscript: Manuscript,
    ) -> SynthesisPayload:
        prompt = _USER_TEMPLATE.format(
            total_scenes=len(manuscript.scenes),
            moved_scenes=sum(1 for s in manuscript.scenes if s.has_been_moved),
            transition_issue_count=sum(len(p.issues) for p in scene_level),
            flow_issue_count=len(extracted.flow),
            pacing_issue_count=len(extracted.pacing),
            theme_issue_count=len(extracted.theme),
            chapter_issue_count=sum(1 for c in chapter_level if not _healthy(c)),
            arc_issue_count=len(extracted.character_arc) + len(manuscript_level.plot_holes),
            findings=format_findings(extracted),
        )
        options = {"prompt": prompt, "focus_areas": ["synthesis"]}
        if self.model_override:
            options["model_override"] = self.model_override

        request = AnalysisRequest(
            scene=Scene(id="synthesis", text=prompt),
            analysis_type="full",
            reader_context=ReaderKnowledge(),
            options=options,
        )
        response = await self.capability.analyze(request)
        self.models_used["synthesis"] = response.metadata.model_used
        return decode_synthesis(response.payload)


def _healthy(chapter: ChapterFlowAnalysis) -> bool:
    h = chapter.issues
    return h.unity and h.completeness and h.balanced_pacing and h.narrative_purpose


def extract_issues(
    scene_level: list[ScenePairAnalysis],
    sequences: SequenceResults,
    chapter_level: list[ChapterFlowAnalysis],
    manuscript_level: ManuscriptAnalysis | None,
    manuscript: Manuscript,
) -> ExtractedIssues:
    """Threshold-based extraction of issues from passes 1-4."""
    out = ExtractedIssues()

    for pair in scene_level:
        if pair.transition_score >= _WEAK_TRANSITION:
            continue
        affected = [pair.scene_a_id, pair.scene_b_id]
        for issue in pair.issues:
            if issue.type in ("time_gap", "unresolved_tension", "location_jump"):
                out.flow.append(NarrativeFlowIssue(
                    severity=issue.severity,
                    description=issue.description,
                    affected_scenes=list(affected),
                    pattern="info_gap" if issue.type == "location_jump" else "broken_causality",
                ))
            elif issue.type == "jarring_pace_change":
                out.pacing.append(PacingIssue(
                    severity=issue.severity,
                    description=issue.description,
                    affected_scenes=list(affected),
                    pattern="inconsistent",
                ))
            elif issue.type == "emotional_whiplash":
                out.theme.append(ThematicDiscontinuity(
                    severity=issue.severity,
                    description=issue.description,
                    affected_scenes=list(affected),
                    theme="emotional tone",
                    last_seen_scene=pair.scene_a_id,
                    broken_at_scene=pair.scene_b_id,
                ))

    out.flow.extend(sequences.flow)
    out.pacing.extend(sequences.pacing)
    out.theme.extend(sequences.theme)

    for chapter in chapter_level:
        if chapter.pacing_profile.saggy_middle:
            out.pacing.append(PacingIssue(
                severity="should-fix",
                description=f"Chapter {chapter.chapter_number} sags in the middle",
                affected_scenes=list(chapter.scene_ids),
                pattern="too_slow",
            ))
        if chapter.pacing_profile.rushed_ending:
            out.pacing.append(PacingIssue(
                severity="should-fix",
                description=f"Chapter {chapter.chapter_number} rushes its ending",
                affected_scenes=list(chapter.scene_ids),
                pattern="too_fast",
            ))

    if manuscript_level is not None:
        for name, arc in manuscript_level.character_arcs.items():
            if arc.completeness >= _INCOMPLETE_ARC:
                continue
            detail = f": {'; '.join(arc.issues)}" if arc.issues else ""
            out.character_arc.append(CharacterArcIssue(
                severity="should-fix",
                description=f"{name}'s arc is incomplete{detail}",
                affected_scenes=[s.id for s in manuscript.scenes if name in s.characters],
                character=name,
                pattern="incomplete",
            ))

    return out


def format_findings(extracted: ExtractedIssues) -> str:
    lines = []
    for family, issues in (
        ("flow", extracted.flow),
        ("pacing", extracted.pacing),
        ("theme", extracted.theme),
        ("character_arc", extracted.character_arc),
    ):
        for issue in issues:
            scenes = ", ".join(issue.affected_scenes) or "-"
            lines.append(f"- [{family}/{issue.severity}] {issue.description} (scenes: {scenes})")
    return "\n".join(lines)


def escalate_priorities(extracted: ExtractedIssues, payload: SynthesisPayload) -> ExtractedIssues:
    """Raise issues named by a high-impact priority to ``must-fix``."""
    patterns = [
        p.issue_pattern.lower()
        for p in payload.top_priorities
        if p.impact == "high" and p.issue_pattern.strip()
    ]
    if not patterns:
        return extracted

    def escalate(issues):
        return [
            dataclasses.replace(issue, severity="must-fix")
            if any(p in issue.description.lower() for p in patterns) else issue
            for issue in issues
        ]

    return ExtractedIssues(
        flow=escalate(extracted.flow),
        pacing=escalate(extracted.pacing),
        theme=escalate(extracted.theme),
        character_arc=escalate(extracted.character_arc),
    )
