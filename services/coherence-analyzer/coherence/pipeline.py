"""Global coherence orchestrator.

Runs the enabled passes in order over one compressed manuscript, emitting
an immutable progress snapshot on every state change.  A failing pass is
recorded in ``progress.errors`` and skipped; only a
``FatalConfigurationError`` aborts the run.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from typing import Any, Callable, Optional

from .cache import CachedAnalyzer
from .cancellation import CancellationToken
from .capability import AnalysisCapability
from .compressor import ManuscriptCompressor, options_for_depth
from .errors import FatalConfigurationError
from .models import (
    PASS_ORDER,
    SEVERITIES,
    ChapterFlowAnalysis,
    ContinuityIssue,
    GlobalCoherenceAnalysis,
    GlobalCoherenceProgress,
    GlobalCoherenceSettings,
    Manuscript,
    ManuscriptAnalysis,
    NarrativeFlowIssue,
    PassError,
    ScenePairAnalysis,
    SequenceResults,
)
from .passes.arc import ArcValidator
from .passes.chapters import ChapterAnalyzer
from .passes.sequences import SequenceAnalyzer, consolidate_results
from .passes.synthesis import SynthesisEngine
from .passes.transitions import TransitionAnalyzer
from .timing import build_report, collect_metrics

log = logging.getLogger(__name__)

ProgressCallback = Callable[[GlobalCoherenceProgress], None]


def enabled_passes(settings: GlobalCoherenceSettings) -> list[str]:
    flags = {
        "transitions": settings.enable_transitions,
        "sequences": settings.enable_sequences,
        "chapters": settings.enable_chapters,
        "arc": settings.enable_arc,
        "synthesis": settings.enable_synthesis,
    }
    return [name for name in PASS_ORDER if flags[name]]


def estimate_remaining_seconds(elapsed: float, pass_fraction: float, total_passes: int) -> int:
    """Linear extrapolation; ``pass_fraction`` is e.g. 2.5 halfway through pass 3."""
    fraction = min(0.999, max(0.001, pass_fraction / max(1, total_passes)))
    return max(0, math.floor(elapsed / fraction - elapsed))


class _ProgressTracker:
    """Owns the current snapshot and pushes each new one to the callback."""

    def __init__(self, callback: ProgressCallback | None, snapshot: GlobalCoherenceProgress):
        self._callback = callback
        self._started = time.monotonic()
        self.snapshot = snapshot

    def emit(self, **changes) -> None:
        self.snapshot = dataclasses.replace(self.snapshot, **changes)
        if self._callback is not None:
            self._callback(self.snapshot)

    def start_pass(self, name: str, number: int, partial: dict[str, Any]) -> None:
        self.emit(
            current_pass=name,
            pass_number=number,
            pass_progress=0,
            scenes_analyzed=0,
            current_scene=None,
            partial_results=partial,
        )

    def advance(self, percent: int, scenes_analyzed: int, current_scene: str | None, partial: dict[str, Any]) -> None:
        percent = max(0, min(100, percent))
        snap = self.snapshot
        self.emit(
            pass_progress=percent,
            scenes_analyzed=scenes_analyzed,
            current_scene=current_scene,
            estimated_time_remaining=estimate_remaining_seconds(
                time.monotonic() - self._started,
                snap.pass_number - 1 + percent / 100,
                snap.total_passes,
            ),
            partial_results=partial,
        )

    def add_error(self, pass_name: str, error: BaseException) -> None:
        self.emit(errors=self.snapshot.errors + (PassError(pass_name, str(error)),))


class GlobalAnalysisOrchestrator:
    """Coordinates the five-pass global coherence analysis.

    The capability is shared by every pass.  With ``enable_cache`` it is
    wrapped in a ``CachedAnalyzer`` that survives across runs.
    """

    def __init__(
        self,
        capability: AnalysisCapability,
        *,
        enable_cache: bool = False,
        cache_ttl: float = 3600.0,
        fast_model: str | None = None,
        deep_model: str | None = None,
        use_ai_for_summaries: bool = False,
        delay_ms_between_batches: int | None = None,
    ):
        self.cache = CachedAnalyzer(capability, ttl=cache_ttl) if enable_cache else None
        self.capability = self.cache or capability
        self.use_ai_for_summaries = use_ai_for_summaries
        self.delay_ms_between_batches = delay_ms_between_batches

        self.transitions = TransitionAnalyzer(self.capability, model_override=fast_model)
        self.sequences = SequenceAnalyzer(self.capability)
        self.chapters = ChapterAnalyzer(self.capability)
        self.arc = ArcValidator(self.capability, model_override=deep_model)
        self.synthesis = SynthesisEngine(self.capability)

        self.last_analysis: Optional[GlobalCoherenceAnalysis] = None
        self._token: Optional[CancellationToken] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def cancel_analysis(self) -> None:
        """Ask the current run to stop at the next unit-of-work boundary."""
        if self._token is not None:
            log.info("Cancellation requested")
            self._token.cancel()

    def make_compressor(self, depth: str) -> ManuscriptCompressor:
        options = options_for_depth(depth)
        if self.use_ai_for_summaries:
            options["use_ai_for_summaries"] = True
        return ManuscriptCompressor(
            self.capability,
            delay_ms_between_batches=self.delay_ms_between_batches,
            **options,
        )

    async def analyze_global_coherence(
        self,
        manuscript: Manuscript,
        settings: GlobalCoherenceSettings | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> GlobalCoherenceAnalysis:
        settings = settings or GlobalCoherenceSettings()
        token = CancellationToken()
        self._token = token
        self._running = True
        try:
            return await self._run(manuscript, settings, token, progress_callback)
        finally:
            self._running = False

    async def _run(
        self,
        manuscript: Manuscript,
        settings: GlobalCoherenceSettings,
        token: CancellationToken,
        progress_callback: ProgressCallback | None,
    ) -> GlobalCoherenceAnalysis:
        t0 = time.monotonic()
        if self.cache is not None:
            await self.cache.init()
        for _, analyzer in self._analyzers():
            analyzer.models_used.clear()

        passes = enabled_passes(settings)
        log.info("Global coherence analysis of %r: %d scenes, passes=%s, depth=%s",
                 manuscript.title, len(manuscript.scenes), passes, settings.depth)

        tracker = _ProgressTracker(progress_callback, GlobalCoherenceProgress(
            current_pass=passes[0] if passes else PASS_ORDER[0],
            pass_number=0,
            total_passes=len(passes),
            total_scenes=len(manuscript.scenes),
        ))
        tracker.emit()

        scene_level: list[ScenePairAnalysis] = []
        sequences = SequenceResults()
        chapter_level: list[ChapterFlowAnalysis] = []
        manuscript_level: Optional[ManuscriptAnalysis] = None
        analysis: Optional[GlobalCoherenceAnalysis] = None

        # Passes append into these in place; partial() reads them mid-pass.
        def partial() -> dict[str, Any]:
            found = consolidate_results(sequences)
            return {
                "scene_level": list(scene_level),
                "flow_issues": found.flow,
                "pacing_problems": found.pacing,
                "thematic_breaks": found.theme,
                "chapter_level": list(chapter_level),
                "manuscript_level": manuscript_level,
            }

        with collect_metrics() as metrics:
            compressor = self.make_compressor(settings.depth)
            compressed = await compressor.prepare_scenes_for_analysis(manuscript.scenes)
            scene_index = {s.id: s for s in manuscript.scenes}
            total_pairs = max(0, len(compressed) - 1)
            total_windows = max(0, len(compressed) - 2)
            total_scenes = len(manuscript.scenes)

            for number, name in enumerate(passes, start=1):
                if token.cancelled:
                    log.info("Analysis cancelled before %s pass", name)
                    break
                tracker.start_pass(name, number, partial())

                try:
                    if name == "transitions":
                        scene_level = await self.transitions.analyze_transitions(
                            compressed, token,
                            lambda p, sid: tracker.advance(p, total_pairs * p // 100, sid, partial()),
                            results=scene_level,
                        )
                    elif name == "sequences":
                        sequences = await self.sequences.analyze_sequences(
                            compressed, scene_index, token,
                            lambda p, sid: tracker.advance(p, total_windows * p // 100, sid, partial()),
                            results=sequences,
                        )
                    elif name == "chapters":
                        chapter_level = await self.chapters.analyze_chapters(
                            manuscript, compressed, token,
                            lambda p, sid: tracker.advance(p, total_scenes * p // 100, sid, partial()),
                            results=chapter_level,
                        )
                    elif name == "arc":
                        skeleton = await compressor.create_manuscript_skeleton(manuscript, compressed)
                        manuscript_level = await self.arc.validate_arc(
                            skeleton, manuscript, token,
                            lambda p, sid: tracker.advance(p, total_scenes * p // 100, sid, partial()),
                        )
                    elif name == "synthesis":
                        analysis = await self.synthesis.synthesize_findings(
                            scene_level,
                            chapter_level,
                            manuscript_level or default_manuscript_level(scene_level, chapter_level),
                            sequences,
                            manuscript,
                            settings,
                            lambda p, sid: tracker.advance(p, total_scenes * p // 100, sid, partial()),
                        )
                except FatalConfigurationError:
                    log.error("Fatal configuration error during %s pass; aborting run", name)
                    raise
                except Exception as exc:
                    log.exception("%s pass failed", name)
                    if name == "sequences":
                        sequences = consolidate_results(sequences)
                    tracker.add_error(name, exc)

        if analysis is None:
            analysis = create_basic_analysis(scene_level, sequences, chapter_level, manuscript_level, settings)

        analysis.timestamp = time.time() * 1000
        analysis.total_analysis_time = int((time.monotonic() - t0) * 1000)
        analysis.models_used = self.models_used()
        analysis.settings = settings
        analysis.pass_metrics = list(metrics)

        report = build_report(metrics)
        log.info("Analysis complete: %d transitions, %d chapters, %d errors, cancelled=%s | total=%dms",
                 len(analysis.scene_level), len(analysis.chapter_level),
                 len(tracker.snapshot.errors), token.cancelled, analysis.total_analysis_time)
        for entry in report["passes"]:
            log.info("  %-12s %6d ms%s", entry["pass"], entry["duration_ms"], "" if entry["completed"] else " (failed)")

        tracker.emit(
            pass_progress=100,
            estimated_time_remaining=0,
            cancelled=token.cancelled,
            partial_results={"analysis": analysis},
        )
        self.last_analysis = analysis
        return analysis

    def _analyzers(self):
        return (
            ("transitions", self.transitions),
            ("sequences", self.sequences),
            ("chapters", self.chapters),
            ("arc", self.arc),
            ("synthesis", self.synthesis),
        )

    def models_used(self) -> dict[str, str]:
        """First model reported by each pass that made at least one AI call."""
        used = {}
        for name, analyzer in self._analyzers():
            if analyzer.models_used:
                used[name] = next(iter(analyzer.models_used.values()))
        return used

    def enrich_scene_issues(
        self,
        scene_issues: dict[str, list[ContinuityIssue]],
        analysis: GlobalCoherenceAnalysis,
    ) -> dict[str, list[ContinuityIssue]]:
        return enrich_scene_issues(scene_issues, analysis)


def default_manuscript_level(
    scene_level: list[ScenePairAnalysis],
    chapter_level: list[ChapterFlowAnalysis],
) -> ManuscriptAnalysis:
    """Manuscript-level stand-in derived from transition and chapter scores."""
    avg_transition = (
        sum(p.transition_score for p in scene_level) / len(scene_level) if scene_level else 0.7
    )
    avg_chapter = (
        sum(c.coherence_score for c in chapter_level) / len(chapter_level) if chapter_level else 0.7
    )
    return ManuscriptAnalysis(
        structural_integrity=min(1.0, (avg_transition + avg_chapter) / 2),
        act_balance=(0.33, 0.33, 0.34),
        thematic_coherence=avg_chapter,
        opening_effectiveness=max(0.5, avg_transition - 0.05),
        ending_satisfaction=max(0.5, avg_chapter - 0.05),
    )


def create_basic_analysis(
    scene_level: list[ScenePairAnalysis],
    sequences: SequenceResults,
    chapter_level: list[ChapterFlowAnalysis],
    manuscript_level: ManuscriptAnalysis | None,
    settings: GlobalCoherenceSettings,
) -> GlobalCoherenceAnalysis:
    """Unsynthesised analysis built from whatever the passes produced."""
    return GlobalCoherenceAnalysis(
        scene_level=scene_level,
        chapter_level=chapter_level,
        manuscript_level=manuscript_level or default_manuscript_level(scene_level, chapter_level),
        flow_issues=list(sequences.flow),
        pacing_problems=list(sequences.pacing),
        thematic_breaks=list(sequences.theme),
        settings=settings,
    )


def escalate_severity(severity: str, steps: int) -> str:
    idx = SEVERITIES.index(severity) if severity in SEVERITIES else 0
    return SEVERITIES[min(idx + steps, len(SEVERITIES) - 1)]


def _global_context(transition: ScenePairAnalysis | None, flow: NarrativeFlowIssue | None) -> str:
    parts = []
    if transition is not None:
        parts.append(f" Global transition score around this scene: {transition.transition_score:.2f}.")
    if flow is not None:
        parts.append(f" Sequence flow pattern flagged: {flow.pattern}.")
    return f" [Global context:{''.join(parts)}]" if parts else ""


def enrich_scene_issues(
    scene_issues: dict[str, list[ContinuityIssue]],
    analysis: GlobalCoherenceAnalysis,
) -> dict[str, list[ContinuityIssue]]:
    """Annotate scene-local issues with global evidence and escalate them.

    Each evidence source (an adjacent transition, a flagged flow issue)
    raises severity one step, capped at ``must-fix``.  The input mapping
    is left untouched.
    """
    enriched = {}
    for scene_id, issues in scene_issues.items():
        transition = next(
            (t for t in analysis.scene_level if scene_id in (t.scene_a_id, t.scene_b_id)), None,
        )
        flow = next((f for f in analysis.flow_issues if scene_id in f.affected_scenes), None)
        if transition is None and flow is None:
            enriched[scene_id] = list(issues)
            continue

        context = _global_context(transition, flow)
        steps = (transition is not None) + (flow is not None)
        enriched[scene_id] = [
            dataclasses.replace(
                issue,
                description=issue.description + context,
                severity=escalate_severity(issue.severity, steps),
            )
            for issue in issues
        ]
    return enriched
