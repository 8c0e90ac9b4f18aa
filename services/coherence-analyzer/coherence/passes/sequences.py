"""Pass 2 — Sequence Analyzer.

Scores narrative flow, pacing and thematic continuity over overlapping
three-scene windows (stride 1, so N scenes give N-2 windows).  Windows run
three at a time.  When the AI call for a window fails, a tension-variance
heuristic stands in; when a window fails any other way it is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from ..cancellation import CancellationToken
from ..capability import AnalysisCapability, AnalysisRequest, AnalysisResponse, build_reader_context
from ..decoding import decode_sequence, normalize_severity
from ..errors import FatalConfigurationError
from ..models import (
    CompressedScene,
    ContinuityIssue,
    NarrativeFlowIssue,
    PacingIssue,
    Scene,
    SequenceResults,
    ThematicDiscontinuity,
)
from ..timing import timed_pass

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"
_USER_TEMPLATE = (_PROMPTS_DIR / "sequence_user.txt").read_text().strip()

WINDOW_SIZE = 3
_BATCH_SIZE = 3

ProgressFn = Callable[[int, Optional[str]], None]


class SequenceAnalyzer:

    def __init__(self, capability: AnalysisCapability, *, model_override: str | None = None):
        self.capability = capability
        self.model_override = model_override
        self.models_used: dict[str, str] = {}

    @timed_pass("sequences")
    async def analyze_sequences(
        self,
        compressed: list[CompressedScene],
        scene_index: dict[str, Scene],
        token: CancellationToken | None = None,
        on_progress: ProgressFn | None = None,
        results: SequenceResults | None = None,
    ) -> SequenceResults:
        """Analyse every sliding window and return de-duplicated issues.

        Raw per-window issues accumulate in ``results`` while the pass runs;
        the returned value is the consolidated copy.
        """
        if results is None:
            results = SequenceResults()
        windows = sliding_windows(compressed)
        if not windows:
            log.debug("Not enough scenes for sequence analysis")
            return results

        processed = 0
        for start in range(0, len(windows), _BATCH_SIZE):
            if token is not None and token.cancelled:
                log.info("Sequence analysis cancelled after %d/%d windows", processed, len(windows))
                break

            batch = windows[start:start + _BATCH_SIZE]
            settled = await asyncio.gather(
                *(self._analyze_window(window, scene_index) for window in batch),
                return_exceptions=True,
            )
            for window, outcome in zip(batch, settled):
                if isinstance(outcome, FatalConfigurationError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    log.debug("Window %s failed: %s", "-".join(s.id for s in window), outcome)
                    continue
                results.flow.extend(outcome.flow)
                results.pacing.extend(outcome.pacing)
                results.theme.extend(outcome.theme)

            processed += len(batch)
            if on_progress is not None:
                on_progress(processed * 100 // len(windows), batch[-1][-1].id)

        return consolidate_results(results)

    async def _analyze_window(
        self,
        window: list[CompressedScene],
        scene_index: dict[str, Scene],
    ) -> SequenceResults:
        target = scene_index.get(window[-1].id) or placeholder_scene(window[-1])
        options = {
            "prompt": build_sequence_prompt(window),
            "focus_areas": ["sequence-flow", "pacing", "themes"],
        }
        if self.model_override:
            options["model_override"] = self.model_override

        request = AnalysisRequest(
            scene=target,
            previous_scenes=[scene_index.get(cs.id) or placeholder_scene(cs) for cs in window[:-1]],
            analysis_type="consistency",
            reader_context=build_reader_context(window),
            options=options,
        )

        try:
            response = await self.capability.analyze(request)
        except FatalConfigurationError:
            raise
        except Exception as exc:
            log.debug("AI sequence analysis failed, using tension heuristic: %s", exc)
            return fallback_sequence(window)

        self.models_used["-".join(s.id for s in window)] = response.metadata.model_used
        return parse_sequence_response(response, window, target.id)


def sliding_windows(scenes: list[CompressedScene]) -> list[list[CompressedScene]]:
    return [scenes[i:i + WINDOW_SIZE] for i in range(len(scenes) - WINDOW_SIZE + 1)]


def placeholder_scene(compressed: CompressedScene) -> Scene:
    """Stand-in ``Scene`` for a compressed scene missing from the manuscript."""
    return Scene(
        id=compressed.id,
        text=compressed.summary,
        word_count=compressed.metadata.word_count,
        position=compressed.position,
        original_position=compressed.position,
        characters=list(compressed.metadata.characters),
        location_markers=list(compressed.metadata.locations),
    )


def build_sequence_prompt(window: list[CompressedScene]) -> str:
    blocks = "\n".join(
        f'<scene index="{idx}" id="{scene.id}">\n'
        f"  <summary>{scene.summary}</summary>\n"
        f"  <characters>{', '.join(scene.metadata.characters) or 'none'}</characters>\n"
        f"  <tension>{scene.metadata.tension_level}/10</tension>\n"
        f"  <emotional_tone>{scene.metadata.emotional_tone}</emotional_tone>\n"
        f"</scene>"
        for idx, scene in enumerate(window, start=1)
    )
    return _USER_TEMPLATE.format(scene_count=len(window), scene_blocks=blocks)


def parse_sequence_response(
    response: AnalysisResponse,
    window: list[CompressedScene],
    target_id: str,
) -> SequenceResults:
    data = decode_sequence(response.payload)
    window_ids = [s.id for s in window]
    results = SequenceResults()

    for issue in data.flow_issues:
        results.flow.append(NarrativeFlowIssue(
            severity=issue.severity,
            description=issue.description,
            affected_scenes=issue.affected_scenes if issue.affected_scenes is not None else list(window_ids),
            pattern=issue.pattern,
        ))

    for issue in data.pacing_issues:
        results.pacing.append(PacingIssue(
            severity=issue.severity,
            description=issue.description,
            affected_scenes=issue.affected_scenes if issue.affected_scenes is not None else list(window_ids),
            pattern=issue.pattern,
            tension_delta=issue.tension_delta,
        ))

    for issue in data.thematic_issues:
        results.theme.append(ThematicDiscontinuity(
            severity=issue.severity,
            description=issue.description,
            affected_scenes=list(window_ids),
            theme=issue.theme,
            last_seen_scene=issue.last_seen_scene or window_ids[0],
            broken_at_scene=issue.broken_at_scene or target_id,
        ))

    for issue in response.issues:
        converted = classify_generic_issue(issue, window_ids, target_id)
        if isinstance(converted, NarrativeFlowIssue):
            results.flow.append(converted)
        elif isinstance(converted, PacingIssue):
            results.pacing.append(converted)
        elif isinstance(converted, ThematicDiscontinuity):
            results.theme.append(converted)

    return results


def classify_generic_issue(issue: ContinuityIssue, window_ids: list[str], target_id: str):
    """Map a generic continuity issue onto a sequence issue family, or None."""
    desc = (issue.description or "").lower()
    severity = normalize_severity(issue.severity)
    span = issue.text_span if issue.text_span != (0, 0) else (0, 100)

    if issue.type in ("plot", "timeline") or "causality" in desc or "cause" in desc or "passive" in desc:
        if "passive" in desc:
            pattern = "passive_sequence"
        elif "info" in desc:
            pattern = "info_gap"
        else:
            pattern = "broken_causality"
        return NarrativeFlowIssue(
            severity=severity, description=issue.description, affected_scenes=list(window_ids),
            pattern=pattern, text_span=span,
        )

    if issue.type == "engagement" or any(w in desc for w in ("pacing", "slow", "fast", "tension")):
        if "slow" in desc:
            pattern = "too_slow"
        elif "fast" in desc:
            pattern = "too_fast"
        else:
            pattern = "inconsistent"
        return PacingIssue(
            severity=severity, description=issue.description, affected_scenes=list(window_ids),
            pattern=pattern, text_span=span,
        )

    if issue.type == "context" or "theme" in desc or "motif" in desc:
        return ThematicDiscontinuity(
            severity=severity, description=issue.description, affected_scenes=list(window_ids),
            theme="narrative", last_seen_scene=window_ids[0], broken_at_scene=target_id, text_span=span,
        )

    return None


def fallback_sequence(window: list[CompressedScene]) -> SequenceResults:
    """Tension-variance heuristic used when the AI call fails."""
    results = SequenceResults()
    ids = [s.id for s in window]
    tensions = [s.metadata.tension_level for s in window]
    avg = sum(tensions) / len(tensions)
    variance = sum((t - avg) ** 2 for t in tensions) / len(tensions)

    if variance > 10:
        results.pacing.append(PacingIssue(
            severity="should-fix",
            description="Inconsistent tension levels across sequence",
            affected_scenes=ids,
            pattern="inconsistent",
            tension_delta=max(tensions) - min(tensions),
        ))

    if avg < 3:
        results.flow.append(NarrativeFlowIssue(
            severity="consider",
            description="Low tension suggests passive sequence",
            affected_scenes=list(ids),
            pattern="passive_sequence",
        ))

    return results


def consolidate_results(results: SequenceResults) -> SequenceResults:
    """Drop repeats of the same issue reported by overlapping windows."""
    seen: set[tuple] = set()

    def first_seen(key: tuple) -> bool:
        if key in seen:
            return False
        seen.add(key)
        return True

    return SequenceResults(
        flow=[
            i for i in results.flow
            if first_seen(("flow", i.description, tuple(sorted(i.affected_scenes)), i.pattern))
        ],
        pacing=[
            i for i in results.pacing
            if first_seen(("pacing", i.description, tuple(sorted(i.affected_scenes)), i.pattern, i.tension_delta))
        ],
        theme=[
            i for i in results.theme
            if first_seen(("theme", i.description, i.theme, i.last_seen_scene, i.broken_at_scene))
        ],
    )
