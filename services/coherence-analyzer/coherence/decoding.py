"""Shared decoder for provider JSON.

Providers return loosely-shaped JSON: scores as strings, free-form severities,
nested wrappers, missing keys.  Every pass decodes through the pydantic models
below so that each field has one explicit default and one normalisation rule.
Nothing in this module raises: a payload that cannot be validated decodes to
the model's defaults.
"""

import logging
import math
import re
from typing import Annotated, Any, Callable, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .models import SEVERITIES

log = logging.getLogger(__name__)

_NUMBER_PREFIX = re.compile(r"\s*[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")


# ----------------------------------------------------------------------
# Field normalisers
# ----------------------------------------------------------------------

def parse_number(value: Any) -> Optional[float]:
    """Leading-number parse: ``"0.8/1"`` -> 0.8, ``"n/a"`` -> None.

    Non-finite results (NaN, ``"1e999"``, JSON ``Infinity``) count as unparseable.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            num = float(value)
        except OverflowError:
            return None
    else:
        m = _NUMBER_PREFIX.match(str(value))
        if not m:
            return None
        num = float(m.group(0))
    return num if math.isfinite(num) else None


def clamp_unit(value: Any, default: float) -> float:
    num = parse_number(value)
    if num is None:
        return default
    return max(0.0, min(1.0, num))


def normalize_severity(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in SEVERITIES:
        return normalized
    if "critical" in normalized or "must" in normalized:
        return "must-fix"
    if "should" in normalized or "important" in normalized:
        return "should-fix"
    return "consider"


_TRANSITION_TYPES = (
    "jarring_pace_change", "emotional_whiplash", "time_gap", "location_jump", "unresolved_tension",
)


def normalize_transition_type(value: Any) -> str:
    normalized = re.sub(r"[\s\-_]", "_", str(value or "").lower())
    if normalized in _TRANSITION_TYPES:
        return normalized
    if "pace" in normalized:
        return "jarring_pace_change"
    if "emotion" in normalized or "mood" in normalized:
        return "emotional_whiplash"
    if "time" in normalized or "temporal" in normalized:
        return "time_gap"
    if "location" in normalized or "spatial" in normalized:
        return "location_jump"
    if "tension" in normalized or "unresolved" in normalized:
        return "unresolved_tension"
    return "jarring_pace_change"


_FLOW_PATTERNS = ("broken_causality", "passive_sequence", "info_dump", "info_gap")


def normalize_flow_pattern(value: Any) -> str:
    normalized = re.sub(r"[\s\-_]", "_", str(value or "").lower())
    if normalized in _FLOW_PATTERNS:
        return normalized
    if "caus" in normalized:
        return "broken_causality"
    if "passive" in normalized:
        return "passive_sequence"
    if "dump" in normalized:
        return "info_dump"
    if "gap" in normalized:
        return "info_gap"
    return "broken_causality"


def normalize_pacing_pattern(value: Any) -> str:
    normalized = str(value or "").lower()
    if "slow" in normalized:
        return "too_slow"
    if "fast" in normalized or "rush" in normalized:
        return "too_fast"
    return "inconsistent"


def _score_or(default: float) -> Callable[[Any], float]:
    return lambda v: clamp_unit(v, default)


def _flag_or(default: bool) -> Callable[[Any], bool]:
    def parse(v: Any) -> bool:
        if v is None:
            return default
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1")
        return bool(v)
    return parse


def _text_or(default: str) -> Callable[[Any], str]:
    return lambda v: default if v is None or v == "" else str(v)


def _str_list(v: Any) -> list[str]:
    if not isinstance(v, (list, tuple)):
        return []
    return [str(x) for x in v if x is not None]


def _optional_str_list(v: Any) -> Optional[list[str]]:
    return _str_list(v) if isinstance(v, (list, tuple)) else None


def _dict_list(v: Any) -> list[dict]:
    if not isinstance(v, (list, tuple)):
        return []
    return [x for x in v if isinstance(x, dict)]


def _as_dict(v: Any) -> dict:
    return v if isinstance(v, dict) else {}


def _number_or(default: float) -> Callable[[Any], float]:
    def parse(v: Any) -> float:
        num = parse_number(v)
        return default if num is None else num
    return parse


def _priority(v: Any) -> int:
    num = parse_number(v)
    return 5 if num is None else int(max(1, min(10, round(num))))


Score = Annotated[float, BeforeValidator(_score_or(0.5))]
ArcScore = Annotated[float, BeforeValidator(_score_or(0.6))]
Severity = Annotated[str, BeforeValidator(normalize_severity)]
FlagFalse = Annotated[bool, BeforeValidator(_flag_or(False))]
FlagTrue = Annotated[bool, BeforeValidator(_flag_or(True))]
StrList = Annotated[list[str], BeforeValidator(_str_list)]
OptionalStrList = Annotated[Optional[list[str]], BeforeValidator(_optional_str_list)]
Text = Annotated[str, BeforeValidator(_text_or(""))]


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


def unwrap(payload: Any, *keys: str) -> dict:
    """Return the first nested mapping found under ``keys``, else ``payload``."""
    if not isinstance(payload, dict):
        return {}
    for key in keys:
        nested = payload.get(key)
        if isinstance(nested, dict):
            return nested
    return payload


def _validate(model: type[BaseModel], data: Any):
    try:
        return model.model_validate(data if isinstance(data, dict) else {})
    except (ValidationError, ValueError, ArithmeticError) as exc:
        log.debug("Discarding undecodable %s payload: %s", model.__name__, exc)
        return model()


# ----------------------------------------------------------------------
# Pass 1: transitions
# ----------------------------------------------------------------------

class TransitionIssuePayload(_Payload):
    type: Annotated[str, BeforeValidator(normalize_transition_type)] = "jarring_pace_change"
    severity: Severity = "consider"
    description: Annotated[str, BeforeValidator(_text_or("Transition issue detected"))] = "Transition issue detected"
    suggestion: Text = ""


class TransitionFlagsPayload(_Payload):
    needs_scene_break: FlagFalse = False
    needs_transition_scene: FlagFalse = False
    chapter_boundary_candidate: FlagFalse = False


class TransitionPayload(_Payload):
    transition_score: Score = 0.5
    issues: Annotated[list[TransitionIssuePayload], BeforeValidator(_dict_list)] = []
    strengths: StrList = []
    flags: Annotated[TransitionFlagsPayload, BeforeValidator(_as_dict)] = TransitionFlagsPayload()


def decode_transition(payload: Any) -> TransitionPayload:
    if isinstance(payload, dict) and "transitionScore" in payload:
        data = payload
    else:
        data = unwrap(payload, "transitionAnalysis", "analysis")
    return _validate(TransitionPayload, data)


# ----------------------------------------------------------------------
# Pass 2: sequences
# ----------------------------------------------------------------------

class FlowIssuePayload(_Payload):
    pattern: Annotated[str, BeforeValidator(normalize_flow_pattern)] = "broken_causality"
    description: Annotated[str, BeforeValidator(_text_or("Narrative flow disruption"))] = "Narrative flow disruption"
    severity: Severity = "consider"
    affected_scenes: OptionalStrList = None


class PacingIssuePayload(_Payload):
    pattern: Annotated[str, BeforeValidator(normalize_pacing_pattern)] = "inconsistent"
    description: Annotated[str, BeforeValidator(_text_or("Pacing inconsistency"))] = "Pacing inconsistency"
    severity: Severity = "consider"
    tension_delta: Annotated[float, BeforeValidator(_number_or(0.0))] = 0.0
    affected_scenes: OptionalStrList = None


class ThematicIssuePayload(_Payload):
    theme: Annotated[str, BeforeValidator(_text_or("unspecified"))] = "unspecified"
    description: Annotated[str, BeforeValidator(_text_or("Thematic discontinuity"))] = "Thematic discontinuity"
    severity: Severity = "consider"
    last_seen_scene: Optional[Text] = None
    broken_at_scene: Optional[Text] = None


class SequencePayload(_Payload):
    flow_score: Score = 0.5
    flow_issues: Annotated[list[FlowIssuePayload], BeforeValidator(_dict_list)] = []
    pacing_issues: Annotated[list[PacingIssuePayload], BeforeValidator(_dict_list)] = []
    thematic_issues: Annotated[list[ThematicIssuePayload], BeforeValidator(_dict_list)] = []
    suggestions: StrList = []


def decode_sequence(payload: Any) -> SequencePayload:
    return _validate(SequencePayload, unwrap(payload, "sequenceAnalysis", "analysis"))


# ----------------------------------------------------------------------
# Pass 3: chapters
# ----------------------------------------------------------------------

class ChapterProblemsPayload(_Payload):
    """Provider polarity: ``True`` means the problem is present."""

    unity: FlagTrue = True
    completeness: FlagTrue = True
    balanced_pacing: FlagTrue = True
    narrative_purpose: FlagTrue = True


class ChapterPacingPayload(_Payload):
    front_loaded: FlagFalse = False
    saggy_middle: FlagFalse = False
    rushed_ending: FlagFalse = False


class ChapterPayload(_Payload):
    coherence_score: Score = 0.5
    issues: Annotated[ChapterProblemsPayload, BeforeValidator(_as_dict)] = ChapterProblemsPayload()
    should_split: FlagFalse = False
    should_merge_with_next: FlagFalse = False
    orphaned_scenes: StrList = []
    missing_elements: StrList = []
    pacing_issues: Annotated[ChapterPacingPayload, BeforeValidator(_as_dict)] = ChapterPacingPayload()


def decode_chapter(payload: Any) -> ChapterPayload:
    return _validate(ChapterPayload, unwrap(payload, "chapterAnalysis", "analysis"))


# ----------------------------------------------------------------------
# Pass 4: manuscript arc
# ----------------------------------------------------------------------

class CharacterArcPayload(_Payload):
    completeness: ArcScore = 0.6
    consistency: ArcScore = 0.6
    issues: StrList = []
    key_missing_elements: StrList = []


def _arc_map(v: Any) -> dict:
    # Accept {"name": {...}} or [{"name": ..., ...}, ...]
    if isinstance(v, dict):
        return {str(k): arc for k, arc in v.items() if isinstance(arc, dict)}
    if isinstance(v, list):
        arcs = {}
        for item in v:
            if isinstance(item, dict) and item.get("name"):
                arcs[str(item["name"])] = item
        return arcs
    return {}


class SpanPayload(_Payload):
    start: Text = ""
    end: Text = ""
    reason: Text = ""


class PacingCurvePayload(_Payload):
    slow_spots: Annotated[list[SpanPayload], BeforeValidator(_dict_list)] = []
    rushed_sections: Annotated[list[SpanPayload], BeforeValidator(_dict_list)] = []


class CriticalFixPayload(_Payload):
    issue: Annotated[str, BeforeValidator(_text_or("Unspecified structural issue"))] = "Unspecified structural issue"
    affected_scenes: StrList = []
    priority: Annotated[int, BeforeValidator(_priority)] = 5
    suggestion: Text = ""


def _number_list(v: Any) -> Optional[list[float]]:
    if not isinstance(v, (list, tuple)):
        return None
    nums = [parse_number(x) for x in v]
    if len(nums) != 3 or any(n is None for n in nums):
        return None
    return nums


class ArcPayload(_Payload):
    structural_integrity: ArcScore = 0.6
    act_balance: Annotated[Optional[list[float]], BeforeValidator(_number_list)] = None
    character_arcs: Annotated[dict[str, CharacterArcPayload], BeforeValidator(_arc_map)] = {}
    plot_holes: StrList = []
    unresolved_elements: StrList = []
    pacing_curve: Annotated[PacingCurvePayload, BeforeValidator(_as_dict)] = PacingCurvePayload()
    thematic_coherence: ArcScore = 0.6
    opening_effectiveness: ArcScore = 0.6
    ending_satisfaction: ArcScore = 0.6
    critical_fixes: Annotated[list[CriticalFixPayload], BeforeValidator(_dict_list)] = []


def decode_arc(payload: Any) -> ArcPayload:
    return _validate(ArcPayload, unwrap(payload, "manuscriptAnalysis", "arcAnalysis", "analysis"))


# ----------------------------------------------------------------------
# Pass 5: synthesis
# ----------------------------------------------------------------------

class PriorityPayload(_Payload):
    issue_pattern: Text = ""
    affected_scene_count: Annotated[int, BeforeValidator(lambda v: int(parse_number(v) or 0))] = 0
    impact: Annotated[str, BeforeValidator(lambda v: str(v or "medium").strip().lower())] = "medium"
    root_cause: Text = ""
    recommended_fix: Text = ""


class ReorderingPayload(_Payload):
    benefits_achieved: StrList = []
    unintended_consequences: StrList = []
    net_benefit: Annotated[str, BeforeValidator(_text_or("neutral"))] = "neutral"


class SynthesisPayload(_Payload):
    overall_coherence_score: Score = 0.5
    top_priorities: Annotated[list[PriorityPayload], BeforeValidator(_dict_list)] = []
    issues_clusters: Annotated[list[dict], BeforeValidator(_dict_list)] = []
    reordering_assessment: Annotated[ReorderingPayload, BeforeValidator(_as_dict)] = ReorderingPayload()
    action_plan: StrList = []


def decode_synthesis(payload: Any) -> SynthesisPayload:
    return _validate(SynthesisPayload, unwrap(payload, "synthesis", "analysis"))


# ----------------------------------------------------------------------
# Compressor summaries
# ----------------------------------------------------------------------

def decode_summary(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    summary = payload.get("summary")
    return summary.strip() if isinstance(summary, str) else ""
