import dataclasses
import logging
import os
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .errors import AIServiceError, FatalConfigurationError
from .models import (
    ContinuityIssue,
    GlobalCoherenceAnalysis,
    GlobalCoherenceProgress,
    GlobalCoherenceSettings,
    Manuscript,
    NarrativeFlowIssue,
    Scene,
    ScenePairAnalysis,
)
from .ollama_client import OllamaAnalyzer
from .pipeline import GlobalAnalysisOrchestrator, default_manuscript_level

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(
    title="Coherence Analyzer",
    description="Five-pass global coherence analysis of reordered manuscripts",
)

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
MODEL_NAME = os.getenv("MODEL_NAME", "llama3.1:70b")
FAST_MODEL_NAME = os.getenv("FAST_MODEL_NAME", "") or None
DEEP_MODEL_NAME = os.getenv("DEEP_MODEL_NAME", "") or None
AI_API_KEY = os.getenv("AI_API_KEY", "") or None
AI_REQUIRE_API_KEY = os.getenv("AI_REQUIRE_API_KEY", "0") == "1"
COHERENCE_ENABLE_CACHE = os.getenv("COHERENCE_ENABLE_CACHE", "0") == "1"
COHERENCE_BATCH_DELAY_MS = int(os.getenv("COHERENCE_BATCH_DELAY_MS", "0")) or None
COHERENCE_AI_SUMMARIES = os.getenv("COHERENCE_AI_SUMMARIES", "0") == "1"

_analyzer: OllamaAnalyzer | None = None
_orchestrator: GlobalAnalysisOrchestrator | None = None


class SceneIn(BaseModel):
    id: str
    text: str
    word_count: int = 0
    position: int = 0
    original_position: int = 0
    characters: list[str] = []
    time_markers: list[str] = []
    location_markers: list[str] = []
    has_been_moved: bool = False


class ManuscriptIn(BaseModel):
    id: str = "manuscript"
    title: str = "Untitled Manuscript"
    scenes: list[SceneIn] = []
    original_order: list[str] = []
    current_order: list[str] = []


class SettingsIn(BaseModel):
    enable_transitions: bool = True
    enable_sequences: bool = True
    enable_chapters: bool = True
    enable_arc: bool = True
    enable_synthesis: bool = True
    depth: Literal["quick", "standard", "thorough"] = "standard"


class AnalyzeRequest(BaseModel):
    manuscript: ManuscriptIn
    settings: SettingsIn = SettingsIn()


class IssueIn(BaseModel):
    type: str
    severity: str = "consider"
    description: str
    text_span: tuple[int, int] = (0, 0)
    suggested_fix: str = ""


class TransitionRefIn(BaseModel):
    scene_a_id: str
    scene_b_id: str
    position: int = 0
    transition_score: float = 0.5


class FlowRefIn(BaseModel):
    severity: str = "consider"
    description: str = ""
    affected_scenes: list[str] = []
    pattern: str = "broken_causality"


class AnalysisRefIn(BaseModel):
    """The parts of a previous analysis that enrichment reads."""

    scene_level: list[TransitionRefIn] = []
    flow_issues: list[FlowRefIn] = []


class EnrichRequest(BaseModel):
    scene_issues: dict[str, list[IssueIn]]
    analysis: Optional[AnalysisRefIn] = None


@app.on_event("startup")
async def startup():
    global _analyzer, _orchestrator
    _analyzer = OllamaAnalyzer(
        OLLAMA_BASE_URL,
        MODEL_NAME,
        api_key=AI_API_KEY,
        require_api_key=AI_REQUIRE_API_KEY,
    )
    _orchestrator = GlobalAnalysisOrchestrator(
        _analyzer,
        enable_cache=COHERENCE_ENABLE_CACHE,
        fast_model=FAST_MODEL_NAME,
        deep_model=DEEP_MODEL_NAME,
        use_ai_for_summaries=COHERENCE_AI_SUMMARIES,
        delay_ms_between_batches=COHERENCE_BATCH_DELAY_MS,
    )
    log.info("Coherence analyzer ready: ollama=%s model=%s fast=%s deep=%s cache=%s",
             OLLAMA_BASE_URL, MODEL_NAME, FAST_MODEL_NAME, DEEP_MODEL_NAME, COHERENCE_ENABLE_CACHE)


@app.on_event("shutdown")
async def shutdown():
    if _analyzer:
        await _analyzer.aclose()


def get_orchestrator() -> GlobalAnalysisOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Analyzer not initialised yet")
    return _orchestrator


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = await request.body()
    log.error("422 validation error on %s %s", request.method, request.url.path)
    log.error("Request body: %s", body.decode(errors="replace")[:2000])
    log.error("Validation errors: %s", exc.errors())
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "body_preview": body.decode(errors="replace")[:500]})


def _log_progress(progress: GlobalCoherenceProgress) -> None:
    log.info("progress: pass=%s (%d/%d) %d%% scenes=%d/%d eta=%ds errors=%d",
             progress.current_pass, progress.pass_number, progress.total_passes,
             progress.pass_progress, progress.scenes_analyzed, progress.total_scenes,
             progress.estimated_time_remaining, len(progress.errors))


def _to_manuscript(data: ManuscriptIn) -> Manuscript:
    scenes = [Scene(**scene.model_dump()) for scene in data.scenes]
    return Manuscript(
        id=data.id,
        title=data.title,
        scenes=scenes,
        original_order=data.original_order or [s.id for s in scenes],
        current_order=data.current_order or [s.id for s in scenes],
    )


def _to_analysis(data: AnalysisRefIn) -> GlobalCoherenceAnalysis:
    scene_level = [
        ScenePairAnalysis(t.scene_a_id, t.scene_b_id, t.position, t.transition_score)
        for t in data.scene_level
    ]
    return GlobalCoherenceAnalysis(
        scene_level=scene_level,
        chapter_level=[],
        manuscript_level=default_manuscript_level(scene_level, []),
        flow_issues=[
            NarrativeFlowIssue(f.severity, f.description, f.affected_scenes, f.pattern)
            for f in data.flow_issues
        ],
    )


@app.post("/analyze")
async def analyze(
    request: AnalyzeRequest,
    orchestrator: GlobalAnalysisOrchestrator = Depends(get_orchestrator),
):
    log.info("POST /analyze — title=%r scenes=%d depth=%s",
             request.manuscript.title, len(request.manuscript.scenes), request.settings.depth)
    if orchestrator.running:
        raise HTTPException(status_code=409, detail="An analysis is already running")

    try:
        analysis = await orchestrator.analyze_global_coherence(
            _to_manuscript(request.manuscript),
            GlobalCoherenceSettings(**request.settings.model_dump()),
            _log_progress,
        )
    except FatalConfigurationError as exc:
        log.error("Analysis aborted: %s", exc)
        raise HTTPException(status_code=401, detail=exc.user_message)
    except AIServiceError as exc:
        log.error("Analysis failed: %s", exc)
        raise HTTPException(status_code=502, detail=exc.user_message)

    return dataclasses.asdict(analysis)


@app.post("/cancel")
async def cancel(orchestrator: GlobalAnalysisOrchestrator = Depends(get_orchestrator)):
    running = orchestrator.running
    orchestrator.cancel_analysis()
    return {"cancelled": running}


@app.get("/analysis/last")
async def last_analysis(orchestrator: GlobalAnalysisOrchestrator = Depends(get_orchestrator)):
    if orchestrator.last_analysis is None:
        raise HTTPException(status_code=404, detail="No analysis has completed yet")
    return dataclasses.asdict(orchestrator.last_analysis)


@app.post("/enrich")
async def enrich(
    request: EnrichRequest,
    orchestrator: GlobalAnalysisOrchestrator = Depends(get_orchestrator),
):
    if request.analysis is not None:
        analysis = _to_analysis(request.analysis)
    elif orchestrator.last_analysis is not None:
        analysis = orchestrator.last_analysis
    else:
        raise HTTPException(status_code=404, detail="No analysis supplied and none has completed yet")

    scene_issues = {
        scene_id: [ContinuityIssue(**issue.model_dump()) for issue in issues]
        for scene_id, issues in request.scene_issues.items()
    }
    enriched = orchestrator.enrich_scene_issues(scene_issues, analysis)
    return {
        "scene_issues": {
            scene_id: [dataclasses.asdict(issue) for issue in issues]
            for scene_id, issues in enriched.items()
        }
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "model": MODEL_NAME,
        "fast_model": FAST_MODEL_NAME or MODEL_NAME,
        "deep_model": DEEP_MODEL_NAME or MODEL_NAME,
        "cache": COHERENCE_ENABLE_CACHE,
    }
