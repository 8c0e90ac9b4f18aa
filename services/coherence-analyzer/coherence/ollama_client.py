"""Ollama-backed implementation of the analysis capability.

Sends each request's prompt to Ollama's ``/api/generate`` endpoint in JSON
mode and maps transport and HTTP failures onto the typed errors in
``coherence.errors``.  Malformed JSON raises ``ValueError`` so callers can
degrade at the pass or item level.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

import httpx

from .capability import AnalysisRequest, AnalysisResponse, ResponseMetadata
from .decoding import normalize_severity
from .errors import (
    InvalidKeyError,
    MissingKeyError,
    NetworkError,
    RateLimitError,
    ServiceUnavailableError,
)
from .models import ContinuityIssue

log = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_SYSTEM_PROMPT = (_PROMPTS_DIR / "system.txt").read_text().strip()
_CONTINUITY_TEMPLATE = (_PROMPTS_DIR / "continuity_user.txt").read_text().strip()

_PROVIDER = "ollama"
_CONTINUITY_TYPES = frozenset(["pronoun", "timeline", "character", "plot", "context", "engagement"])


class OllamaAnalyzer:
    """Async analysis capability talking to a single Ollama endpoint.

    One ``httpx.AsyncClient`` is reused for every call; close it with
    ``aclose()`` when the service shuts down.
    """

    def __init__(
        self,
        base_url: str,
        model_name: str,
        *,
        api_key: str | None = None,
        require_api_key: bool = False,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.api_key = api_key
        self.require_api_key = require_api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def analyze(self, request: AnalysisRequest) -> AnalysisResponse:
        if self.require_api_key and not self.api_key:
            raise MissingKeyError(_PROVIDER)

        model = request.options.get("model_override") or self.model_name
        prompt = request.options.get("prompt") or _build_continuity_prompt(request)

        t0 = time.monotonic_ns()
        try:
            resp = await self._client.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": model,
                    "prompt": prompt,
                    "system": _SYSTEM_PROMPT,
                    "stream": False,
                    "format": "json",
                    "options": {"num_predict": -1},
                },
            )
        except httpx.TransportError as exc:
            raise NetworkError(str(exc)) from exc
        _raise_for_status(resp)
        duration_ms = (time.monotonic_ns() - t0) // 1_000_000

        body = resp.json()
        raw = body.get("response", "")
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object from {model}, got {type(parsed).__name__}")

        log.debug("Ollama %s answered %s (%s) in %d ms",
                  model, request.scene.id, request.analysis_type, duration_ms)

        return AnalysisResponse(
            issues=_continuity_issues(parsed.get("issues")),
            metadata=ResponseMetadata(
                model_used=body.get("model") or model,
                provider=_PROVIDER,
                duration_ms=duration_ms,
            ),
            payload=parsed,
        )


def _raise_for_status(resp: httpx.Response) -> None:
    status = resp.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise InvalidKeyError(_PROVIDER, f"HTTP {status}")
    if status == 429:
        retry_after = resp.headers.get("retry-after")
        raise RateLimitError(_PROVIDER, float(retry_after) if retry_after and retry_after.isdigit() else None)
    if status >= 500:
        raise ServiceUnavailableError(_PROVIDER, status)
    resp.raise_for_status()


def _continuity_issues(raw) -> list[ContinuityIssue]:
    """Keep only entries shaped like generic continuity issues.

    Pass-specific issue arrays (transition types, patterns) stay in the
    payload and are decoded by the pass that asked for them.
    """
    if not isinstance(raw, list):
        return []
    issues = []
    for entry in raw:
        if not isinstance(entry, dict) or entry.get("type") not in _CONTINUITY_TYPES:
            continue
        issues.append(ContinuityIssue(
            type=entry["type"],
            severity=normalize_severity(entry.get("severity")),
            description=str(entry.get("description") or ""),
            suggested_fix=str(entry.get("suggestedFix") or entry.get("suggested_fix") or ""),
        ))
    return issues


def _build_continuity_prompt(request: AnalysisRequest) -> str:
    previous = "\n\n".join(
        f"[{s.id}] {s.text[:1200]}" for s in request.previous_scenes
    ) or "(none)"
    ctx = request.reader_context
    return _CONTINUITY_TEMPLATE.format(
        analysis_type=request.analysis_type,
        known_characters=", ".join(sorted(ctx.known_characters)) or "none",
        established_settings=", ".join(ctx.established_settings) or "none",
        previous_scenes=previous,
        scene_id=request.scene.id,
        scene_text=request.scene.text,
    )
