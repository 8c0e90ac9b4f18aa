"""Per-run pass timing.

Each analysis run opens one ``collect_metrics()`` scope.  Pass entry points
decorated with ``@timed_pass`` append a ``PassMetrics`` to the list of the
scope they run in, so two runs on separate tasks never see each other's
timings.  A pass that raises is still timed and is marked
``completed=False``; the orchestrator decides what to do with the error.

The compressor and each of the five passes are decorated::

    @timed_pass("chapters")
    async def analyze_chapters(self, manuscript, compressed, ...):
        ...

and the orchestrator reads the list back once the run is over::

    with collect_metrics() as metrics:
        ...run the enabled passes...
    analysis.pass_metrics = list(metrics)
    report = build_report(metrics)
"""

from __future__ import annotations

import contextvars
import functools
import inspect
import logging
import time

from .models import PassMetrics

log = logging.getLogger(__name__)

_run_metrics: contextvars.ContextVar[list[PassMetrics] | None] = (
    contextvars.ContextVar("_run_metrics", default=None)
)


class collect_metrics:
    """Scope of one analysis run; yields the run's ``list[PassMetrics]``.

    Scopes nest: an inner scope collects its own passes and the outer
    list is restored on exit.
    """

    def __enter__(self) -> list[PassMetrics]:
        self._metrics: list[PassMetrics] = []
        self._token = _run_metrics.set(self._metrics)
        return self._metrics

    def __exit__(self, *exc) -> None:
        _run_metrics.reset(self._token)


def timed_pass(name: str):
    """Time a pass entry point (sync or async) under ``name``.

    Outside a ``collect_metrics`` scope the pass runs untimed.
    """

    def decorator(fn):
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def wrapper(*args, **kwargs):
                metrics = _run_metrics.get()
                if metrics is None:
                    return await fn(*args, **kwargs)
                t0 = time.monotonic_ns()
                completed = False
                try:
                    result = await fn(*args, **kwargs)
                    completed = True
                    return result
                finally:
                    _record(metrics, name, t0, completed)

        else:

            @functools.wraps(fn)
            def wrapper(*args, **kwargs):
                metrics = _run_metrics.get()
                if metrics is None:
                    return fn(*args, **kwargs)
                t0 = time.monotonic_ns()
                completed = False
                try:
                    result = fn(*args, **kwargs)
                    completed = True
                    return result
                finally:
                    _record(metrics, name, t0, completed)

        return wrapper

    return decorator


def build_report(metrics: list[PassMetrics]) -> dict:
    """Summarise a run's pass timings, slowest pass first."""
    ordered = sorted(metrics, key=lambda m: m.duration_ms, reverse=True)
    return {
        "total_duration_ms": sum(m.duration_ms for m in metrics),
        "slowest_pass": ordered[0].pass_name if ordered else None,
        "passes": [
            {"pass": m.pass_name, "duration_ms": m.duration_ms, "completed": m.completed}
            for m in metrics
        ],
    }


def _record(metrics: list[PassMetrics], name: str, t0: int, completed: bool) -> None:
    duration_ms = (time.monotonic_ns() - t0) // 1_000_000
    if completed:
        log.debug("%s pass took %d ms", name, duration_ms)
    else:
        log.debug("%s pass raised after %d ms", name, duration_ms)
    metrics.append(PassMetrics(name, duration_ms, completed))
