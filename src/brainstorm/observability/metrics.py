from __future__ import annotations

"""Prometheus instruments for the brainstorm service.

HTTP latency is observed by a middleware; the orchestration counters are
incremented by the services themselves and scraped from ``/metrics``.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

CallNext = Callable[[Request], Awaitable[Response]]

REQUEST_LATENCY = Histogram(
    "brainstorm_request_latency_seconds",
    "Time spent serving HTTP requests",
    labelnames=("method", "path", "status"),
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0),
)

PERSONA_INVOCATIONS = Counter(
    "brainstorm_persona_invocations_total",
    "Persona completions by speaker and outcome",
    labelnames=("speaker", "outcome"),
)

SCHEDULER_INTERVENTIONS = Counter(
    "brainstorm_scheduler_interventions_total",
    "Engagement scheduler interventions by rule and outcome",
    labelnames=("rule", "outcome"),
)

BACKGROUND_TASKS = Counter(
    "brainstorm_background_tasks_total",
    "Background task completions by name and outcome",
    labelnames=("name", "outcome"),
)

_UNTRACKED = ("/metrics",)


def sanitize_path(path: str) -> str:
    """Collapse ``/sessions/{slug}/...`` style paths to a low-cardinality label."""
    parts = [p for p in (path or "").split("?", 1)[0].split("/") if p]
    if not parts:
        return "/"
    head = parts[0]
    if head != "sessions" or len(parts) == 1:
        return "/" + head
    # Slugs and ids are dropped; only the resource under the session survives.
    return "/sessions/" + (parts[2] if len(parts) > 2 else "{slug}")


def metrics_middleware_factory() -> Callable[[Request, CallNext], Awaitable[Response]]:
    async def observe_latency(request: Request, call_next: CallNext) -> Response:
        path = request.url.path
        if path.startswith(_UNTRACKED):
            return await call_next(request)
        started = time.perf_counter()
        response = await call_next(request)
        try:
            REQUEST_LATENCY.labels(request.method, sanitize_path(path), str(response.status_code)).observe(
                time.perf_counter() - started
            )
        except Exception:
            # Metrics must never fail a request.
            pass
        return response

    return observe_latency
