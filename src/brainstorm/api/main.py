from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.sessions import router as sessions_router
from .routers.messages import router as messages_router
from .routers.mindmap import router as mindmap_router
from .routers.private import router as private_router
from .routers.realtime import router as realtime_router
from ..errors import BrainstormError
from ..observability.metrics import metrics_middleware_factory
from ..services.model_router import ModelRouter
from ..services.session_service import get_session_service


load_dotenv()  # .env may carry provider keys, MONGO_URL, REDIS_URL, JWT_SECRET

logger = logging.getLogger(__name__)

API_NAME = "Brainstorm Orchestrator API"
API_VERSION = "0.1.0"


def _cors_origins() -> list[str]:
    raw = os.getenv("BRAINSTORM_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    return [o.strip() for o in raw.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop watchdogs and pending extraction work on the way out.
    await get_session_service().shutdown()


app = FastAPI(title=API_NAME, version=API_VERSION, lifespan=lifespan)
app.middleware("http")(metrics_middleware_factory())

for _router in (sessions_router, messages_router, mindmap_router, private_router, realtime_router):
    app.include_router(_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BrainstormError)
async def brainstorm_error_handler(request: Request, exc: BrainstormError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request_failed", extra={"path": request.url.path, "err": str(exc)})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc),
            "notification": {"level": "error", "title": exc.title, "detail": str(exc)},
        },
    )


@app.get("/")
def root():
    return {"name": API_NAME, "version": API_VERSION}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": os.getenv("BRAINSTORM_STORE_IMPL", "memory").lower(),
        },
        "providers": ModelRouter().describe(),
    }


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
