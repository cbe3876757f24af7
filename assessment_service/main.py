from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.database import Base, make_engine, make_session_factory

from .config import Settings
from .errors import AssessmentError
from .notifications import CompletionNotifier
from .routes import build_router
from .session import AutosaveMonitor, TimerRegistry, make_expiry_handler, rearm_timers

logger = logging.getLogger("assessment-service")

SERVICE_NAME = "assessment-service"
VERSION = "1.0.0"


def create_app(settings: Optional[Settings] = None, *, notifier: Optional[CompletionNotifier] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    engine = make_engine(settings.database_url)
    SessionLocal = make_session_factory(engine)

    if notifier is None and settings.recommendation_service_url:
        notifier = CompletionNotifier(settings.recommendation_service_url)

    timers = TimerRegistry(
        make_expiry_handler(SessionLocal, notifier),
        tick_seconds=settings.timer_tick_seconds,
    )
    autosave = AutosaveMonitor(settings.autosave_warning_threshold)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        rearmed = rearm_timers(SessionLocal, timers)
        if rearmed:
            logger.info("Re-armed %s session timer(s)", rearmed)
        yield
        timers.cancel_all()
        if notifier is not None:
            notifier.close()
        engine.dispose()

    app = FastAPI(title="Assessment Service", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionLocal = SessionLocal
    app.state.timers = timers
    app.state.autosave = autosave
    app.state.notifier = notifier

    allow_credentials = True
    if settings.cors_origins == ["*"]:
        # Browsers reject "*" with credentials
        allow_credentials = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AssessmentError)
    async def assessment_error_handler(request: Request, exc: AssessmentError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/health", operation_id="health_check", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "service": SERVICE_NAME}

    @app.get("/", operation_id="root", tags=["Root"])
    async def root():
        return {
            "service": "Assessment Service",
            "version": VERSION,
            "active_timers": len(timers.active()),
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    app.include_router(build_router(SessionLocal, timers=timers, autosave=autosave, notifier=notifier))
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8004)
