from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import api
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def _lifespan(app: FastAPI):
    resumed = api.resume_pending_dispatches()
    if resumed:
        logger.info("startup resumed %d pending auto-send batches", resumed)
    yield
    if not api.dispatch_queue.wait_idle(timeout=SHUTDOWN_DRAIN_SECONDS):
        logger.warning("shutdown with auto-send dispatches still running; pending items resume on next start")
    api.dispatch_queue.shutdown(wait=False)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the missing values or switch the affected backends back to inmemory/stub."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)

    public_origin = settings.public_base_url.rstrip("/")
    if "://" in public_origin:
        public_origin = "/".join(public_origin.split("/")[:3])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[public_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api.router)
    return app


app = create_app()
