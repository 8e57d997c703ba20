"""
FastAPI application for the cohort builder API.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import env  # noqa: F401
from .deps import build_services, close_services
from .log_config import setup_logging
from .routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build collaborators on startup; close clients and the engine on shutdown."""
    setup_logging()
    build_services(app)
    yield
    await close_services(app)


app = FastAPI(
    title="Cohort Builder API",
    description="Conversational audience building over tenant population data",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)
app.include_router(router)
