"""
Build the cohort builder's collaborators for the API (used in lifespan).
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from fastapi import HTTPException, Request

from src.analytics import AnalyticsClient, AnalyticsSettings
from src.auth.tenant import TenantResolver
from src.db.session import create_engine, create_session_factory
from src.llm import create_client
from src.llm.types import ModelClient
from src.orchestrator import CohortBuilderConfig, CohortOrchestrator
from src.tools import ErrorClassifier, MemoryStore, build_registry
from src.transcripts import TranscriptStore

logger = logging.getLogger(__name__)


def _transcripts_enabled() -> bool:
    return os.getenv("TRANSCRIPTS_ENABLED", "true").strip().lower() not in ("0", "false", "no", "off")


def build_services(app) -> None:
    """
    Populate ``app.state`` with config, analytics client, registry,
    transcript store and tenant resolver. The model client is created lazily.
    """
    config = CohortBuilderConfig.from_env()
    settings = AnalyticsSettings.from_env()
    analytics = AnalyticsClient(settings)
    memory_store = MemoryStore(os.getenv("MEMORY_BASE_DIR", "./memory"))
    enable_web_search = os.getenv("LLM_PROVIDER", "anthropic").lower() == "anthropic"

    app.state.config = config
    app.state.analytics = analytics
    app.state.registry = build_registry(analytics, memory_store=memory_store, enable_web_search=enable_web_search)
    app.state.classifier = ErrorClassifier(table_name=settings.table, database_name=settings.database)
    app.state.tenant_resolver = TenantResolver(default_tenant_id=os.getenv("DEFAULT_TENANT_ID"))
    app.state.model_client = None
    app.state.background_tasks = set()

    app.state.engine = None
    app.state.transcripts = None
    if _transcripts_enabled():
        engine = create_engine()
        app.state.engine = engine
        app.state.transcripts = TranscriptStore(create_session_factory(engine))
    logger.info(
        "Cohort builder ready: tools=%s transcripts=%s",
        ",".join(app.state.registry.names()),
        app.state.transcripts is not None,
    )


async def close_services(app) -> None:
    tasks = list(getattr(app.state, "background_tasks", None) or ())
    for task in tasks:
        task.cancel()
    if tasks:
        # Pumps still write transcripts, so they finish before the engine goes.
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %s conversation task(s) on shutdown", len(tasks))
    analytics: Optional[AnalyticsClient] = getattr(app.state, "analytics", None)
    if analytics is not None:
        await analytics.aclose()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


def get_model_client(request: Request) -> ModelClient:
    """The process-wide model client, created on first use."""
    client = getattr(request.app.state, "model_client", None)
    if client is None:
        config: CohortBuilderConfig = request.app.state.config
        try:
            client = create_client(model_name=config.model)
        except ValueError as exc:
            logger.error("Model client unavailable: %s", exc)
            raise HTTPException(status_code=503, detail=f"Service unavailable: {exc}") from exc
        request.app.state.model_client = client
    return client


def get_orchestrator(request: Request) -> CohortOrchestrator:
    state = request.app.state
    return CohortOrchestrator(
        model=get_model_client(request),
        registry=state.registry,
        config=state.config,
        classifier=state.classifier,
        transcripts=getattr(state, "transcripts", None),
    )


def get_transcripts(request: Request) -> TranscriptStore:
    store = getattr(request.app.state, "transcripts", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Service unavailable: transcript store not configured.")
    return store
