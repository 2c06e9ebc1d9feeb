from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ledgermatch.api.calibration import router as calibration_router
from ledgermatch.api.matching import router as matching_router
from ledgermatch.api.suggestions import router as suggestions_router
from ledgermatch.config import settings
from ledgermatch.db.init_db import init_db
from ledgermatch.db.session import create_db_engine
from ledgermatch.graphql.schema import graphql_router
from ledgermatch.logging_config import configure_logging
from ledgermatch.services.container import MatchingComponents, build_components


@asynccontextmanager
async def _lifespan(app: FastAPI):
    engine = None
    if getattr(app.state, "components", None) is None:
        engine = create_db_engine()
        await init_db(engine)
        app.state.components = build_components(engine)
    try:
        yield
    finally:
        await app.state.components.aclose()
        if engine is not None:
            await engine.dispose()


def create_app(components: MatchingComponents | None = None) -> FastAPI:
    configure_logging(settings.log_level, settings.log_json)
    app = FastAPI(title="Tiered Semantic Matching API", lifespan=_lifespan)
    # prebuilt components (tests, embedding in another process) skip the database bootstrap
    app.state.components = components

    app.include_router(matching_router)
    app.include_router(calibration_router)
    app.include_router(suggestions_router)

    app.include_router(graphql_router, prefix="/graphql")
    return app


app = create_app()
