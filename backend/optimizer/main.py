"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from optimizer.analysis import AnalysisService
from optimizer.api.routes import router
from optimizer.config import CORS_ORIGINS, logger as config_logger
from optimizer.conversion import ConversionService
from optimizer.history import HistoryStore, create_history_engine
from optimizer.jobs import JobManager

logging.getLogger("uvicorn").setLevel(logging.INFO)


def create_app(history: HistoryStore = None, service: ConversionService = None) -> FastAPI:
    """Build the app. Services are created at startup unless passed in."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = history or HistoryStore(create_history_engine())
        app.state.history = store
        app.state.analysis = AnalysisService()
        app.state.jobs = JobManager(service or ConversionService(), store)
        config_logger.info("Optimizer API started (history schema v%s)", store.schema_version)
        yield
        config_logger.info("Optimizer API shutting down")

    app = FastAPI(
        title="File Optimizer API",
        description="Analyze and shrink documents, images and videos with progress tracking.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from optimizer.config import HOST, PORT
    uvicorn.run("optimizer.main:app", host=HOST, port=PORT, reload=True)
