from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from crowdstats.api.routes import router as reports_router
from crowdstats.core.constants import API_VERSION, CORS_ORIGINS, SNAPSHOT_PATH, utc_now
from crowdstats.engine.cache import CacheManager
from crowdstats.engine.reports import ReportService
from crowdstats.engine.snapshots import SnapshotStore
from crowdstats.remote.client import HttpRemoteSource
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)


def build_default_service() -> ReportService:
    return ReportService(
        source=HttpRemoteSource(),
        cache=CacheManager(),
        snapshots=SnapshotStore(persist_path=SNAPSHOT_PATH),
    )


def create_app(service: Optional[ReportService] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[API] crowdstats {API_VERSION} starting")
        yield
        await app.state.report_service.close()
        logger.info("[API] crowdstats stopped")

    app = FastAPI(title="Crowd Stats API", version=API_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.report_service = service or build_default_service()
    app.include_router(reports_router)

    @app.get("/")
    def root():
        return {"status": "Crowd Stats API is running", "version": API_VERSION}

    @app.get("/api/health")
    async def health(request: Request):
        report_service: ReportService = request.app.state.report_service
        status = await report_service.health()
        status["status"] = "ok"
        status["timestamp"] = utc_now()
        return status

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
