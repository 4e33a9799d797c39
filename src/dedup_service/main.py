"""
Patient Duplicate Detection & Merge Service
Controller/Service/Repository Pattern
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dedup_service import __version__
from dedup_service.core.cache import CacheManager, RedisCheckpointStore, RedisLockProvider
from dedup_service.core.config import ApplicationConfig, get_config
from dedup_service.core.database import DatabaseManager, get_transaction_manager
from dedup_service.core.dependencies import build_duplicate_service
from dedup_service.core.logging_setup import configure_logging
from dedup_service.domains.audit.repositories.audit_repository import AuditRepository
from dedup_service.domains.duplicates.controllers.duplicates_controller import router as duplicates_router
from dedup_service.domains.duplicates.repositories.candidate_repository import CandidateRepository
from dedup_service.domains.merge.repositories.dependent_repository import build_dependent_repositories
from dedup_service.domains.patient.repositories.patient_repository import PatientRepository

logger = logging.getLogger(__name__)


class DedupServiceContext:
    """Centralized service context for dependency injection"""

    def __init__(self, config: ApplicationConfig = None):
        self.config = config or get_config()
        self.db_manager = DatabaseManager(self.config.database)
        self.cache_manager = CacheManager(self.config.redis)
        self.duplicate_service = None
        self.start_time = datetime.now(timezone.utc)
        self._initialized = False

    async def initialize(self):
        """Initialize all connections and services"""
        if self._initialized:
            return

        logger.info("Initializing Dedup Service Context...")

        await self.db_manager.initialize()
        await self.cache_manager.initialize()

        self.duplicate_service = build_duplicate_service(
            directory=PatientRepository(self.db_manager, self.config.matching),
            candidates=CandidateRepository(self.db_manager),
            audit_store=AuditRepository(self.db_manager),
            dependents=build_dependent_repositories(self.db_manager),
            locks=RedisLockProvider(self.cache_manager),
            checkpoints=RedisCheckpointStore(self.cache_manager),
            transactions=get_transaction_manager(self.db_manager),
            config=self.config,
        )

        self._initialized = True
        logger.info("Dedup Service Context initialized successfully")

    async def cleanup(self):
        """Cleanup all connections"""
        logger.info("Cleaning up Dedup Service Context...")
        await self.cache_manager.cleanup()
        await self.db_manager.cleanup()
        logger.info("Cleanup complete")

    async def health(self):
        return {
            "database": await self.db_manager.health_check(),
            "redis": await self.cache_manager.health_check(),
        }


# FastAPI application with lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage service lifecycle"""
    configure_logging(get_config().logging)
    logger.info("Starting Dedup Service...")
    app.state.dedup_service = DedupServiceContext()
    await app.state.dedup_service.initialize()
    logger.info("Dedup Service started successfully")

    yield

    logger.info("Shutting down Dedup Service...")
    await app.state.dedup_service.cleanup()
    logger.info("Dedup Service shutdown complete")


app = FastAPI(
    title="Patient Dedup Service",
    version=__version__,
    description="Duplicate detection, review and merge for clinic patient records",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(duplicates_router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc)
    }


@app.get("/health/ready")
async def readiness_check(request: Request):
    """MongoDB and Redis reachability; 503 until both are healthy"""
    context = getattr(request.app.state, "dedup_service", None)
    if context is None:
        return JSONResponse(status_code=503, content={"status": "starting"})

    components = await context.health()
    ready = all(component.get("status") == "healthy" for component in components.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "degraded",
            "uptime_seconds": int((datetime.now(timezone.utc) - context.start_time).total_seconds()),
            "components": components,
        }
    )


@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": "Patient Dedup Service",
        "version": __version__,
        "architecture": "Domain-Driven Design",
        "pattern": "Controller/Service/Repository",
        "documentation": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "dedup_service.main:app",
        host=config.host,
        port=config.port,
        log_level=config.logging.level.lower(),
        access_log=False,
        reload=False
    )
