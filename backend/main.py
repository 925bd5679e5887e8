"""
SheetSense Backend - Main FastAPI Application

Answer-sheet ingestion, roll-number matching and AI correction reconciliation.
Version: 2.0
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from motor.motor_asyncio import AsyncIOMotorClient  # noqa: E402

from sheetsense.config.settings import settings  # noqa: E402
from sheetsense.container import ServiceContainer  # noqa: E402
from sheetsense.routes import include_all_routes  # noqa: E402

# Setup logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    With a container the routes are registered immediately; otherwise the
    lifespan connects to MongoDB, builds the container and registers them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None

        # STARTUP
        logger.info("🚀 SheetSense Backend Starting Up...")
        if app.state.container is None:
            try:
                settings.validate()
                logger.info("✅ Settings validated")

                client = AsyncIOMotorClient(
                    settings.MONGODB_URL,
                    maxPoolSize=50,
                    serverSelectionTimeoutMS=5000,
                    tz_aware=True,
                )
                await client.server_info()
                db = client[settings.DATABASE_NAME]
                logger.info(f"✅ Connected to MongoDB: {settings.DATABASE_NAME}")

                app.state.container = ServiceContainer.from_database(db)
                await _create_indexes(app.state.container)
                logger.info("✅ Database indexes created")

                include_all_routes(app, app.state.container)
                logger.info(f"✅ Routes registered (detector: {settings.ROLL_NUMBER_DETECTOR})")

            except Exception as e:
                logger.error(f"❌ Startup failed: {e}")
                raise

        logger.info("✅ Application startup complete")

        yield

        # SHUTDOWN
        logger.info("🛑 Shutting down...")
        await app.state.container.runner.drain()
        logger.info("✅ Background tasks drained")
        if client is not None:
            client.close()
            logger.info("✅ Database connection closed")

    app = FastAPI(
        title="SheetSense API",
        description="Answer-sheet ingestion and AI correction reconciliation",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": "2.0.0",
            "database": "connected" if app.state.container is not None else "disconnected",
            "pending_background_tasks": app.state.container.runner.pending if app.state.container else 0,
        }

    @app.get("/")
    async def root():
        return {
            "app": "SheetSense",
            "version": "2.0.0",
            "docs": "/docs",
            "health": "/api/health",
        }

    if container is not None:
        include_all_routes(app, container)

    return app


async def _create_indexes(container: ServiceContainer):
    """Create database indexes; existing ones are left alone."""
    try:
        await container.repository.create_indexes()
        await container.dispatcher.repository.create_indexes()
    except Exception as e:
        logger.warning(f"Index creation warning: {e}")


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
