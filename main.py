"""
FastAPI application entry point for the comic bubble detection and translation service.
"""

# Load .env first so every settings object sees it
from dotenv import load_dotenv
load_dotenv()

import logging
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bubble_translate.api.detect import router as detect_router
from bubble_translate.config import get_settings


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    settings = get_settings()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description=(
            "Detects speech bubbles and free-floating text in comic images, "
            "recognizes their text and translates it."
        ),
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    cors_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(detect_router)

    @app.on_event("startup")
    async def startup_event():
        """Initialize services on startup."""
        from bubble_translate.logging_config import setup_logging
        setup_logging(settings)
        logger = logging.getLogger(__name__)

        if settings.PRELOAD_MODEL:
            try:
                logger.info("Pre-loading detector model...")
                from bubble_translate.services.router_service import get_router
                await get_router().warm_up()
                logger.info("Detector model ready.")
            except Exception as e:
                logger.warning(f"Pre-loading failed (will retry on first request): {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        logger = logging.getLogger(__name__)

        try:
            logger.info("Stopping request router...")
            from bubble_translate.services.router_service import shutdown_router
            await shutdown_router()
        except Exception as e:
            logger.warning(f"Error stopping request router: {e}")

    return app


# Application instance
app = create_app()


def run():
    """Run the application with uvicorn."""
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


if __name__ == "__main__":
    run()
