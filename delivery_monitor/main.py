import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from delivery_monitor.config import configure_logging, settings
from delivery_monitor.api.routes import router

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup and shutdown events."""
    logger.info(
        "Delivery Monitor starting up — ENV=%s LOG_LEVEL=%s queue=%s",
        settings.ENV,
        settings.LOG_LEVEL,
        settings.CELERY_TASK_QUEUE,
    )
    yield
    logger.info("Delivery Monitor shutting down")


app = FastAPI(
    title="Delivery Delay Monitor API",
    description="Traffic-delay monitoring and customer notification for in-transit deliveries.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
