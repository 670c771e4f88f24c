import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shopbot.config import settings
from shopbot.logging_config import get_logger, setup_logging
from shopbot.routers import webhook
from shopbot.services.background import wait_for_detached

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Shopbot API",
    description="Messenger and Instagram webhook pipeline for shop chat automation",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)


@app.on_event("shutdown")
async def drain_background_tasks():
    pending = await wait_for_detached(timeout=settings.shutdown_drain_seconds)
    if pending:
        logger.warning(f"Shutting down with {pending} background tasks still running")


@app.get("/health")
async def health():
    return {"status": "ok"}
