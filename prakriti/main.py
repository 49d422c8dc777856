# prakriti/main.py
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from prakriti.api.quest_routes import Services, router
from prakriti.config import Settings
from prakriti.panel_renderer import GENERATED_ROOT
from prakriti.progress import ProgressTracker, create_kv_store
from prakriti.quest_feed import QuestFeed
from prakriti.quest_store import QuestStore

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s  %(levelname)s  %(name)s  %(message)s",
)
logger = logging.getLogger(__name__)


def build_services(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Services:
    kv = create_kv_store(settings.kv_backend, settings.redis_url)
    redis_url = settings.redis_url if settings.kv_backend == "redis" else None
    return Services(
        settings=settings,
        store=QuestStore(settings.seed_quests_path, settings.generated_quests_path),
        tracker=ProgressTracker(kv, settings.reward_policy),
        feed=QuestFeed(redis_url),
        transport=transport,
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.feed.start_listener()
        yield
        await services.feed.stop()
        await services.tracker.kv.close()

    app = FastAPI(title="Prakriti Odyssey Quest Service", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = [str(err.get("msg")) for err in exc.errors()]
        return JSONResponse(status_code=422, content={"error": "Invalid request", "details": details})

    app.include_router(router)

    # generated panel art and the seed placeholder panels
    os.makedirs(os.path.join(settings.static_dir, GENERATED_ROOT), exist_ok=True)
    app.mount(
        f"/{GENERATED_ROOT}",
        StaticFiles(directory=os.path.join(settings.static_dir, GENERATED_ROOT)),
        name="generated-quests",
    )
    app.mount(
        "/story-panels",
        StaticFiles(directory=os.path.join(settings.static_dir, "story-panels"), check_dir=False),
        name="story-panels",
    )
    logger.info("Quest service ready (data: %s, static: %s)", settings.data_dir, settings.static_dir)
    return app


_app: Optional[FastAPI] = None


def __getattr__(name: str):
    # `prakriti.main:app` is built from the environment on first access
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


if __name__ == "__main__":
    uvicorn.run("prakriti.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8080)))
