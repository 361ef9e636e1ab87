# app/main.py
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.modules.docauthoring.services.llm import LanguageModel
from app.modules.docauthoring.services.registry import wire_services
from app.modules.docauthoring.services.state_store import KeyValueStore
from app.modules.router import router as modules_router
from core.config import Settings, settings
from core.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down doc-authoring services...")
    await app.state.routers.aclose()


def log_route_map(app: FastAPI) -> None:
    route_logger = logging.getLogger("router.map")
    for route in app.routes:
        # Mounted and included routers may not expose a path
        path = getattr(route, "path", None)
        if path is None:
            continue
        methods = ",".join(sorted(getattr(route, "methods", None) or []))
        route_logger.debug("ROUTE %s %s", methods, path)


def create_app(
    config: Settings = settings,
    model: Optional[LanguageModel] = None,
    store: Optional[KeyValueStore] = None,
) -> FastAPI:
    configure_logging(config.LOG_LEVEL)
    app = FastAPI(title=config.PROJECT_NAME, debug=config.DEBUG, lifespan=lifespan)
    wire_services(app, config, model=model, store=store)
    app.include_router(modules_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.api_route("/healthz", methods=["GET", "HEAD"], include_in_schema=False)
    async def healthz():
        return JSONResponse({"status": "ok", "environment": config.ENVIRONMENT})

    log_route_map(app)

    logger.info(f"{config.PROJECT_NAME} ready (workspace={os.path.abspath(config.WORKSPACE_ROOT)})")
    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("app.main:app", host="0.0.0.0", port=port)
