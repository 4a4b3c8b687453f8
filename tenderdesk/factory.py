"""
Builds the TenderDesk FastAPI app.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.router import router
from .core.config import Settings, get_settings
from .core.database import close_db, init_db
from .core.errors import TenderDeskError
from .core.flags import get_flags
from .core.redis import close_redis

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _add_cors(app: FastAPI, settings: Settings) -> None:
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _add_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TenderDeskError)
    async def domain_error(request: Request, exc: TenderDeskError):
        if exc.status_code >= 500:
            logger.error("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        )


def _add_lifecycle(app: FastAPI, settings: Settings) -> None:
    @app.on_event("startup")
    async def startup():
        configure_logging(settings.log_level)
        await init_db()

        flags = get_flags()
        logger.info(
            "TenderDesk up (env=%s): auth0=%s s3=%s redis=%s ocr=%s llm=%s fallback_embed=%s plans=%s",
            settings.env, flags.use_auth0, flags.use_s3, flags.use_redis, flags.use_ocr,
            flags.llm_provider, flags.use_fallback_embedding, flags.plan_enforcement,
        )
        if flags.run_index_worker:
            from .services.worker import get_worker
            worker = get_worker()
            await worker.recover()
            worker.start()

    @app.on_event("shutdown")
    async def shutdown():
        from .services.llm import close_client
        from .services.worker import stop_worker

        await stop_worker()
        await close_client()
        await close_db()
        await close_redis()
        logger.info("TenderDesk stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    dev = settings.env == "development"

    app = FastAPI(
        title="TenderDesk",
        description="Tender document indexing, retrieval and entitlements",
        version="1.0.0",
        docs_url="/docs" if dev else None,
        redoc_url="/redoc" if dev else None,
    )
    _add_cors(app, settings)
    _add_error_handlers(app)
    _add_lifecycle(app, settings)
    app.include_router(router)
    return app
