from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api.v1 import ab_tests, batches, campaigns, suppression, tracking, unsubscribe
from .config import Settings, get_settings
from .core.cache import TTLCache
from .core.errors import MailerError
from .core.logging_config import configure_logging, get_logger
from .database import init_db
from .services.mail_transport import MailTransport, build_transport

logger = get_logger(__name__)


def error_payload(kind: str, message: str) -> dict:
    return {"ok": False, "error": {"kind": kind, "message": message}}


async def mailer_error_handler(request: Request, exc: MailerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.kind, exc.message))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in e.get('loc', ()))}: {e.get('msg')}" for e in errors
    ) or "Invalid request"
    return JSONResponse(status_code=422, content=error_payload("validation_error", message))


def create_app(
    settings: Settings = None,
    transport: MailTransport = None,
    create_tables: bool = True
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(settings.log_level)
        if create_tables:
            init_db()
        logger.info("Campaign mailer started")
        yield
        # Shutdown
        logger.info("Campaign mailer stopped")

    app = FastAPI(
        title="Campaign Mailer API",
        description="Email campaign batching, delivery and tracking",
        version=__version__,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.transport = transport or build_transport(settings)
    app.state.stats_cache = TTLCache(ttl_seconds=settings.stats_cache_ttl_seconds)

    app.add_exception_handler(MailerError, mailer_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(campaigns.router)
    app.include_router(ab_tests.router)
    app.include_router(suppression.router)
    app.include_router(batches.router)
    app.include_router(tracking.router)
    app.include_router(unsubscribe.router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
