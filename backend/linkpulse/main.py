from fastapi import FastAPI, Request, Depends
from fastapi.responses import RedirectResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .context import get_headers
from .database import engine, Base, get_db
from .engine import (
    PAUSED_URL, EXPIRED_URL, NOT_FOUND_URL,
    LIMIT_REACHED_URL, NOT_YET_ACTIVE_URL, GEO_BLOCKED_URL,
)
from .handler import LinkNotFoundError, redirect_handler
from .redis_client import RedisService
from .routes import router as api_router
from .schemas import HealthResponse
from .webhooks import webhook_dispatcher
from .logging_config import setup_logging, get_logger, set_request_id
from .tasks import task_runner

# Initialize structured logging
setup_logging()
logger = get_logger(__name__)

# Informational pages the redirect engine falls back to
INFO_PAGES = {
    PAUSED_URL: (200, "This link is paused"),
    EXPIRED_URL: (200, "This link has expired"),
    LIMIT_REACHED_URL: (200, "This link has reached its click limit for today"),
    NOT_YET_ACTIVE_URL: (200, "This link is not active yet"),
    GEO_BLOCKED_URL: (200, "This link is not available in your country"),
    NOT_FOUND_URL: (404, "Link not found"),
}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to each request for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID")
        rid = set_request_id(request_id)

        response = await call_next(request)

        response.headers["X-Request-ID"] = rid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    task_runner.start()

    yield

    task_runner.stop()
    await webhook_dispatcher.drain()
    logger.info(f"Shutting down {settings.APP_NAME}...")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Conditional link redirects with click analytics and fraud scoring",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)

app.add_middleware(RequestIdMiddleware)

cors_origins = settings.CORS_ORIGINS
if cors_origins == ["*"]:
    logger.warning("CORS configured to allow all origins. Set CORS_ORIGINS for production.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api", tags=["API"])


def _info_page(path: str) -> JSONResponse:
    status_code, message = INFO_PAGES[path]
    return JSONResponse(status_code=status_code, content={"message": message})


@app.get(PAUSED_URL, include_in_schema=False)
async def paused_page():
    return _info_page(PAUSED_URL)


@app.get(EXPIRED_URL, include_in_schema=False)
async def expired_page():
    return _info_page(EXPIRED_URL)


@app.get(LIMIT_REACHED_URL, include_in_schema=False)
async def limit_reached_page():
    return _info_page(LIMIT_REACHED_URL)


@app.get(NOT_YET_ACTIVE_URL, include_in_schema=False)
async def not_yet_active_page():
    return _info_page(NOT_YET_ACTIVE_URL)


@app.get(GEO_BLOCKED_URL, include_in_schema=False)
async def geo_blocked_page():
    return _info_page(GEO_BLOCKED_URL)


@app.get(NOT_FOUND_URL, include_in_schema=False)
async def not_found_page():
    return _info_page(NOT_FOUND_URL)


@app.get("/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint."""
    db_healthy = True
    redis_healthy = RedisService.health_check()

    try:
        db.execute(text("SELECT 1"))
    except Exception:
        db_healthy = False

    status = "healthy" if (db_healthy and redis_healthy) else "degraded"

    return HealthResponse(
        status=status,
        database=db_healthy,
        redis=redis_healthy,
        version=settings.APP_VERSION,
    )


@app.get("/{code}")
async def redirect_to_url(
    code: str,
    request: Request,
    db: Session = Depends(get_db)
):
    """Resolve a short code and redirect."""
    if code in ["favicon.ico", "robots.txt", "sitemap.xml"]:
        return JSONResponse(status_code=404, content={"error": "Not found"})

    try:
        outcome = redirect_handler.handle(
            db,
            code,
            headers=get_headers(request),
            query_params=dict(request.query_params),
            remote_addr=request.client.host if request.client else None,
        )
    except LinkNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Link not found"})

    headers = {}
    if outcome.rule_id:
        headers["X-Redirect-Rule"] = outcome.rule_id
    return RedirectResponse(url=outcome.url, status_code=outcome.status_code, headers=headers)


# Exception handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if getattr(exc, "status_code", None) == 404:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(status_code=exc.status_code or 500, content={"detail": exc.detail or "HTTP error"})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.error(f"Server error: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
