import logging
import sys
from contextlib import asynccontextmanager
from typing import Any

from api.dependencies import get_auth_service
from api.routes import auth
from config import AppMode, get_settings
from db.database import init_db
from fastapi import APIRouter, FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from services.cookie_policy import RequestContext
from services.errors import (
    ConfigurationError,
    InvalidRefreshToken,
    MalformedError,
    RandomSourceError,
    StorageError,
    TokenError,
)
from starlette.requests import Request

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Quiet noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def check_cookie_policy() -> None:
    """
    Resolve the refresh cookie policy for PUBLIC_URL.

    Raises ConfigurationError so a bad COOKIE_* combination stops startup
    instead of failing on the first login.
    """
    policy = get_auth_service().cookie_policy(RequestContext.from_url(settings.PUBLIC_URL))
    logger.info(
        f"Refresh cookie policy for {settings.PUBLIC_URL}: environment={policy.environment.value} "
        f"name={policy.name} samesite={policy.samesite.value} secure={policy.secure} path={policy.path}"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events - startup and shutdown"""

    # === STARTUP ===
    logger.info(f"Starting auth token service in {settings.APP_MODE.value} mode...")

    check_cookie_policy()

    await init_db()

    # Start periodic token cleanup task (skip during pytest).
    if "pytest" not in sys.modules:
        auth.start_cleanup_task()

    yield

    # === SHUTDOWN ===
    if "pytest" not in sys.modules:
        auth.stop_cleanup_task()
    logger.info("Shutting down auth token service...")


app = FastAPI(
    title="Auth Token Service",
    description="Access token issuance with rotating, server-tracked refresh tokens",
    version="1.0.0",
    lifespan=lifespan,
    debug=(settings.APP_MODE == AppMode.DEV),
)

MAX_ERROR_STRING_CHARS = 400
MAX_ERROR_CONTAINER_ITEMS = 50


def _sanitize_for_json(value: Any) -> Any:
    """
    Make sure validation error payloads are UTF-8 encodable and bounded.

    SECURITY: validation errors echo user input, which may include a password.
    Inputs are dropped from the payload entirely.
    """
    if isinstance(value, dict):
        return {
            str(k): _sanitize_for_json(v)
            for k, v in list(value.items())[:MAX_ERROR_CONTAINER_ITEMS]
            if k not in ("input", "ctx")
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize_for_json(v) for v in list(value)[:MAX_ERROR_CONTAINER_ITEMS]]
    if value is None or isinstance(value, (int, float, bool)):
        return value
    text = str(value).encode("utf-8", errors="replace").decode("utf-8", errors="replace")
    return text[:MAX_ERROR_STRING_CHARS]


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": _sanitize_for_json(exc.errors())},
    )


# Token failures collapse to two outward signals; the cause is only logged.
@app.exception_handler(MalformedError)
async def malformed_token_handler(request: Request, exc: MalformedError) -> JSONResponse:
    logger.info(f"Rejected malformed token on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Request rejected"},
    )


@app.exception_handler(TokenError)
async def token_error_handler(request: Request, exc: TokenError) -> JSONResponse:
    logger.info(f"Rejected access token on {request.url.path}: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": "Authentication required"},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(InvalidRefreshToken)
async def invalid_refresh_token_handler(request: Request, exc: InvalidRefreshToken) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": exc.public_message, "code": exc.code},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(StorageError)
@app.exception_handler(RandomSourceError)
async def unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Auth backend unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable"},
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Cookie policy misconfiguration: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Server misconfiguration"},
    )


# Request logging (development only)
if settings.APP_MODE == AppMode.DEV:
    from middleware.logging import RequestLoggingMiddleware, configure_request_logging
    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - must be last (first to process incoming requests)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
app.include_router(api_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
        "rotation": settings.ROTATE_REFRESH_TOKENS,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
