import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse

from .api.anonymous_routes import router as anonymous_router
from .api.cache_routes import router as cache_router
from .api.chat_routes import router as chat_router
from .api.context_routes import router as context_router
from .api.session_routes import router as session_router
from .api.share_routes import router as share_router
from .db import engine
from .errors import bad_request, conflict, forbidden, not_found, too_many_requests
from .exceptions import (
    InvalidSessionId,
    InvalidShareToken,
    LimitExceeded,
    OperationInProgress,
    ShareLinkNotFound,
    ThreadAccessDenied,
    ThreadNotFound,
)
from .logging_config import logger
from .models import Base


async def handle_limit_exceeded(request: Request, exc: LimitExceeded):
    retry_after = None
    if exc.reset is not None:
        retry_after = max(0, int(exc.reset - time.time()))
    logger.info("Rate limit hit on %s %s: %s", request.method, request.url.path, exc)
    return await http_exception_handler(
        request,
        too_many_requests(
            str(exc),
            retry_after=retry_after,
            details={"limit": exc.limit, "remaining": exc.remaining, "reset": exc.reset},
        ),
    )


async def handle_thread_access_denied(request: Request, exc: ThreadAccessDenied):
    return await http_exception_handler(
        request,
        forbidden(
            "You do not have access to this thread",
            error="thread_access_denied",
            details={"thread_id": exc.thread_id},
        ),
    )


async def handle_operation_in_progress(request: Request, exc: OperationInProgress):
    return await http_exception_handler(
        request,
        conflict(
            "The same operation is already in progress, retry shortly",
            details={"operation": exc.lease_name},
        ),
    )


async def handle_thread_not_found(request: Request, exc: ThreadNotFound):
    return await http_exception_handler(
        request, not_found("Thread not found", details={"thread_id": exc.thread_id})
    )


async def handle_invalid_session_id(request: Request, exc: InvalidSessionId):
    return await http_exception_handler(
        request, bad_request(str(exc), details={"session_id": exc.session_id})
    )


async def handle_invalid_share_token(request: Request, exc: InvalidShareToken):
    return await http_exception_handler(request, bad_request(str(exc)))


async def handle_share_link_not_found(request: Request, exc: ShareLinkNotFound):
    return await http_exception_handler(request, not_found(str(exc)))


async def handle_unexpected_error(request: Request, exc: Exception):
    """
    Catch-all handler: structured 500 body, traceback in the log.
    """

    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "internal_error",
            "message": "Internal server error, please try again later",
            "error_id": error_id,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    startup: create missing tables when AUTO_CREATE_TABLES is on.
    """
    from .settings import settings

    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured (environment=%s)", settings.environment)

    yield


def create_app() -> FastAPI:
    from fastapi.middleware.cors import CORSMiddleware

    from .settings import settings

    app = FastAPI(
        title="Chat Session Cache",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(LimitExceeded, handle_limit_exceeded)
    app.add_exception_handler(ThreadAccessDenied, handle_thread_access_denied)
    app.add_exception_handler(OperationInProgress, handle_operation_in_progress)
    app.add_exception_handler(ThreadNotFound, handle_thread_not_found)
    app.add_exception_handler(InvalidSessionId, handle_invalid_session_id)
    app.add_exception_handler(InvalidShareToken, handle_invalid_share_token)
    app.add_exception_handler(ShareLinkNotFound, handle_share_link_not_found)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(session_router)
    app.include_router(anonymous_router)
    app.include_router(chat_router)
    app.include_router(cache_router)
    app.include_router(context_router)
    app.include_router(share_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict:
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
