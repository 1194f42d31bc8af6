"""
FastAPI application entry point for the BloomFund backend.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bloomfund.config import get_settings
from bloomfund.dependencies import get_request_monitor
from bloomfund.errors import BloomFundError
from bloomfund.routes import router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="BloomFund Backend (FastAPI)", version="0.1.0")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            get_request_monitor().record(
                request.method, request.url.path, 500, (time.perf_counter() - started) * 1000
            )
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        get_request_monitor().record(
            request.method, request.url.path, response.status_code, elapsed_ms
        )
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    @app.exception_handler(BloomFundError)
    async def handle_domain_error(request: Request, exc: BloomFundError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(
            status_code=exc.status_code, content=exc.as_dict(), headers=exc.headers()
        )

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
