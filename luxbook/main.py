from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from luxbook.api.router import api_router
from luxbook.core.config import get_settings
from luxbook.core.errors import LuxbookError
from luxbook.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    app = FastAPI(title=settings.app_name)
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.exception_handler(LuxbookError)
    async def luxbook_error_handler(request: Request, exc: LuxbookError) -> JSONResponse:
        logger.info("request.domain_error", path=request.url.path, code=exc.code, status=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    return app


app = create_app()
