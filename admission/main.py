"""Application entrypoint."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from admission.api.routes import setup_routers
from admission.config import AdmissionSettings, get_settings
from admission.db.session import Database
from admission.logging import bind_request_context, configure_logging, logger
from admission.services.exceptions import Internal, ServiceError
from admission.services.tiers import ensure_default_tiers


def create_app(
    settings: AdmissionSettings | None = None,
    database: Database | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    database = database or Database(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        if settings.create_tables:
            await database.create_all()
        if settings.seed_default_tiers:
            async with database.session() as seed_session:
                await ensure_default_tiers(seed_session)
        http_client = None
        if settings.quota_service.mode == "http":
            http_client = httpx.AsyncClient()
        app.state.http_client = http_client

        logger.info(
            "admission_starting",
            environment=settings.environment,
            quota_mode=settings.quota_service.mode,
        )
        try:
            yield
        finally:
            if http_client is not None:
                await http_client.aclose()
            await database.dispose()
            logger.info("admission_stopped")

    app = FastAPI(title="Admission Control", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.http_client = None

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        bind_request_context(request_id, method=request.method, path=request.url.path)
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, code=exc.code, status_code=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def datastore_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("datastore_error", path=request.url.path)
        error = Internal("Unexpected datastore failure.")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.get("/health")
    async def health():
        return {"status": "ok", "environment": settings.environment}

    app.include_router(setup_routers())
    return app


def run() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
