from fastapi import APIRouter

from admission.api.routes import metering, queue


def setup_routers() -> APIRouter:
    router = APIRouter()
    router.include_router(queue.router)
    router.include_router(metering.router)
    return router


__all__ = ["setup_routers"]
