from fastapi import APIRouter

from .endpoints import (
    health,
    loyalty,
    observability,
    tokens,
    wheel,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(wheel.router)
router.include_router(loyalty.router)
router.include_router(tokens.router)
router.include_router(observability.router)
