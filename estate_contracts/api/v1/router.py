from fastapi import APIRouter

from estate_contracts.api.v1.health import router as health_router
from estate_contracts.api.v1.contracts import router as contracts_router
from estate_contracts.api.v1.payments import router as payments_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(contracts_router)
v1_router.include_router(payments_router)
