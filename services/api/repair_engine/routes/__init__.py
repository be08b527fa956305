"""API routes."""

from fastapi import APIRouter

from repair_engine.routes import admin, biddings, merchant, orders, reviews
from repair_engine.schemas.common import ERROR_RESPONSES

api_router = APIRouter(responses=ERROR_RESPONSES)

# Vehicle owners
api_router.include_router(biddings.router, prefix="/v1/biddings", tags=["biddings"])
api_router.include_router(orders.router, prefix="/v1/orders", tags=["orders"])
api_router.include_router(reviews.router, prefix="/v1/reviews", tags=["reviews"])

# Repair shops
api_router.include_router(merchant.router, prefix="/v1/merchant", tags=["merchant"])

# Operators (config, batch jobs, AI tasks)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])
