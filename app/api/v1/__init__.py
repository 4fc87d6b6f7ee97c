"""API v1 routers."""
from fastapi import APIRouter

from app.api.v1 import admin, orders, payments, payouts

router = APIRouter()

router.include_router(orders.router, prefix="/orders", tags=["orders"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
router.include_router(payouts.router, prefix="/payouts", tags=["payouts"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
