from fastapi import APIRouter

from itc_recon.api.v1.endpoints import gstr2b


api_router = APIRouter(prefix="/api/v1")


# ==================== GST ITC Reconciliation ====================
api_router.include_router(
    gstr2b.router,
    prefix="/gst/gstr2b",
    tags=["GSTR-2B Reconciliation"]
)
