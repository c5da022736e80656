"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from peerrent.api.v1 import disputes, internal, payouts, refunds, rentals

api_router = APIRouter()

# Rentals
api_router.include_router(rentals.router, prefix="/rentals", tags=["Rentals"])

# Disputes
api_router.include_router(disputes.router, prefix="/disputes", tags=["Disputes"])

# Refunds
api_router.include_router(refunds.router, prefix="/refunds", tags=["Refunds"])

# Payouts
api_router.include_router(payouts.router, prefix="/payouts", tags=["Payouts"])

# Internal
api_router.include_router(internal.router, prefix="/internal", tags=["Internal"])
