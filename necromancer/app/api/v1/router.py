"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from necromancer.app.api.v1.endpoints import service_requests, drivers, driver_offers

router = APIRouter()

# Requester-facing request lifecycle
router.include_router(service_requests.router)

# Driver directory
router.include_router(drivers.router)

# Offers and work reporting for drivers
router.include_router(driver_offers.router)
