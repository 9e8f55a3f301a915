"""API routes."""

import logging
from fastapi import APIRouter

logger = logging.getLogger(__name__)

from slotkeeper.api.routes import slots, waitlist, jobs

api_router = APIRouter()

api_router.include_router(slots.router, prefix="/tenants/{tenant_id}/slots", tags=["slots"])
api_router.include_router(waitlist.router, prefix="/tenants/{tenant_id}/waitlist", tags=["waitlist"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
