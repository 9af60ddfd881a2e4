"""
API Routes
"""
from fastapi import APIRouter

from reviewbot.api.routes.admin import router as admin_router
from reviewbot.api.webhooks.github import router as github_router

router = APIRouter()

router.include_router(github_router, prefix="/github", tags=["Webhooks"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
