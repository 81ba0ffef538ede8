"""
API v1 Router

Task endpoints are prefixed with /tasks, inbox endpoints with /notifications;
all are scoped to the X-User-Id caller.
"""

from fastapi import APIRouter
from . import notifications, tasks

router = APIRouter()

router.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/tasks",
            "/tasks/tree",
            "/tasks/available",
            "/tasks/blocking",
            "/notifications",
            "/notifications/unread-count",
        ],
    }
