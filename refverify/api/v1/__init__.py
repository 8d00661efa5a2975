"""
API v1 routes.
"""

from fastapi import APIRouter

from refverify.api.v1 import audit, auth, realtime, submissions, users

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(submissions.router, prefix="/submissions", tags=["Submissions"])
router.include_router(users.router, prefix="/users", tags=["Users"])
router.include_router(realtime.router, prefix="/realtime", tags=["Real-time"])
router.include_router(audit.router, prefix="/audit", tags=["Audit"])
