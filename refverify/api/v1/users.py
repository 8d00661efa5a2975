"""
User endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Query

from refverify.api.deps import DbSession
from refverify.kernel.identity.identity_service import IdentityService
from refverify.schemas.auth import LeaderboardEntry

router = APIRouter()


@router.get("/leaderboard", response_model=List[LeaderboardEntry])
async def leaderboard(
    db: DbSession,
    country: Optional[str] = Query(None, min_length=2, max_length=8),
    limit: int = Query(20, ge=1, le=100),
):
    """Top contributors and verifiers by points, optionally for one country."""
    users = await IdentityService(db).leaderboard(limit=limit, country=country)
    return [
        LeaderboardEntry(
            rank=rank,
            user_id=user.id,
            username=user.username,
            country=user.country,
            points=user.points,
        )
        for rank, user in enumerate(users, start=1)
    ]
