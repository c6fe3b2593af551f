"""
Shared router dependencies.
"""
from typing import Annotated, Optional

from arq.connections import ArqRedis
from fastapi import Depends, Header, HTTPException, Request, status

from shop_mirror.core.security import verify_admin_key


async def require_admin_key(
    x_admin_key: Annotated[Optional[str], Header()] = None,
) -> None:
    """Guard for admin routes: X-Admin-Key must match ADMIN_API_KEY."""
    if not verify_admin_key(x_admin_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )


def get_job_queue(request: Request) -> ArqRedis:
    """The arq pool opened in the app lifespan."""
    queue: Optional[ArqRedis] = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable",
        )
    return queue


AdminGuard = Depends(require_admin_key)
JobQueue = Annotated[ArqRedis, Depends(get_job_queue)]
