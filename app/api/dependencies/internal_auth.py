# app/api/dependencies/internal_auth.py
from typing import Optional

from fastapi import Header, HTTPException, status

from app.core.config import get_settings

_OPEN_ENVIRONMENTS = ("local", "test")


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing internal API key.",
    )


async def verify_internal_api_key(
    internal_api_key: Optional[str] = Header(
        default=None,
        alias="X-Internal-Api-Key",
        description="Operator key for the /meetings control endpoints.",
    ),
) -> None:
    """
    Guard for the /meetings control surface: starting and stopping polling,
    on-demand reconciliation and sweeps, and forced meeting start/end.

    These calls change attendance for every participant of a meeting, so
    they are reserved for operators holding INTERNAL_API_KEY. Participant
    check-in and webhooks authenticate on their own and are not guarded here.

    Rules
    -----
    - Local/test deployments without INTERNAL_API_KEY: meeting controls open.
    - Local/test deployments with INTERNAL_API_KEY: header must match (401).
    - Any other deployment: INTERNAL_API_KEY is required (500 if missing)
      and the header must match (401).
    """
    settings = get_settings()
    env = (settings.APP_ENV or "local").lower()
    expected = getattr(settings, "INTERNAL_API_KEY", None)

    if not expected:
        if env in _OPEN_ENVIRONMENTS:
            return
        # A deployed service must never expose meeting controls unauthenticated.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="INTERNAL_API_KEY not configured for this environment.",
        )

    if internal_api_key != expected:
        raise _unauthorized()
