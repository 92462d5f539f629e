"""Service authentication and actor identification for the tracking API.

Callers (the web/mobile backend-for-frontend, hardware webhooks) share a
single ``SERVICE_AUTH_TOKEN`` and must send ``Authorization: Bearer <token>``.
The end user on whose behalf a call is made travels in ``X-Actor-Id``;
presence changes compare it against the subject being changed.

Usage::

    from shared.auth import get_actor_id, require_service_auth

    @app.put("/presence/{subject_id}")
    async def put_presence(..., actor_id: str = Depends(get_actor_id),
                           _=Depends(require_service_auth)):
        ...
"""

from __future__ import annotations

import structlog
from fastapi import Header, HTTPException, Request, WebSocket, WebSocketException, status

from shared.config import get_settings

logger = structlog.get_logger()

# Actor used by server-side transitions (e.g. forcing a subject offline).
SYSTEM_ACTOR = "system"


async def require_service_auth(request: Request) -> None:
    """FastAPI dependency that validates the service auth token.

    Raises 401 if the token is missing or incorrect.
    Skips validation when ``service_auth_token`` is empty (dev mode).
    """
    settings = get_settings()
    expected = settings.service_auth_token
    if not expected:
        logger.debug("service_auth_disabled", path=request.url.path)
        return

    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing service auth token")

    token = auth_header[7:]  # strip "Bearer "
    if token != expected:
        logger.warning(
            "service_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Invalid service auth token")


async def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """FastAPI dependency returning the acting user's id from ``X-Actor-Id``."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="X-Actor-Id header required")
    return x_actor_id.strip()


async def verify_ws_auth(websocket: WebSocket) -> None:
    """Validate the service token passed as ``?token=`` on WebSocket upgrades."""
    expected = get_settings().service_auth_token
    if not expected:
        return
    if websocket.query_params.get("token", "") != expected:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION)
