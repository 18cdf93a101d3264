"""API key checks for HTTP routes and WebSocket upgrades.

The key comes from ``Settings.api_key``; when it is unset both checks pass.
"""

from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, WebSocket, status

from dockpilot.server.services import get_services


def _key_matches(provided: str) -> bool:
    expected = get_services().settings.api_key
    if not expected:
        return True
    return bool(provided) and secrets.compare_digest(provided, expected)


def verify_api_key(request: Request) -> None:
    """Route dependency raising 401 unless ``X-API-Key`` matches."""
    if not _key_matches(request.headers.get("X-API-Key", "")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


async def verify_ws_api_key(websocket: WebSocket) -> bool:
    """Check the upgrade's ``X-API-Key`` header; query-string keys are ignored."""
    return _key_matches(websocket.headers.get("X-API-Key", ""))
