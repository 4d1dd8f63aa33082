"""Default authentication step of plugin service routes."""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from plexus.config.settings import Settings
from plexus.plugins.collaborators import CallNext, Middleware


async def _allow(request: Request, call_next: CallNext) -> Response:
    return await call_next(request)


class DefaultAuthProvider:
    """AuthProvider with a bearer-token check against SECRET_KEY.

    A service whose ``authorization`` config is ``{"type": "none"}`` is
    public. Everything else, including services without configuration,
    gets the token check. The development SECRET_KEY disables the check.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def middleware_for(self, auth_config: dict[str, Any] | None) -> Middleware:
        if auth_config and auth_config.get("type") == "none":
            return _allow
        if not self.settings.auth_enabled:
            return _allow
        return self._bearer_check

    async def _bearer_check(self, request: Request, call_next: CallNext) -> Response:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return JSONResponse({"detail": "Missing or malformed Authorization header"}, status_code=401)

        token = auth_header[7:]
        if not token:
            return JSONResponse({"detail": "Empty bearer token"}, status_code=401)

        token_hash = hashlib.sha256(token.encode()).hexdigest()
        key_hash = hashlib.sha256(self.settings.SECRET_KEY.encode()).hexdigest()

        if not hmac.compare_digest(token_hash, key_hash):
            return JSONResponse({"detail": "Invalid token"}, status_code=401)

        return await call_next(request)
