# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ASGI authentication middleware: optional static Bearer token.

Pure ASGI middleware (no ``BaseHTTPMiddleware``). Only installed when a
token is configured; with no token the app is served unauthenticated.

Auth flow:
1. Health paths and CORS preflight (``OPTIONS``) pass through.
2. Compare ``Authorization`` against ``Bearer <token>`` in constant time.
3. On mismatch: send ``401 {"error": "Unauthorized"}`` and stop, before
   the request body is read or any browser work starts.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import suppress

from .problem_details import unauthorized

logger = logging.getLogger(__name__)

# Health endpoints that bypass authentication
_BYPASS_PATHS: frozenset[str] = frozenset({"/health"})


def _authorization_header(scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name.lower() == b"authorization":
            return value.decode("latin-1")
    return None


class AuthMiddleware:
    """Pure ASGI middleware requiring ``Authorization: Bearer <token>``.

    Constructor:
        ``AuthMiddleware(app, token)``

    Non-HTTP scopes (e.g. lifespan) pass through unconditionally.
    """

    def __init__(self, app, token: str) -> None:
        if not token:
            raise ValueError("AuthMiddleware requires a non-empty token")
        self.app = app
        self._expected = f"Bearer {token}".encode()

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope.get("path", "") in _BYPASS_PATHS or scope.get("method") == "OPTIONS":
            await self.app(scope, receive, send)
            return

        if self._is_authorized(_authorization_header(scope)):
            await self.app(scope, receive, send)
            return

        logger.warning("Auth rejected: path=%s", scope.get("path", ""))
        # Client may already be gone
        with suppress(Exception):
            response = unauthorized().to_response()
            await response(scope, receive, send)

    def _is_authorized(self, header: str | None) -> bool:
        if header is None:
            return False
        return secrets.compare_digest(header.encode("latin-1", errors="replace"), self._expected)
