# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Deep Render exception hierarchy.

All render failures inherit from RenderError, so the HTTP layer can catch
the base class and map each subclass to a response status.
"""

from __future__ import annotations


class RenderError(Exception):
    """Base exception for all Deep Render errors."""


class ValidationError(RenderError):
    """Malformed or missing request input (client-fixable)."""


class AuthError(RenderError):
    """Missing or incorrect bearer credential."""


class NavigationError(RenderError):
    """Both navigation phases failed (DNS, TLS, timeout, refused connection, ...)."""


class InternalError(RenderError):
    """Browser failed to start, or an unexpected fault during the session lifecycle."""


class CapacityError(RenderError):
    """No render slot became free within the queue timeout."""

    def __init__(self, message: str, *, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after
