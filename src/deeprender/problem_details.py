# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Error taxonomy → HTTP responses.

Every failure leaves the service as ``{"error": "<message>"}`` with a status
picked from the exception class. Messages are scrubbed of credentials and
filesystem paths before they are sent.

Key public API:

- ``ProblemDetail`` — frozen (status, message) pair → Starlette response.
- ``from_exception()`` — map a ``RenderError`` (or anything else) to a ``ProblemDetail``.
- ``sanitize_detail()`` — scrub secrets & paths from error messages.
- ``classify_network_error()`` — Chromium ``net::ERR_*`` → readable text.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

from .errors import (
    AuthError,
    CapacityError,
    InternalError,
    NavigationError,
    RenderError,
    ValidationError,
)

MAX_DETAIL_LENGTH = 300

GENERIC_INTERNAL_MESSAGE = "Internal error"

# ── Secret sanitization patterns ─────────────────────────────────────

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{8,}"), "Basic <redacted>"),
    (
        re.compile(
            r"(?:API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)\s*[=:]\s*\S+",
            re.IGNORECASE,
        ),
        "<redacted>",
    ),
    (re.compile(r"://[^@\s/]+@"), "://<redacted>@"),
]

_PATH_PATTERN = re.compile(r"(/(?:Users|home|tmp|var|etc|opt|root|srv|proc|usr)/[\w./-]+|[A-Z]:\\[\w.\\-]+)")

# Playwright appends a multi-line "Call log:" section to navigation errors.
_CALL_LOG_MARKER = "Call log:"


def sanitize_detail(text: str) -> str:
    """Scrub secrets and filesystem paths from *text*.

    Drops Playwright call logs, applies ``_SECRET_PATTERNS`` and
    ``_PATH_PATTERN``, then truncates to ``MAX_DETAIL_LENGTH`` characters.
    """
    text = text.split(_CALL_LOG_MARKER, 1)[0].strip()
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _PATH_PATTERN.sub("<path>", text)
    text = " ".join(text.split())
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH] + "..."
    return text


# ── Chromium net::ERR_* classification ───────────────────────────────

_NET_ERR_RE = re.compile(r"net::ERR_(\w+)")
_PW_TIMEOUT_RE = re.compile(r"Timeout (\d+)ms exceeded")
_URL_HOST_RE = re.compile(r"https?://([^/:\s]+)")

# (codes, summary, preposition before the host)
_NET_ERROR_KINDS: tuple[tuple[frozenset[str], str, str], ...] = (
    (frozenset({"NAME_NOT_RESOLVED"}), "Could not resolve domain name", ""),
    (frozenset({"CONNECTION_TIMED_OUT", "TIMED_OUT"}), "Connection timed out", "to"),
    (
        frozenset(
            {
                "CONNECTION_REFUSED",
                "CONNECTION_CLOSED",
                "CONNECTION_RESET",
                "EMPTY_RESPONSE",
                "ADDRESS_UNREACHABLE",
                "INTERNET_DISCONNECTED",
            }
        ),
        "Connection failed",
        "to",
    ),
)


def _with_host(summary: str, preposition: str, host: str | None) -> str:
    if not host:
        return summary
    return " ".join(filter(None, (summary, preposition, f"'{host}'")))


def classify_network_error(exc_message: str) -> str | None:
    """Turn a Playwright navigation error message into a short description.

    Returns ``None`` if the message has neither a ``net::ERR_*`` code nor a
    Playwright timeout marker.
    """
    net_err = _NET_ERR_RE.search(exc_message)
    if net_err is None:
        pw_timeout = _PW_TIMEOUT_RE.search(exc_message)
        return f"Timed out after {pw_timeout.group(1)}ms" if pw_timeout else None

    code = net_err.group(1)
    host_match = _URL_HOST_RE.search(exc_message)
    host = host_match.group(1) if host_match else None

    for codes, summary, preposition in _NET_ERROR_KINDS:
        if code in codes:
            return _with_host(summary, preposition, host)
    if "CERT" in code or "SSL" in code:
        return _with_host("SSL/TLS error", "for", host)
    return f"net::ERR_{code}"


def describe_failure(exc: BaseException) -> str:
    """Short, sanitized description of a navigation exception."""
    message = str(exc)
    classified = classify_network_error(message)
    if classified is not None:
        return classified
    return sanitize_detail(message) or type(exc).__name__


# ── ProblemDetail ────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ProblemDetail:
    """HTTP status + message for a failed request."""

    status: int
    message: str
    extensions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}

    def to_response(self):
        """Starlette ``JSONResponse`` with ``Cache-Control: no-store`` (and ``Retry-After`` on 503)."""
        from starlette.responses import JSONResponse

        headers: dict[str, str] = {"Cache-Control": "no-store"}
        if "retry_after" in self.extensions:
            headers["Retry-After"] = str(max(1, math.ceil(self.extensions["retry_after"])))
        return JSONResponse(content=self.to_dict(), status_code=self.status, headers=headers)


# ── Exception → status mapping ───────────────────────────────────────

_STATUS_BY_TYPE: dict[type[RenderError], int] = {
    ValidationError: 400,
    AuthError: 401,
    CapacityError: 503,
    NavigationError: 500,
    InternalError: 500,
}


def from_exception(exc: BaseException) -> ProblemDetail:
    """Build a ``ProblemDetail`` from an exception.

    ``RenderError`` subclasses keep their (sanitized) message. Anything else
    gets a generic message so internal state is never leaked.
    """
    if isinstance(exc, RenderError):
        status = 500
        for exc_type in type(exc).__mro__:
            if exc_type in _STATUS_BY_TYPE:
                status = _STATUS_BY_TYPE[exc_type]
                break
        extensions: dict[str, Any] = {}
        if isinstance(exc, CapacityError):
            extensions["retry_after"] = exc.retry_after
        message = sanitize_detail(str(exc)) or GENERIC_INTERNAL_MESSAGE
        return ProblemDetail(status=status, message=message, extensions=extensions)
    return ProblemDetail(status=500, message=GENERIC_INTERNAL_MESSAGE)


def invalid_url() -> ProblemDetail:
    return ProblemDetail(status=400, message="Invalid url")


def unauthorized() -> ProblemDetail:
    return ProblemDetail(status=401, message="Unauthorized")


def payload_too_large() -> ProblemDetail:
    return ProblemDetail(status=413, message="Request body too large")
