# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Deep Render: server-side rendering proxy backed by headless Chromium.

Loads a URL in an isolated browser session, waits for the requested
readiness state, and returns the rendered markup plus the final URL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from .errors import ValidationError

_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE | re.ASCII)


class WaitUntil(StrEnum):
    """Readiness state a render waits for before extracting the DOM."""

    DOMCONTENTLOADED = "domcontentloaded"
    LOAD = "load"
    NETWORKIDLE = "networkidle"


DEFAULT_WAIT_UNTIL = WaitUntil.NETWORKIDLE


def is_http_url(url: object) -> bool:
    """True if *url* is a string starting with ``http://`` or ``https://``."""
    return isinstance(url, str) and _HTTP_URL_RE.match(url) is not None


@dataclass(frozen=True, slots=True)
class RenderRequest:
    """A validated render request. Construction fails on a non-HTTP(S) URL."""

    url: str
    wait_until: WaitUntil = DEFAULT_WAIT_UNTIL
    timeout_ms: int = 30000

    def __post_init__(self) -> None:
        if not is_http_url(self.url):
            raise ValidationError("Invalid url")


@dataclass(frozen=True, slots=True)
class RenderResult:
    """Rendered document snapshot."""

    html: str
    url: str  # final URL after redirects
    status: int | None = None  # HTTP status of the main document response

    def to_dict(self) -> dict:
        return {"html": self.html, "url": self.url, "status": self.status}


__all__ = [
    "DEFAULT_WAIT_UNTIL",
    "RenderRequest",
    "RenderResult",
    "WaitUntil",
    "is_http_url",
]
