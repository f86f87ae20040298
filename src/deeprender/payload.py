# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""``POST /render`` body model.

Parsing is deliberately lenient for the optional fields: an unknown
``waitUntil`` or a non-numeric ``timeoutMs`` falls back to the default
instead of failing the request. Only ``url`` is strict.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from . import DEFAULT_WAIT_UNTIL, RenderRequest, WaitUntil, is_http_url
from .config import TimeoutLimits
from .errors import ValidationError

INVALID_URL_MESSAGE = "Invalid url"


class RenderPayload(BaseModel):
    """Raw JSON body of a render call (camelCase on the wire)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    url: str | None = Field(None, description="Target URL, must be http:// or https://")
    wait_until: WaitUntil | None = Field(None, alias="waitUntil", description="Readiness state to wait for")
    timeout_ms: int | None = Field(None, alias="timeoutMs", description="Navigation timeout in milliseconds")

    @field_validator("url", mode="before")
    @classmethod
    def _url_must_be_string(cls, value: Any) -> str | None:
        return value if isinstance(value, str) else None

    @field_validator("wait_until", mode="before")
    @classmethod
    def _lenient_wait_until(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized in WaitUntil._value2member_map_:
            return normalized
        return None

    @field_validator("timeout_ms", mode="before")
    @classmethod
    def _lenient_timeout(cls, value: Any) -> int | None:
        # bool is an int subclass; JSON true/false is never a timeout
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return int(value)

    def to_request(self, limits: TimeoutLimits) -> RenderRequest:
        """Validate the URL and normalize options into an immutable ``RenderRequest``."""
        if not is_http_url(self.url):
            raise ValidationError(INVALID_URL_MESSAGE)
        timeout_ms = limits.default_ms if self.timeout_ms is None else limits.clamp(self.timeout_ms)
        return RenderRequest(
            url=self.url,
            wait_until=self.wait_until or DEFAULT_WAIT_UNTIL,
            timeout_ms=timeout_ms,
        )


def parse_render_request(body: Any, limits: TimeoutLimits) -> RenderRequest:
    """Turn a decoded JSON body into a ``RenderRequest``.

    Raises:
        ValidationError: body is not an object, or ``url`` is missing / not http(s).
    """
    if not isinstance(body, dict):
        raise ValidationError(INVALID_URL_MESSAGE)
    try:
        payload = RenderPayload.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(INVALID_URL_MESSAGE) from exc
    return payload.to_request(limits)
