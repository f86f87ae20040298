# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Startup configuration.

Built once in ``server.main()`` from environment variables (and CLI flags),
then passed explicitly to the app and the renderer. Request handling never
reads ``os.environ`` directly.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field

_TRUTHY = ("1", "true", "yes")
_FALSY = ("0", "false", "no")


@dataclass(frozen=True, slots=True)
class TimeoutLimits:
    """Allowed range for a request's ``timeoutMs``."""

    min_ms: int = 5000
    max_ms: int = 55000

    def __post_init__(self) -> None:
        if self.min_ms <= 0:
            raise ValueError(f"timeout min must be positive, got {self.min_ms}")
        if self.min_ms > self.max_ms:
            raise ValueError(f"timeout range is inverted: {self.min_ms} > {self.max_ms}")

    @property
    def default_ms(self) -> int:
        return (self.min_ms + self.max_ms) // 2

    def clamp(self, value: int) -> int:
        return max(self.min_ms, min(self.max_ms, value))


@dataclass(frozen=True, slots=True)
class RenderSettings:
    """Orchestrator tuning knobs."""

    timeouts: TimeoutLimits = field(default_factory=TimeoutLimits)
    readiness_fraction: float = 0.5  # share of timeout_ms spent on the readiness race
    readiness_min_ms: int = 1000
    readiness_max_ms: int = 10000
    settle_delay_ms: int = 1000
    max_concurrent_renders: int = 4
    queue_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.readiness_min_ms > self.readiness_max_ms:
            raise ValueError("readiness range is inverted")
        if self.max_concurrent_renders < 1:
            raise ValueError("max_concurrent_renders must be >= 1")
        if self.settle_delay_ms < 0:
            raise ValueError("settle_delay_ms must be >= 0")
        if not self.readiness_fraction > 0:  # also rejects NaN
            raise ValueError("readiness_fraction must be > 0")
        if not self.queue_timeout_s > 0:
            raise ValueError("queue_timeout_s must be > 0")

    def readiness_ceiling_ms(self, timeout_ms: int) -> int:
        """Upper bound for the post-navigation readiness wait."""
        raw = int(timeout_ms * self.readiness_fraction)
        return max(self.readiness_min_ms, min(self.readiness_max_ms, raw))


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Process-wide configuration for the HTTP service."""

    host: str = "0.0.0.0"  # nosec B104
    port: int = 8080
    auth_token: str = ""  # empty = auth disabled
    render: RenderSettings = field(default_factory=RenderSettings)
    max_body_bytes: int = 1024 * 1024
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    json_logs: bool = True
    headless: bool = True

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_token)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """Build a config from environment variables.

        Malformed numeric values are ignored and the default is kept.
        An inverted timeout or readiness range, or a non-positive queue
        timeout or readiness fraction, raises ``ValueError``.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        rdef = defaults.render

        def _int(name: str, default: int) -> int:
            raw = env.get(name, "").strip()
            if raw:
                with suppress(ValueError):
                    return int(raw)
            return default

        def _float(name: str, default: float) -> float:
            raw = env.get(name, "").strip()
            if raw:
                with suppress(ValueError):
                    return float(raw)
            return default

        def _bool(name: str, default: bool) -> bool:
            raw = env.get(name, "").strip().lower()
            if raw in _TRUTHY:
                return True
            if raw in _FALSY:
                return False
            return default

        timeouts = TimeoutLimits(
            min_ms=_int("DEEPRENDER_TIMEOUT_MIN_MS", rdef.timeouts.min_ms),
            max_ms=_int("DEEPRENDER_TIMEOUT_MAX_MS", rdef.timeouts.max_ms),
        )
        render = RenderSettings(
            timeouts=timeouts,
            readiness_fraction=_float("DEEPRENDER_READINESS_FRACTION", rdef.readiness_fraction),
            readiness_min_ms=_int("DEEPRENDER_READINESS_MIN_MS", rdef.readiness_min_ms),
            readiness_max_ms=_int("DEEPRENDER_READINESS_MAX_MS", rdef.readiness_max_ms),
            settle_delay_ms=_int("DEEPRENDER_SETTLE_MS", rdef.settle_delay_ms),
            max_concurrent_renders=_int("DEEPRENDER_MAX_CONCURRENCY", rdef.max_concurrent_renders),
            queue_timeout_s=_float("DEEPRENDER_QUEUE_TIMEOUT", rdef.queue_timeout_s),
        )

        cors_raw = env.get("DEEPRENDER_CORS_ORIGIN", "").strip()
        cors = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) or defaults.cors_origins

        return cls(
            host=env.get("DEEPRENDER_HOST", "").strip() or defaults.host,
            port=_int("PORT", defaults.port),
            auth_token=env.get("RENDER_API_KEY", "").strip(),
            render=render,
            max_body_bytes=_int("DEEPRENDER_MAX_BODY_BYTES", defaults.max_body_bytes),
            cors_origins=cors,
            log_level=env.get("DEEPRENDER_LOG_LEVEL", "").strip() or defaults.log_level,
            json_logs=_bool("DEEPRENDER_JSON_LOGS", defaults.json_logs),
            headless=not _bool("DEEPRENDER_HEADFUL", not defaults.headless),
        )
