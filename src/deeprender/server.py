# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Deep Render HTTP service.

Endpoints:
- GET  /health: liveness, always ``{"ok": true}``, no auth
- POST /render: ``{url, waitUntil?, timeoutMs?}`` → ``{html, url, status}``

Middleware (outermost first): CORS → Auth (only with a token) → BodyLimit → app.
All logging goes to stderr through structlog.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import uuid
from collections.abc import Mapping

import structlog
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .auth_middleware import AuthMiddleware
from .body_limit import BodyLimitMiddleware
from .browser_session import BrowserConfig
from .config import ServerConfig
from .errors import RenderError, ValidationError
from .payload import parse_render_request
from .problem_details import from_exception
from .renderer import Renderer

# Logging configured in main() via logging_config.configure()
logger = logging.getLogger("deeprender.server")

_GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds


# ── Handlers ─────────────────────────────────────────────────────────


async def _health_check(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True})


async def _read_json(request: Request):
    """Decoded JSON body, or None when the body is empty or not JSON."""
    try:
        return await request.json()
    except ValueError:  # JSONDecodeError, UnicodeDecodeError
        return None


async def _render(request: Request) -> JSONResponse:
    config: ServerConfig = request.app.state.config
    renderer: Renderer = request.app.state.renderer

    request_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(request_id=request_id)
    headers = {"X-Request-ID": request_id}
    try:
        body = await _read_json(request)
        try:
            render_request = parse_render_request(body, config.render.timeouts)
        except ValidationError as exc:
            logger.info("Render rejected: %s", exc)
            response = from_exception(exc).to_response()
            response.headers.update(headers)
            return response

        try:
            result = await renderer.render(render_request)
        except RenderError as exc:
            response = from_exception(exc).to_response()
        except Exception as exc:
            logger.exception("Unhandled render error")
            response = from_exception(exc).to_response()
        else:
            response = JSONResponse(result.to_dict())
        response.headers.update(headers)
        return response
    finally:
        structlog.contextvars.unbind_contextvars("request_id")


# ── App factory ──────────────────────────────────────────────────────


def create_app(config: ServerConfig | None = None, renderer: Renderer | None = None) -> Starlette:
    """Build the Starlette app.

    Args:
        config: Startup configuration (defaults to ``ServerConfig()``).
        renderer: Orchestrator to use; built from *config* when omitted.
    """
    config = config or ServerConfig()
    if renderer is None:
        renderer = Renderer(config.render, BrowserConfig(headless=config.headless))

    # Listed outermost first
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=list(config.cors_origins),
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
            expose_headers=["X-Request-ID"],
            max_age=600,
        ),
    ]
    if config.auth_enabled:
        middleware.append(Middleware(AuthMiddleware, token=config.auth_token))
    middleware.append(Middleware(BodyLimitMiddleware, max_bytes=config.max_body_bytes))

    app = Starlette(
        routes=[
            Route("/health", _health_check, methods=["GET"]),
            Route("/render", _render, methods=["POST"]),
        ],
        middleware=middleware,
    )
    app.state.config = config
    app.state.renderer = renderer
    return app


# ── CLI / env parsing ────────────────────────────────────────────────


def _parse_server_args(argv: list[str], environ: Mapping[str, str] | None = None) -> ServerConfig:
    """Build a ``ServerConfig`` from env vars, then apply CLI overrides."""
    parser = argparse.ArgumentParser(
        prog="deeprender",
        description="Server-side rendering proxy backed by headless Chromium.",
    )
    parser.add_argument("--host", default=None, help="Bind address (env: DEEPRENDER_HOST, default 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (env: PORT, default 8080)")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Max browser sessions at once (env: DEEPRENDER_MAX_CONCURRENCY, default 4)",
    )
    parser.add_argument(
        "--cors-origin",
        action="append",
        default=None,
        help="Allowed CORS origin, repeatable (env: DEEPRENDER_CORS_ORIGIN, default *)",
    )
    parser.add_argument("--log-level", default=None, help="Log level (env: DEEPRENDER_LOG_LEVEL, default INFO)")
    log_format = parser.add_mutually_exclusive_group()
    log_format.add_argument("--json-logs", dest="json_logs", action="store_true", default=None)
    log_format.add_argument("--console-logs", dest="json_logs", action="store_false", default=None)
    args = parser.parse_args(argv)

    config = ServerConfig.from_env(environ)

    overrides: dict = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.cors_origin:
        overrides["cors_origins"] = tuple(args.cors_origin)
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.json_logs is not None:
        overrides["json_logs"] = args.json_logs
    if args.max_concurrency is not None:
        overrides["render"] = dataclasses.replace(config.render, max_concurrent_renders=args.max_concurrency)
    return dataclasses.replace(config, **overrides) if overrides else config


# ── Process lifecycle ────────────────────────────────────────────────


async def _run_http_server(config: ServerConfig) -> None:
    """Serve until SIGINT/SIGTERM, then close the listener."""
    import uvicorn

    app = create_app(config)
    uv_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_TIMEOUT,
    )
    server = uvicorn.Server(uv_config)

    # capture_signals() registers signal.signal(sig, self.handle_exit),
    # so the instance override takes priority.
    _original_handle_exit = server.handle_exit

    def _log_then_exit(sig: int, frame) -> None:
        logger.info("Shutdown signal (sig=%d), closing listener", sig)
        _original_handle_exit(sig, frame)

    server.handle_exit = _log_then_exit  # type: ignore[assignment]

    await server.serve()
    logger.info("HTTP server stopped")


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ``deeprender`` command."""
    import anyio

    try:
        config = _parse_server_args(argv if argv is not None else sys.argv[1:])
    except ValueError as exc:
        print(f"deeprender: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    # Configure structlog BEFORE any log output
    from .logging_config import configure as configure_logging

    configure_logging(json_output=config.json_logs, level=config.log_level)

    if not config.auth_enabled:
        logger.warning("RENDER_API_KEY is not set; /render accepts unauthenticated requests")
    timeouts = config.render.timeouts
    logger.info(
        "Starting Deep Render (host=%s, port=%d, max_concurrency=%d, timeout_ms=%d..%d)",
        config.host,
        config.port,
        config.render.max_concurrent_renders,
        timeouts.min_ms,
        timeouts.max_ms,
    )
    anyio.run(_run_http_server, config)


if __name__ == "__main__":
    main()
