import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from reqshield.app.core.config import Settings, settings as default_settings
from reqshield.app.core.logging import get_logger, setup_logging
from reqshield.app.core.security import is_secure_request
from reqshield.app.core.store import StateStore, create_store
from reqshield.app.exceptions import ShieldException
from reqshield.app.middleware.security import SecurityPipelineMiddleware
from reqshield.app.services.pipeline import build_pipeline
from reqshield.app.services.sweeper import BackgroundSweeper


def create_app(
    config: Optional[Settings] = None,
    store: Optional[StateStore] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Settings to use (default: the global settings)
        store: State store; a new one is built from config when omitted
            and closed on shutdown
        clock: Time source for rate limiting and token expiry

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings

    setup_logging()
    logger = get_logger(__name__)

    owns_store = store is None
    if store is None:
        store = create_store(
            backend="redis" if config.redis_enabled else "memory",
            redis_url=config.redis_url,
            prefix=config.store_prefix,
        )

    pipeline = build_pipeline(store, config, clock=clock)
    sweeper = BackgroundSweeper(
        rate_limiter=pipeline.rate_limiter,
        csrf_guard=pipeline.csrf_guard,
        interval=config.sweep_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Starts the background sweeper on startup; stops it and releases
        the state store on shutdown.
        """
        await sweeper.start()
        logger.info(
            "Application startup complete",
            extra={
                "store": type(store).__name__,
                "https_only": config.https_only,
                "csrf_enabled": config.csrf_enabled,
            },
        )

        yield

        await sweeper.stop()
        if owns_store:
            await store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ReqShield",
        description="Request security pipeline: rate limiting, CSRF protection and injection detection",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.store = store
    app.state.sweeper = sweeper

    app.add_middleware(
        SecurityPipelineMiddleware,
        pipeline=pipeline,
        session_cookie_name=config.session_cookie_name,
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with state store connectivity."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            await store.get("_health_check")
            health_status["components"]["store"] = {
                "status": "ok",
                "type": type(store).__name__,
            }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }
        health_status["components"]["sweeper"] = {
            "status": "ok" if sweeper.running else "stopped"
        }
        return health_status

    @app.get("/csrf-token")
    async def csrf_token(request: Request) -> JSONResponse:
        """Issue a CSRF token bound to the caller's session.

        A session cookie is set when the request does not carry one.
        """
        session_id = request.cookies.get(config.session_cookie_name)
        new_session = not session_id
        if new_session:
            session_id = secrets.token_urlsafe(32)

        token = await pipeline.csrf_guard.issue(session_id)
        response = JSONResponse(
            content={
                "csrf_token": token,
                "header_name": config.csrf_header_name,
                "field_name": config.csrf_field_name,
                "expires_in": config.csrf_token_ttl_seconds,
            }
        )
        if new_session:
            response.set_cookie(
                config.session_cookie_name,
                session_id,
                httponly=True,
                samesite="lax",
                secure=is_secure_request(
                    request.url.scheme,
                    request.headers,
                    config.trust_forwarded_headers,
                ),
            )
        return response

    @app.post("/logout")
    async def logout(request: Request) -> JSONResponse:
        """Invalidate every CSRF token of the session and drop the cookie."""
        session_id = request.cookies.get(config.session_cookie_name)
        invalidated = 0
        if session_id:
            invalidated = await pipeline.csrf_guard.invalidate_all_for_session(session_id)

        response = JSONResponse(content={"status": "logged_out", "invalidated": invalidated})
        response.delete_cookie(config.session_cookie_name)
        return response

    @app.exception_handler(ShieldException)
    async def shield_exception_handler(request: Request, exc: ShieldException) -> JSONResponse:
        """Handle security exceptions raised inside endpoints."""
        logger.warning(
            f"Security error in endpoint: {exc.code}",
            extra={"code": exc.code, "path": request.url.path, "status_code": exc.status_code},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    return app


# Create the application instance
app = create_app()
