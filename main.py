"""
Aviation Crew Communication API - Secure FastAPI Application
Main application file with security controls

Requirements:
pip install fastapi uvicorn argon2-cffi cryptography pyjwt slowapi \
    python-dotenv python-multipart
"""

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager, suppress
import asyncio
import logging
from typing import Optional
from dotenv import load_dotenv

from routers import auth, messages, documents, crew
from middleware.security import SecurityHeadersMiddleware, AttackDetectionMiddleware
from database.seed import seed_demo_crew
from utils.audit import AuditAction, log_audit_event
from utils.auth_dependencies import get_client_ip
from utils.env_init import (
    Settings,
    validate_required_env_vars,
    check_master_encryption_key,
    display_security_checklist
)
from utils.errors import CrewAPIError
from utils.scheduler import run_periodic_task
from utils.service_registry import CrewServices, build_services

ROUTER_LIMITERS = (auth.limiter, messages.limiter, documents.limiter, crew.limiter)

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    """Configure secure logging (no secrets, no message or document content)"""
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _error_response(exc: CrewAPIError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def _validation_details(errors) -> list:
    """User-friendly field errors without echoing rejected input"""
    details = []
    for error in errors:
        loc = error.get('loc') or ('unknown',)
        field = loc[-1] if loc else 'unknown'
        msg = error.get('msg', 'Invalid input')

        if error.get('type') == 'string_pattern_mismatch':
            msg = 'Invalid format'
        elif error.get('type') == 'string_too_short':
            msg = f'{str(field).replace("_", " ").title()} is too short'
        elif error.get('type') == 'string_too_long':
            msg = f'{str(field).replace("_", " ").title()} is too long'
        elif error.get('type') == 'value_error':
            # Custom validator message
            msg = msg.replace('Value error, ', '')

        details.append({"field": field, "message": msg})
    return details


def create_app(settings: Optional[Settings] = None, services: Optional[CrewServices] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        settings: Settings (read from the environment when omitted)
        services: Prebuilt services (built from settings when omitted)

    Raises:
        RuntimeError: If required configuration is missing or invalid
    """
    if settings is None:
        settings = services.settings if services is not None else Settings.from_env()

    if not validate_required_env_vars(settings):
        raise RuntimeError("Missing required environment variables - check logs")
    if not check_master_encryption_key(settings):
        raise RuntimeError("MASTER_ENCRYPTION_KEY is not properly configured")
    display_security_checklist(settings)

    if services is None:
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        # Startup
        logger.info("Starting Aviation Crew Communication API")
        logger.info(f"Environment: {settings.env}")
        logger.info(f"Debug mode: {settings.debug}")
        if settings.seed_demo_data and not settings.is_production:
            seed_demo_crew(services.identities)
        maintenance = asyncio.create_task(run_periodic_task(
            services.run_maintenance,
            settings.maintenance_interval_minutes * 60,
            "Security state cleanup"
        ))
        logger.info("API is ready to accept requests")

        yield

        # Shutdown
        maintenance.cancel()
        with suppress(asyncio.CancelledError):
            await maintenance
        services.run_maintenance()
        logger.info("Application shutdown complete")

    # Initialize FastAPI application
    app = FastAPI(
        title="Aviation Crew Communication API",
        description="Secure messaging and document sharing for airline crew",
        version="1.0.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan
    )
    app.state.services = services

    # 1. Rate Limiting
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=["1000/hour"],
        storage_uri=settings.rate_limit_storage,
        strategy="fixed-window",
        enabled=settings.rate_limit_enabled
    )
    for router_limiter in ROUTER_LIMITERS:
        router_limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter

    # 2. CORS Configuration (restrictive)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600
    )

    # 3. Attack pattern detection on URL and query string
    app.add_middleware(AttackDetectionMiddleware)

    # 4. Security Headers
    app.add_middleware(SecurityHeadersMiddleware, production=settings.is_production)

    # Exception Handlers

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        """Audit and answer 429"""
        crew_member = getattr(request.state, "crew", None)
        log_audit_event(
            services.audit_store, crew_member.employee_id if crew_member else None,
            AuditAction.RATE_LIMIT_EXCEEDED, 'failed', get_client_ip(request), {"path": request.url.path}
        )
        return _rate_limit_exceeded_handler(request, exc)

    @app.exception_handler(CrewAPIError)
    async def crew_api_error_handler(request: Request, exc: CrewAPIError):
        """Map core errors to their status code and error code"""
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.kind.value}")
        else:
            logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.code}")
        return _error_response(exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions securely"""
        if exc.status_code >= 400:
            logger.warning(
                f"HTTP {exc.status_code} - Path: {request.url.path} - "
                f"Method: {request.method}"
            )

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code
            },
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Handle Pydantic validation errors with user-friendly messages
        Prevents exposure of internal validation details
        """
        errors = _validation_details(exc.errors())

        error_fields = [f"{e['field']}: {e['message']}" for e in errors]
        logger.info(f"Validation error on {request.url.path}: {len(errors)} fields - {'; '.join(error_fields)}")

        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation failed",
                "details": errors
            }
        )

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        """Validation errors raised while building filters or records inside an endpoint"""
        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation failed",
                "details": _validation_details(exc.errors())
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions securely"""
        logger.error(f"Unexpected error on {request.url.path}: {type(exc).__name__}")

        # Never expose internal error details to client
        return JSONResponse(
            status_code=500,
            content={
                "error": "An internal server error occurred",
                "status_code": 500
            }
        )

    # Health Check Endpoint

    @app.get("/health", tags=["Health"])
    @limiter.limit("60/minute")
    async def health_check(request: Request):
        """Health check endpoint (no sensitive info)"""
        return {
            "status": "healthy",
            "service": "aviation-crew-api",
            "version": "1.0.0"
        }

    # Include Routers
    app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(messages.router, prefix="/api/v1/messages", tags=["Messages"])
    app.include_router(documents.router, prefix="/api/v1/documents", tags=["Documents"])
    app.include_router(crew.router, prefix="/api/v1/crew", tags=["Crew"])

    return app


def _build_default_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings)
    return create_app(settings)


app = _build_default_app()


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
        proxy_headers=False
    )
