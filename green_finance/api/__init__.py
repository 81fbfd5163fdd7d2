"""
Green Finance Lending API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import router as auth_router
from .loans import router as loans_router
from .users import router as users_router
from .reports import router as reports_router
from .stokvela import router as stokvela_router
from .. import __version__
from ..config import get_config
from ..errors import (
    AuthenticationError, AuthorizationError, LendingError, NotFoundError,
    PartialTransitionError, PersistenceError, StorageError, ValidationError
)
from ..logging_config import get_logger, setup_logging

logger = get_logger("green_finance.api")


def _error_response(exc: LendingError) -> JSONResponse:
    """Map a lending error onto its HTTP status and body"""
    body = {"detail": exc.message, "error": type(exc).__name__}

    if isinstance(exc, ValidationError):
        body["field_errors"] = exc.field_errors
        status_code = 422
    elif isinstance(exc, AuthenticationError):
        status_code = 401
    elif isinstance(exc, AuthorizationError):
        status_code = 403
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, PartialTransitionError):
        body["application_id"] = exc.application_id
        body["destination"] = exc.destination
        status_code = 409
    elif isinstance(exc, (StorageError, PersistenceError)):
        body["application_id"] = exc.application_id
        status_code = 502
    else:
        status_code = 400

    if status_code >= 500 or status_code == 409:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=status_code, content=body)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title=config.api_title,
        description="Loan applications, approvals and reporting for Green Finance",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return _error_response(exc)

    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(reports_router, prefix="/reports", tags=["Reports"])
    app.include_router(stokvela_router, prefix="/stokvela", tags=["Stokvela"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "green_finance_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": config.api_title,
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "auth": "/auth",
                "loans": "/loans",
                "users": "/users",
                "reports": "/reports",
                "stokvela": "/stokvela",
            }
        }

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "green_finance.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
