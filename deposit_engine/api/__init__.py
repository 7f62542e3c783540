"""
Deposit Engine API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..engine import DepositEngine
from ..errors import (
    ConfigurationError, DepositEngineError, NotFoundError, StateConflictError, ValidationError
)
from ..logging_config import get_logger
from .accounts import parties_router, products_router, router as accounts_router
from .admin import router as admin_router
from .fd import router as fd_router
from .interest import router as interest_router


logger = get_logger("deposit_engine.api")

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    StateConflictError: 409,
    ConfigurationError: 422,
}


def error_status(error: DepositEngineError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(engine: Optional[DepositEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Deposit Engine API",
        description="Quarterly minimum-balance interest and fixed deposits for cooperative savings",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine or DepositEngine()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DepositEngineError)
    async def handle_engine_error(request: Request, exc: DepositEngineError):
        status_code = error_status(exc)
        if status_code >= 500:
            logger.error(f"Unhandled engine error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(parties_router, prefix="/parties", tags=["Parties"])
    app.include_router(products_router, prefix="/products", tags=["Products"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(interest_router, prefix="/interest", tags=["Interest"])
    app.include_router(fd_router, prefix="/fd", tags=["Fixed Deposits"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "deposit_engine_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Deposit Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "parties": "/parties",
                "products": "/products",
                "accounts": "/accounts",
                "interest": "/interest",
                "fd": "/fd",
                "admin": "/admin",
            }
        }

    return app
