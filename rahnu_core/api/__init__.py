"""
Ar-Rahnu Core API Application Factory
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..exceptions import RahnuError
from ..logging_config import setup_logging
from .auth import get_system
from .audit import router as audit_router
from .gold_prices import router as gold_prices_router
from .loans import router as loans_router
from .savings import router as savings_router
from .valuation import router as valuation_router
from .vault import router as vault_router


logger = logging.getLogger("rahnu.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    system = get_system()
    await system.initialize()
    yield
    await system.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Ar-Rahnu Core API",
        description="Islamic pawn broking and gold savings: gold valuation, pawn loans, dual-approval vault custody and BSE trading",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RahnuError)
    async def rahnu_error_handler(request: Request, exc: RahnuError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error on {request.method} {request.url.path}",
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    # Include routers
    app.include_router(gold_prices_router, prefix="/gold-prices", tags=["Gold Prices"])
    app.include_router(valuation_router, prefix="/valuation", tags=["Valuation"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(vault_router, prefix="/vault", tags=["Vault"])
    app.include_router(savings_router, prefix="/bse", tags=["Gold Savings"])
    app.include_router(audit_router, prefix="/audit", tags=["Audit"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "rahnu_core_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Ar-Rahnu Core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "gold-prices": "/gold-prices",
                "valuation": "/valuation",
                "loans": "/loans",
                "vault": "/vault",
                "bse": "/bse",
                "audit": "/audit",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "rahnu_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level="info"
    )
