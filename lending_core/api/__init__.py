"""
Lending Core API Application Factory
"""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .loans import router as loans_router
from .parties import borrowers_router, organizations_router
from .webhooks import router as webhooks_router
from .billing import router as billing_router
from .jobs import router as jobs_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Core API",
        description="Loan lifecycle engine: schedules, funding, closure, delinquency and usage billing",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(borrowers_router, prefix="/borrowers", tags=["Borrowers"])
    app.include_router(organizations_router, prefix="/organizations", tags=["Organizations"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(billing_router, prefix="/billing", tags=["Billing"])
    app.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_core_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Core API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "borrowers": "/borrowers",
                "organizations": "/organizations",
                "webhooks": "/webhooks",
                "billing": "/billing",
                "jobs": "/jobs",
            }
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "lending_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
