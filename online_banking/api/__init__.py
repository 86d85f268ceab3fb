"""
Online Banking API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import get_system
from .accounts import router as accounts_router
from .deposits import router as deposits_router
from .transfers import router as transfers_router
from .loans import router as loans_router
from .chat import router as chat_router
from .notifications import router as notifications_router
from .admin import router as admin_router
from ..system import BankingSystem
from ..exceptions import BankingError
from ..logging_config import get_logger

logger = get_logger("online_banking.api")


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Passing ``system`` pins every request to that instance (used by tests);
    otherwise the process-wide system is built lazily on first use.
    """
    app = FastAPI(
        title="Online Banking API",
        description="Customer banking with admin approvals, AML checks and support chat",
        version="1.0.0",
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

    if system is not None:
        app.dependency_overrides[get_system] = lambda: system

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path,
                        exc.code, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.code, "detail": exc.message},
        )

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(deposits_router, prefix="/deposits", tags=["Deposits"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(chat_router, prefix="/chat", tags=["Chat"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "online_banking_api",
            "version": "1.0.0"
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Online Banking API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "deposits": "/deposits",
                "transfers": "/transfers",
                "loans": "/loans",
                "chat": "/chat",
                "notifications": "/notifications",
                "admin": "/admin",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "online_banking.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
