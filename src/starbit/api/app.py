"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from starbit import __version__
from starbit.config import get_settings
from starbit.errors import EngineError
from starbit.ledger.database import close_db, init_db
from starbit.notifications.channel import TradeChannelHub
from starbit.services.expiry import TradeExpirySweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    sweeper = TradeExpirySweeper(hub=app.state.hub)
    sweeper.start()
    yield
    # Shutdown
    await sweeper.stop()
    await close_db()


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "error": "http_error"},
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "; ".join(problems) or "Invalid request",
            "error": "validation_error",
        },
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Starbit API",
        description="Deposit, withdrawal and P2P escrow lifecycle engine",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.hub = TradeChannelHub()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Register routes
    from starbit.api.routers import admin
    from starbit.api.routes import balances, deposits, health, p2p, withdrawals, ws

    app.include_router(health.router, tags=["Health"])
    app.include_router(balances.router, prefix="/api/v1", tags=["Balances"])
    app.include_router(deposits.router, prefix="/api/v1", tags=["Deposits"])
    app.include_router(withdrawals.router, prefix="/api/v1", tags=["Withdrawals"])
    app.include_router(p2p.router, prefix="/api/v1", tags=["P2P"])
    app.include_router(admin.router, prefix="/api/v1", tags=["Admin"])
    app.include_router(ws.router, tags=["Realtime"])

    return app


# Default app instance
app = create_app()
