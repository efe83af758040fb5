# app/main.py
from typing import Optional
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse
from app.core.config import settings
from app.core.errors import RateLimitExceeded
from app.api.endpoints import content, payments, sponsor
from app.services.ledger import SolanaRpcClient
from app.services.store import JsonStore
from app.x402.vault import VaultWallet, load_vault_wallet
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(
    store: Optional[JsonStore] = None,
    ledger: Optional[SolanaRpcClient] = None,
    vault: Optional[VaultWallet] = None
) -> FastAPI:
    """
    Build the gateway application.

    The vault is loaded eagerly so a missing or mismatched key fails at
    startup (ConfigurationError) rather than on the first sponsored request.
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json" # Standard location for OpenAPI spec
    )

    app.state.store = store if store is not None else JsonStore(settings.DATABASE_PATH)
    app.state.ledger = ledger if ledger is not None else SolanaRpcClient()
    app.state.vault = vault if vault is not None else load_vault_wallet()

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded):
        logger.warning(f"Rate limit exceeded on {request.url.path}, retry after {exc.retry_after}s")
        return JSONResponse(
            status_code=429,
            content={
                "error": "Too Many Requests",
                "detail": str(exc),
                "retryAfter": exc.retry_after,
            },
            headers=exc.headers,
        )

    # The prefix ensures all routes start with /api/v1
    app.include_router(content.router, prefix=f"{settings.API_V1_STR}", tags=["content"])
    app.include_router(payments.router, prefix=f"{settings.API_V1_STR}", tags=["payments"])
    app.include_router(sponsor.router, prefix=f"{settings.API_V1_STR}", tags=["sponsor"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {
            "status": "ok",
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "network": settings.SOLANA_NETWORK,
            "vault": app.state.vault.address,
        }

    logger.info(f"{settings.PROJECT_NAME} ready on {settings.SOLANA_NETWORK} (vault {app.state.vault.address[:8]}...)")
    return app


app = create_app()
