import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hashmark.app.api.routes import router as api_router
from hashmark.app.core.config import Settings, get_settings
from hashmark.app.services.ledger import LedgerGateway, Web3LedgerGateway
from hashmark.app.workflow.signing import LocalAccountSigner

logger = logging.getLogger("hashmark.main")

# Marks "build the server signer from settings"; None means no signer.
_FROM_SETTINGS: Any = object()


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when running from a checkout.
    """
    try:
        return version("hashmark")
    except PackageNotFoundError:
        return "0.1.0"


def _build_lifespan(
    settings: Optional[Settings],
    gateway: Optional[LedgerGateway],
    server_signer: Any,
    http_client: Optional[httpx.AsyncClient],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Guarantees:
        - Fail-fast startup if configuration is invalid
        - One ledger gateway and one HTTP client per process
        - Only resources created here are closed here
        """
        logger.info(
            "hashmark_startup_begin",
            extra={"service": "hashmark", "version": get_app_version()},
        )

        # --------------------------------------------------------------
        # Configuration (FAIL FAST)
        # --------------------------------------------------------------
        try:
            resolved_settings = settings or get_settings()
        except Exception:
            logger.exception("invalid_hashmark_configuration")
            raise

        app.state.settings = resolved_settings

        if not resolved_settings.contract_address:
            logger.warning("contract_address_not_configured")

        # --------------------------------------------------------------
        # Ledger gateway (connection is opened lazily on first use)
        # --------------------------------------------------------------
        owns_gateway = gateway is None
        app.state.ledger_gateway = (
            Web3LedgerGateway(resolved_settings) if owns_gateway else gateway
        )

        app.state.server_signer = (
            LocalAccountSigner.from_settings(resolved_settings)
            if server_signer is _FROM_SETTINGS
            else server_signer
        )

        # --------------------------------------------------------------
        # Shared HTTP client (faucet JSON-RPC calls)
        # --------------------------------------------------------------
        owns_http_client = http_client is None
        app.state.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=15.0, connect=5.0),
            headers={"User-Agent": f"hashmark/{get_app_version()}"},
        )

        try:
            yield
        finally:
            logger.info("hashmark_shutdown_begin")

            if owns_http_client:
                try:
                    await app.state.http_client.aclose()
                except Exception:
                    logger.warning("http_client_shutdown_failed")

            if owns_gateway:
                try:
                    await app.state.ledger_gateway.aclose()
                except Exception:
                    logger.warning("ledger_gateway_shutdown_failed")

    return lifespan


async def _http_error_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=400,
        content={
            "error": "Malformed request.",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    gateway: Optional[LedgerGateway] = None,
    server_signer: Any = _FROM_SETTINGS,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory.

    Every collaborator can be injected; anything not injected is built
    from settings during startup.
    """
    # CORS and the mount point have to be known before startup.
    startup_settings = settings or get_settings()

    app = FastAPI(
        title="Hashmark",
        description="Content fingerprinting and on-chain proof registry API.",
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=_build_lifespan(settings, gateway, server_signer, http_client),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=startup_settings.cors_origin_list,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(api_router, prefix=startup_settings.api_prefix)
    return app


app = create_app()
