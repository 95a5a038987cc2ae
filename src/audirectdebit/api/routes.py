"""FastAPI routes for the AU Direct Debit gateway."""

import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from audirectdebit import __version__
from audirectdebit.api.models import (
    CaptureQueryRequest,
    CaptureResult,
    CnpTransferRequest,
    CppQueryRequest,
    CppTransferRequest,
    DeleteTokenRequest,
    DeleteTokenResult,
    TokeniseRequest,
    TransferResult,
    WebFormResult,
)
from audirectdebit.auth.webform_mac import FormAuthenticator, RequestContext, check_secret, utcnow
from audirectdebit.config.loader import Settings, settings_from_config
from audirectdebit.core.gateway import DirectDebitGateway
from audirectdebit.errors import ConfigurationError, InvalidRequestError

logger = logging.getLogger(__name__)

_OPEN_PATHS = {"/ping", "/docs", "/openapi.json"}


class RequestScopeMiddleware(BaseHTTPMiddleware):
    """
    Bind the tenant and principal set by the upstream authenticator.

    Authentication happens upstream; this only parses the identity headers
    into a RequestContext on ``request.state.ctx``.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in _OPEN_PATHS:
            return await call_next(request)

        settings: Settings = request.app.state.settings
        tid = request.headers.get(settings.tenant_header, "")
        principal = request.headers.get(settings.principal_header, "")
        try:
            request.state.ctx = RequestContext(tid=int(tid), principal=uuid.UUID(principal))
        except ValueError:
            logger.warning("Rejected request without a valid request scope: %s", request.url.path)
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        return await call_next(request)


def create_app(
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The web form MAC secret is self-tested first, so a misconfigured secret
    stops the service at start-up instead of failing the first transaction.

    Args:
        settings: Service settings. If None, defaults plus environment overrides.
        clock: Source of the current time (overridable for tests).

    Returns:
        FastAPI application instance

    Raises:
        ConfigurationError: If the MAC secret or algorithm is unusable.
    """
    settings = settings or settings_from_config()
    store = settings.secret_store()
    logger.info("Checking if web form MAC secret is available: %s", store.secret_file)
    check_secret(store)
    logger.info("Web form MAC secret is OK")

    app = FastAPI(
        title="AU Direct Debit gateway",
        version=__version__,
        description="Bank account capture web forms with stateless MAC verification",
    )

    # ── App state ─────────────────────────────────────────────────────────────
    app.state.settings = settings
    app.state.authenticator = FormAuthenticator(store, clock=clock)
    app.state.gateway = DirectDebitGateway(app.state.authenticator)

    app.add_middleware(RequestScopeMiddleware)

    # ── Error handlers ────────────────────────────────────────────────────────

    @app.exception_handler(InvalidRequestError)
    async def invalid_request(request: Request, exc: InvalidRequestError) -> JSONResponse:
        logger.info("Invalid request to %s: %s", request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError) -> JSONResponse:
        logger.error("Configuration error handling %s: %s", request.url.path, exc)
        return JSONResponse({"error": "Gateway configuration error"}, status_code=500)

    def _gateway() -> DirectDebitGateway:
        gw: DirectDebitGateway = app.state.gateway
        return gw

    # ── Liveness ──────────────────────────────────────────────────────────────

    @app.get("/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok"}

    # ── Capture (bank account web form) ───────────────────────────────────────
    # Plain ``def``: the secret file read blocks, so these run in the threadpool.

    @app.post("/capture/url", response_model=WebFormResult)
    def post_capture_url(req: TokeniseRequest, request: Request) -> WebFormResult:
        return _gateway().get_capture_url(request.state.ctx, req)

    @app.post("/capture/query", response_model=CaptureResult)
    def post_capture_query(req: CaptureQueryRequest, request: Request) -> CaptureResult:
        return _gateway().query_card_capture(request.state.ctx, req)

    # ── Unsupported operations ────────────────────────────────────────────────

    @app.post("/cpp/url", response_model=WebFormResult)
    async def post_cpp_url(req: CppTransferRequest, request: Request) -> WebFormResult:
        return _gateway().get_cp_payment_url(request.state.ctx, req)

    @app.post("/cpp/query", response_model=TransferResult)
    async def post_cpp_query(req: CppQueryRequest, request: Request) -> TransferResult:
        return _gateway().query_payment_status(request.state.ctx, req)

    @app.post("/cnp/transfer", response_model=TransferResult)
    async def post_cnp_transfer(req: CnpTransferRequest, request: Request) -> TransferResult:
        return _gateway().cnp_transfer(request.state.ctx, req)

    @app.post("/token/delete", response_model=DeleteTokenResult)
    async def post_token_delete(req: DeleteTokenRequest, request: Request) -> DeleteTokenResult:
        return _gateway().delete_token(request.state.ctx, req)

    return app

