"""AU Direct Debit gateway operations.

Only bank-account capture is implemented: the end-user is redirected to a
self-hosted capture page, and the callback is verified against the web form
MAC before the account details are accepted. Payments and token deletion are
reported as not supported.
"""

import logging
from typing import Any

from pydantic import ValidationError

from audirectdebit.api.models import (
    CaptureQueryRequest,
    CaptureResult,
    CaptureStatus,
    CnpTransferRequest,
    CppQueryRequest,
    CppTransferRequest,
    DeleteTokenRequest,
    DeleteTokenResult,
    DeleteTokenStatus,
    GatewayConfig,
    PaymentStatus,
    TokeniseRequest,
    TransferResult,
    WebFormResult,
    WebFormStatus,
)
from audirectdebit.auth.message import from_epoch_millis
from audirectdebit.auth.webform_mac import FormAuthenticator, RequestContext
from audirectdebit.core.bank_account import parse_bank_account, to_hint
from audirectdebit.core.urls import (
    get_long_query_arg,
    get_query_arg,
    parse_query,
    redact,
    render_capture_url,
)
from audirectdebit.errors import ExpiredFormError, InvalidRequestError, MacMismatchError

logger = logging.getLogger(__name__)

SERVICE_NAME = "turnstile-audirectdebit-gw"


def unmarshal_config(raw: dict[str, Any]) -> GatewayConfig:
    """Validate the per-request gateway config."""
    try:
        return GatewayConfig.model_validate(raw)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise InvalidRequestError(f"Invalid gateway configuration: {fields}") from exc


def capture_failed(status: CaptureStatus, message: str) -> CaptureResult:
    return CaptureResult(status=status, message=message)


class DirectDebitGateway:
    """Gateway operations, given an already-established request identity."""

    def __init__(self, authenticator: FormAuthenticator) -> None:
        self.authenticator = authenticator

    def get_cp_payment_url(self, ctx: RequestContext, req: CppTransferRequest) -> WebFormResult:
        return WebFormResult(
            status=WebFormStatus.OPERATION_NOT_SUPPORTED,
            message=f"Card-present payments are not implemented in {SERVICE_NAME}.",
        )

    def query_payment_status(self, ctx: RequestContext, req: CppQueryRequest) -> TransferResult:
        return TransferResult(
            status=PaymentStatus.OPERATION_NOT_SUPPORTED,
            message=f"Card-present payments are not implemented in {SERVICE_NAME}.",
        )

    def cnp_transfer(self, ctx: RequestContext, req: CnpTransferRequest) -> TransferResult:
        return TransferResult(
            status=PaymentStatus.OPERATION_NOT_SUPPORTED,
            message=f"Direct Debit payments are not implemented in {SERVICE_NAME}.",
        )

    def delete_token(self, ctx: RequestContext, req: DeleteTokenRequest) -> DeleteTokenResult:
        return DeleteTokenResult(
            status=DeleteTokenStatus.OPERATION_NOT_SUPPORTED,
            message=f"Token deletion is yet to be implemented in {SERVICE_NAME}",
        )

    def get_capture_url(self, ctx: RequestContext, req: TokeniseRequest) -> WebFormResult:
        """
        Issue a capture web form redirect for the current end-user.

        Only the end-user that requested this form can submit the account
        details back: the MAC binds tenant, principal, IP address, account and
        payment method to the form creation time.
        """
        logger.info(
            "Received request for capture URL: tid=%s account=%s payment_method=%s",
            ctx.tid,
            req.account_id,
            req.payment_method_id,
        )
        config = unmarshal_config(req.config)
        mac = self.authenticator.create_capture_form_mac(ctx, req)
        url = render_capture_url(config.token_capture_url, mac, req.return_url, req.prev_status)
        logger.info("Redirecting to self-hosted capture page at: %s", redact(url))
        return WebFormResult(status=WebFormStatus.SUCCESS, url=url)

    def query_card_capture(self, ctx: RequestContext, req: CaptureQueryRequest) -> CaptureResult:
        """
        Verify a capture callback and return the captured account details.

        Expiry is checked before the MAC so a timed-out form gets its own
        status, whether or not its MAC is authentic.

        Raises:
            InvalidRequestError: If ``hmac`` / ``fct`` are missing or malformed.
        """
        logger.info(
            "Looking up capture result for: tid=%s account=%s payment_method=%s",
            ctx.tid,
            req.account_id,
            req.payment_method_id,
        )
        config = unmarshal_config(req.config)
        params = parse_query(req.url_query_string)
        presented_mac = get_query_arg(params, "hmac")
        try:
            form_creation_time = from_epoch_millis(get_long_query_arg(params, "fct"))
        except OverflowError as exc:
            raise InvalidRequestError("Query parameter 'fct' is out of range") from exc

        try:
            self.authenticator.check_expiry(form_creation_time, config.web_form_timeout_sec)
            self.authenticator.check_capture_form_mac(presented_mac, ctx, req, form_creation_time)
        except ExpiredFormError as exc:
            logger.info("Web form expired: tid=%s principal=%s", ctx.tid, ctx.principal)
            return capture_failed(CaptureStatus.TIMED_OUT, str(exc))
        except MacMismatchError as exc:
            return capture_failed(CaptureStatus.INVALID_REQUEST, str(exc))

        # Request is authentic - now check it's a plausible AU bank account.
        try:
            details = parse_bank_account(params)
        except InvalidRequestError as exc:
            return capture_failed(CaptureStatus.INVALID_REQUEST, str(exc))

        return CaptureResult(
            status=CaptureStatus.ACCEPTED,
            token=details.to_token(),
            key=str(config.institution),
            expiry_date=None,
            hint=to_hint(details.account),
        )
