"""Web form MAC issuance and verification (itsdangerous HMAC).

Ensures the end-user that requested a web form is the same end-user that
submits the account capture details, while keeping the gateway stateless:
everything needed to verify the callback travels in the redirect URL as an
``hmac`` token and an ``fct`` (form creation time) timestamp. The timestamp
also lets forms expire, narrowing the window for token theft or spoofing.
"""

import hmac
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from itsdangerous.encoding import base64_decode, base64_encode
from itsdangerous.exc import BadData
from itsdangerous.signer import HMACAlgorithm

from audirectdebit.auth.message import (
    AuthorisationMessage,
    CaptureForm,
    Operation,
    canonical_bytes,
    to_epoch_millis,
    truncate_to_millis,
)
from audirectdebit.auth.secret import SecretKey, SecretStore
from audirectdebit.errors import ConfigurationError, ExpiredFormError, MacMismatchError

if TYPE_CHECKING:
    from audirectdebit.api.models import CaptureQueryRequest, GatewayRequest, TokeniseRequest

logger = logging.getLogger(__name__)

SELF_TEST_MESSAGE = "TotallyLooksLikeAWebFormMacMessage"

# Unpadded URL-safe base64, optionally with its trailing padding
_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+={0,2}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RequestContext:
    """Identity established for the current request by the upstream authenticator."""

    tid: int
    principal: uuid.UUID


@dataclass(frozen=True)
class MacTimestamp:
    """
    MAC token plus the form creation time it was computed over.

    The timestamp is exposed separately so it can be sent to the end-user and
    back, and used to rebuild the message when the MAC is verified.
    """

    hmac: str
    form_creation_time: datetime

    @property
    def fct(self) -> int:
        """Form creation time as epoch milliseconds (the ``fct`` query arg)."""
        return to_epoch_millis(self.form_creation_time)

    def __repr__(self) -> str:
        return f"MacTimestamp(hmac=<redacted>, form_creation_time={self.form_creation_time})"


def compute_mac(secret: SecretKey, message: bytes) -> bytes:
    """Raw MAC tag of ``message`` under ``secret``."""
    return HMACAlgorithm(secret.digest_method).get_signature(secret.material, message)


def verify_mac(secret: SecretKey, presented: bytes, message: bytes) -> bool:
    """Constant-time comparison of a raw presented tag with the expected one."""
    return hmac.compare_digest(presented, compute_mac(secret, message))


def decode_token(token: str) -> bytes:
    """
    Raw tag from a presented MAC token, or ``b""`` if it isn't one.

    Only the canonical URL-safe base64 spelling of a tag is accepted (trailing
    padding aside): stray characters or non-zero unused bits reject the token
    instead of being skipped by the decoder.
    """
    if not _TOKEN_RE.fullmatch(token):
        return b""
    try:
        raw = base64_decode(token)
    except BadData:
        return b""
    if base64_encode(raw).decode("ascii") != token.rstrip("="):
        return b""
    return raw


def is_expired(form_creation_time: datetime, timeout_sec: int, now: datetime) -> bool:
    """
    True once ``now`` is strictly past ``form_creation_time + timeout_sec``.

    Compared as epoch milliseconds, so a claimed creation time near the end of
    the datetime range can't overflow.
    """
    return to_epoch_millis(now) > to_epoch_millis(form_creation_time) + timeout_sec * 1000


def check_expiry(form_creation_time: datetime, timeout_sec: int, now: datetime) -> None:
    """Raise ExpiredFormError if the form has timed out."""
    if is_expired(form_creation_time, timeout_sec, now):
        raise ExpiredFormError(timeout_sec)


def sign_test(store: SecretStore) -> str:
    """MAC token of the fixed self-test message, for operator diagnostics."""
    message = SELF_TEST_MESSAGE.encode("utf-8")
    return store.with_secret(lambda secret: base64_encode(compute_mac(secret, message)).decode())


def check_secret(store: SecretStore) -> None:
    """
    Check that the web form MAC secret is available and usable.

    Run once at start-up so configuration problems show up in the startup log
    rather than on the first end-user transaction.

    Raises:
        ConfigurationError: If the secret can't be loaded or fails a MAC round-trip.
    """
    message = SELF_TEST_MESSAGE.encode("utf-8")

    def _round_trip(secret: SecretKey) -> None:
        try:
            tag = compute_mac(secret, message)
            ok = verify_mac(secret, tag, message)
        except ValueError as exc:
            raise ConfigurationError(f"Web form MAC self-test failed: {exc}") from exc
        if not ok:
            raise ConfigurationError("Web form MAC failed to validate test string")

    store.with_secret(_round_trip)


class FormAuthenticator:
    """Issues and verifies web form MACs using a key from a SecretStore."""

    def __init__(self, store: SecretStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def now(self) -> datetime:
        return truncate_to_millis(self.clock())

    def build_message(
        self,
        ctx: RequestContext,
        request: "GatewayRequest",
        operation: Operation,
        form_creation_time: Optional[datetime] = None,
    ) -> AuthorisationMessage:
        """Assemble the message; a new form gets the current time."""
        return AuthorisationMessage(
            tid=ctx.tid,
            principal=ctx.principal,
            end_user_ip_address=request.end_user_ip_address,
            account_id=request.account_id,
            form_creation_time=(
                form_creation_time if form_creation_time is not None else self.now()
            ),
            operation=operation,
        )

    def issue(
        self, ctx: RequestContext, request: "GatewayRequest", operation: Operation
    ) -> MacTimestamp:
        """
        Compute the MAC for a newly issued web form.

        Args:
            ctx: Tenant and principal of the current request.
            request: Gateway request carrying the end-user address and account.
            operation: Operation-specific fields to bind into the MAC.

        Returns:
            The URL-safe MAC token and the form creation time it covers.
        """
        message = self.build_message(ctx, request, operation)
        body = canonical_bytes(message)
        token = self.store.with_secret(
            lambda secret: base64_encode(compute_mac(secret, body)).decode("ascii")
        )
        return MacTimestamp(hmac=token, form_creation_time=message.form_creation_time)

    def verify(
        self,
        presented_mac: str,
        ctx: RequestContext,
        request: "GatewayRequest",
        operation: Operation,
        form_creation_time: datetime,
    ) -> bool:
        """
        Check a MAC presented by a callback against the current request.

        The message is rebuilt from the current request's identity and fields
        and the *claimed* form creation time, not a fresh timestamp.

        Returns:
            True only if the presented MAC matches exactly.
        """
        presented = decode_token(presented_mac)
        message = self.build_message(ctx, request, operation, form_creation_time)
        body = canonical_bytes(message)
        ok = bool(presented) and self.store.with_secret(
            lambda secret: verify_mac(secret, presented, body)
        )
        if not ok:
            logger.warning(
                "Web form MAC mismatch: tid=%s principal=%s operation=%s",
                ctx.tid,
                ctx.principal,
                operation.kind,
            )
        return ok

    def check_mac(
        self,
        presented_mac: str,
        ctx: RequestContext,
        request: "GatewayRequest",
        operation: Operation,
        form_creation_time: datetime,
    ) -> None:
        """Like verify(), but raises MacMismatchError on failure."""
        if not self.verify(presented_mac, ctx, request, operation, form_creation_time):
            raise MacMismatchError()

    def is_expired(self, form_creation_time: datetime, timeout_sec: int) -> bool:
        return is_expired(form_creation_time, timeout_sec, self.clock())

    def check_expiry(self, form_creation_time: datetime, timeout_sec: int) -> None:
        check_expiry(form_creation_time, timeout_sec, self.clock())

    # ── Capture form ──────────────────────────────────────────────────────────

    def create_capture_form_mac(
        self, ctx: RequestContext, tokenise_request: "TokeniseRequest"
    ) -> MacTimestamp:
        """MAC for a bank-account capture web form."""
        return self.issue(ctx, tokenise_request, CaptureForm(tokenise_request.payment_method_id))

    def verify_capture_form_mac(
        self,
        presented_mac: str,
        ctx: RequestContext,
        query_request: "CaptureQueryRequest",
        form_creation_time: datetime,
    ) -> bool:
        """Verify the MAC returned with a capture form callback."""
        return self.verify(
            presented_mac,
            ctx,
            query_request,
            CaptureForm(query_request.payment_method_id),
            form_creation_time,
        )

    def check_capture_form_mac(
        self,
        presented_mac: str,
        ctx: RequestContext,
        query_request: "CaptureQueryRequest",
        form_creation_time: datetime,
    ) -> None:
        """Like verify_capture_form_mac(), but raises MacMismatchError on failure."""
        self.check_mac(
            presented_mac,
            ctx,
            query_request,
            CaptureForm(query_request.payment_method_id),
            form_creation_time,
        )
