"""Tests for web form MAC issuance, verification and expiry."""

import base64
import hashlib
import hmac
import logging
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from _fixtures import (
    ACCOUNT_ID,
    END_USER_IP,
    FORM_CREATION_TIME,
    GOLDEN_BYTES,
    PAYMENT_METHOD_ID,
    PRINCIPAL,
    SECRET,
    TID,
    FixedClock,
)

from audirectdebit.api.models import CaptureQueryRequest, TokeniseRequest
from audirectdebit.auth.message import CaptureForm, from_epoch_millis
from audirectdebit.auth.secret import SecretStore
from audirectdebit.auth.webform_mac import (
    SELF_TEST_MESSAGE,
    FormAuthenticator,
    MacTimestamp,
    RequestContext,
    check_expiry,
    check_secret,
    decode_token,
    is_expired,
    sign_test,
)
from audirectdebit.errors import ConfigurationError, ExpiredFormError, MacMismatchError

# HMAC-SHA256 of the canonical capture-form message for the fixtures in
# _fixtures, keyed with bytes 0x00..0x1F. Pinned for regression.
GOLDEN_MAC = "sbB3N3OYADBfOI5vf-pRswoA1DtZ9Oub2k3e27gAwfo"
GOLDEN_MAC_OTHER_IP = "CuXpLpTRbPb3vz4neBCuLaal5wcz3aD-AsKPgB4BeAA"
GOLDEN_SELF_TEST_MAC = "-dWNeIHnlYPu7Ds8Athc8d7JqFWKO5JX2No5tRYfE8M"


def _tokenise(**overrides: object) -> TokeniseRequest:
    fields: dict = {
        "end_user_ip_address": END_USER_IP,
        "account_id": ACCOUNT_ID,
        "payment_method_id": PAYMENT_METHOD_ID,
        "return_url": "https://portal.example.com/capture/done",
    }
    fields.update(overrides)
    return TokeniseRequest(**fields)


def _query(**overrides: object) -> CaptureQueryRequest:
    fields: dict = {
        "end_user_ip_address": END_USER_IP,
        "account_id": ACCOUNT_ID,
        "payment_method_id": PAYMENT_METHOD_ID,
        "url_query_string": "",
    }
    fields.update(overrides)
    return CaptureQueryRequest(**fields)


class TestIssue:
    def test_golden_mac(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        mac = authenticator.create_capture_form_mac(ctx, _tokenise())
        assert mac.hmac == GOLDEN_MAC
        assert mac.form_creation_time == FORM_CREATION_TIME
        assert mac.fct == 1704067200000

    def test_golden_mac_matches_stdlib_hmac(self) -> None:
        tag = hmac.new(SECRET, GOLDEN_BYTES, hashlib.sha256).digest()
        assert base64.urlsafe_b64encode(tag).rstrip(b"=").decode() == GOLDEN_MAC

    def test_different_address_gives_different_mac(
        self, authenticator: FormAuthenticator, ctx: RequestContext
    ) -> None:
        req = _tokenise(end_user_ip_address="203.0.113.6")
        mac = authenticator.create_capture_form_mac(ctx, req)
        assert mac.hmac == GOLDEN_MAC_OTHER_IP

    def test_deterministic(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        a = authenticator.create_capture_form_mac(ctx, _tokenise())
        b = authenticator.create_capture_form_mac(ctx, _tokenise())
        assert a == b

    def test_timestamp_truncated_to_millis(
        self, authenticator: FormAuthenticator, ctx: RequestContext, clock: FixedClock
    ) -> None:
        clock.now = FORM_CREATION_TIME + timedelta(microseconds=1500)
        mac = authenticator.create_capture_form_mac(ctx, _tokenise())
        assert mac.form_creation_time == FORM_CREATION_TIME + timedelta(milliseconds=1)

    def test_token_is_url_safe(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        mac = authenticator.create_capture_form_mac(ctx, _tokenise())
        assert set(mac.hmac) <= set(
            "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
        )

    def test_return_url_not_bound(
        self, authenticator: FormAuthenticator, ctx: RequestContext
    ) -> None:
        mac = authenticator.create_capture_form_mac(ctx, _tokenise(return_url="https://x.test/"))
        assert mac.hmac == GOLDEN_MAC

    def test_repr_hides_mac(self) -> None:
        mac = MacTimestamp(hmac=GOLDEN_MAC, form_creation_time=FORM_CREATION_TIME)
        assert GOLDEN_MAC not in repr(mac)

    def test_missing_secret_fails(self, tmp_path: Path, ctx: RequestContext) -> None:
        auth = FormAuthenticator(SecretStore(tmp_path / "missing"))
        with pytest.raises(ConfigurationError):
            auth.create_capture_form_mac(ctx, _tokenise())


class TestVerify:
    def test_round_trip(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        mac = authenticator.create_capture_form_mac(ctx, _tokenise())
        assert authenticator.verify_capture_form_mac(
            mac.hmac, ctx, _query(), mac.form_creation_time
        )

    def test_round_trip_with_real_clock(self, store: SecretStore, ctx: RequestContext) -> None:
        auth = FormAuthenticator(store)
        mac = auth.create_capture_form_mac(ctx, _tokenise())
        assert auth.verify_capture_form_mac(mac.hmac, ctx, _query(), mac.form_creation_time)
        assert not auth.is_expired(mac.form_creation_time, 900)

    def test_golden_verifies(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        assert authenticator.verify_capture_form_mac(GOLDEN_MAC, ctx, _query(), FORM_CREATION_TIME)

    def test_other_address_fails(
        self, authenticator: FormAuthenticator, ctx: RequestContext
    ) -> None:
        query = _query(end_user_ip_address="203.0.113.6")
        assert not authenticator.verify_capture_form_mac(GOLDEN_MAC, ctx, query, FORM_CREATION_TIME)

    @pytest.mark.parametrize(
        "ctx_override, query_override",
        [
            ({"tid": TID + 1}, {}),
            ({"principal": uuid.UUID(int=PRINCIPAL.int ^ 1)}, {}),
            ({}, {"account_id": uuid.UUID(int=ACCOUNT_ID.int ^ 1)}),
            ({}, {"payment_method_id": uuid.UUID(int=PAYMENT_METHOD_ID.int ^ 1)}),
            ({}, {"end_user_ip_address": "203.0.113.4"}),
        ],
    )
    def test_single_bit_change_fails(
        self, authenticator: FormAuthenticator, ctx_override: dict, query_override: dict
    ) -> None:
        ctx = RequestContext(
            tid=ctx_override.get("tid", TID), principal=ctx_override.get("principal", PRINCIPAL)
        )
        assert not authenticator.verify_capture_form_mac(
            GOLDEN_MAC, ctx, _query(**query_override), FORM_CREATION_TIME
        )

    def test_other_timestamp_fails(
        self, authenticator: FormAuthenticator, ctx: RequestContext
    ) -> None:
        fct = FORM_CREATION_TIME + timedelta(milliseconds=1)
        assert not authenticator.verify_capture_form_mac(GOLDEN_MAC, ctx, _query(), fct)

    def test_different_secret_fails(self, tmp_path: Path, ctx: RequestContext) -> None:
        other = tmp_path / "other_secret"
        other.write_bytes(bytes(range(1, 33)))
        auth = FormAuthenticator(SecretStore(other), clock=FixedClock(FORM_CREATION_TIME))
        assert not auth.verify_capture_form_mac(GOLDEN_MAC, ctx, _query(), FORM_CREATION_TIME)

    def test_different_algorithm_fails(self, secret_file: Path, ctx: RequestContext) -> None:
        auth = FormAuthenticator(SecretStore(secret_file, "HmacSHA512"))
        assert not auth.verify_capture_form_mac(GOLDEN_MAC, ctx, _query(), FORM_CREATION_TIME)

    def test_padded_token_still_verifies(
        self, authenticator: FormAuthenticator, ctx: RequestContext
    ) -> None:
        assert authenticator.verify_capture_form_mac(
            GOLDEN_MAC + "=", ctx, _query(), FORM_CREATION_TIME
        )

    @pytest.mark.parametrize(
        "token",
        ["", "!!!not base64!!!", GOLDEN_MAC[:-2], GOLDEN_MAC + "AA", "A"],
    )
    def test_malformed_token_fails(
        self, authenticator: FormAuthenticator, ctx: RequestContext, token: str
    ) -> None:
        assert not authenticator.verify_capture_form_mac(token, ctx, _query(), FORM_CREATION_TIME)

    @pytest.mark.parametrize(
        "token",
        [
            "!!" + GOLDEN_MAC[:5] + "$$$" + GOLDEN_MAC[5:] + "***",
            GOLDEN_MAC[:20] + " " + GOLDEN_MAC[20:],
            "\u00e9" + GOLDEN_MAC,
            GOLDEN_MAC + "\n",
            GOLDEN_MAC.replace("-", "+"),
            # Same bytes, but the unused low bits of the last character are set
            GOLDEN_MAC[:-1] + "p",
        ],
    )
    def test_altered_spelling_of_valid_mac_fails(
        self, authenticator: FormAuthenticator, ctx: RequestContext, token: str
    ) -> None:
        assert not authenticator.verify_capture_form_mac(token, ctx, _query(), FORM_CREATION_TIME)

    def test_decode_token(self) -> None:
        assert len(decode_token(GOLDEN_MAC)) == 32
        assert decode_token(GOLDEN_MAC + "=") == decode_token(GOLDEN_MAC)
        assert decode_token("*" + GOLDEN_MAC) == b""

    def test_mismatch_logged_without_mac(
        self,
        authenticator: FormAuthenticator,
        ctx: RequestContext,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        query = _query(end_user_ip_address="203.0.113.6")
        with caplog.at_level(logging.WARNING):
            authenticator.verify_capture_form_mac(GOLDEN_MAC, ctx, query, FORM_CREATION_TIME)
        assert "MAC mismatch" in caplog.text
        assert GOLDEN_MAC not in caplog.text
        assert GOLDEN_MAC_OTHER_IP not in caplog.text

    def test_check_mac_raises(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        with pytest.raises(MacMismatchError, match="HMAC validation failure"):
            authenticator.check_mac(
                "AAAA", ctx, _query(), CaptureForm(PAYMENT_METHOD_ID), FORM_CREATION_TIME
            )

    def test_check_mac_passes(self, authenticator: FormAuthenticator, ctx: RequestContext) -> None:
        authenticator.check_mac(
            GOLDEN_MAC, ctx, _query(), CaptureForm(PAYMENT_METHOD_ID), FORM_CREATION_TIME
        )


class TestExpiry:
    def test_not_expired_at_boundary(self) -> None:
        now = FORM_CREATION_TIME + timedelta(seconds=900)
        assert not is_expired(FORM_CREATION_TIME, 900, now)

    def test_expired_just_after_boundary(self) -> None:
        now = FORM_CREATION_TIME + timedelta(seconds=900, milliseconds=1)
        assert is_expired(FORM_CREATION_TIME, 900, now)

    def test_check_expiry_raises(self) -> None:
        now = FORM_CREATION_TIME + timedelta(hours=1)
        with pytest.raises(ExpiredFormError, match=r"timed out \(60 seconds\)"):
            check_expiry(FORM_CREATION_TIME, 60, now)

    def test_creation_time_at_end_of_range_does_not_overflow(self) -> None:
        fct = from_epoch_millis(253402300799000)
        assert not is_expired(fct, 86400, FORM_CREATION_TIME)
        assert is_expired(FORM_CREATION_TIME, 900, fct)

    def test_expired_even_when_mac_valid(
        self, authenticator: FormAuthenticator, ctx: RequestContext, clock: FixedClock
    ) -> None:
        mac = authenticator.create_capture_form_mac(ctx, _tokenise())
        clock.now = FORM_CREATION_TIME + timedelta(seconds=901)
        assert authenticator.verify_capture_form_mac(
            mac.hmac, ctx, _query(), mac.form_creation_time
        )
        assert authenticator.is_expired(mac.form_creation_time, 900)
        with pytest.raises(ExpiredFormError):
            authenticator.check_expiry(mac.form_creation_time, 900)


class TestSelfTest:
    def test_check_secret_ok(self, store: SecretStore) -> None:
        check_secret(store)

    def test_check_secret_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            check_secret(SecretStore(tmp_path / "missing"))

    def test_check_secret_detects_broken_mac(
        self, store: SecretStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("audirectdebit.auth.webform_mac.verify_mac", lambda *a: False)
        with pytest.raises(ConfigurationError, match="failed to validate"):
            check_secret(store)

    def test_sign_test_golden(self, store: SecretStore) -> None:
        assert SELF_TEST_MESSAGE == "TotallyLooksLikeAWebFormMacMessage"
        assert sign_test(store) == GOLDEN_SELF_TEST_MAC

    @pytest.mark.parametrize(
        "algorithm",
        ["HmacSHA1", "HmacSHA224", "HmacSHA384", "HmacSHA512", "HmacSHA3-256", "HmacSHA3-512"],
    )
    def test_check_secret_other_algorithms(self, secret_file: Path, algorithm: str) -> None:
        check_secret(SecretStore(secret_file, algorithm))
