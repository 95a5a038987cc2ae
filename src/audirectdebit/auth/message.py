"""Authorisation message signed when a web form is issued.

Whenever a web form URL is created for the end-user, an AuthorisationMessage
is serialised and MAC'd. The MAC ties the eventual callback to the IP address,
tenant, principal and account that the form was issued to, so a token captured
in one session can't be submitted against another user's transaction.

Operation-specific fields live in a tagged ``operation`` member rather than in
subclasses, so every variant is serialised by the same ``canonical_bytes``.
"""

import ipaddress
import json
import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Union

from audirectdebit.errors import InvalidRequestError

# Bump if the serialised layout ever changes; old MACs then stop verifying.
MESSAGE_FORMAT_VERSION = 1

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def truncate_to_millis(dt: datetime) -> datetime:
    """Drop sub-millisecond precision from an aware datetime."""
    if dt.tzinfo is None:
        raise InvalidRequestError("Timestamp must be timezone-aware")
    return dt.replace(microsecond=dt.microsecond - dt.microsecond % 1000)


def to_epoch_millis(dt: datetime) -> int:
    return (truncate_to_millis(dt) - EPOCH) // _ONE_MS


def from_epoch_millis(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def _require(name: str, value: Any) -> Any:
    if value is None:
        raise InvalidRequestError(f"Missing required field '{name}'")
    return value


def _as_uuid(name: str, value: Any) -> uuid.UUID:
    _require(name, value)
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid UUID for '{name}'") from exc


def _as_ip(name: str, value: Any) -> IPAddress:
    _require(name, value)
    try:
        return ipaddress.ip_address(value)
    except ValueError as exc:
        raise InvalidRequestError(f"Invalid IP address for '{name}'") from exc


# ── Operation variants ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CaptureForm:
    """Fields specific to a bank-account capture web form."""

    kind: ClassVar[str] = "capture_form"

    payment_method_id: uuid.UUID

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "payment_method_id", _as_uuid("payment_method_id", self.payment_method_id)
        )


# Add new web form operations to both; each needs a unique ``kind``.
Operation = Union[CaptureForm]
OPERATION_TYPES = (CaptureForm,)


# ── Message ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuthorisationMessage:
    """Security-sensitive parameters of an issued web form."""

    # Tenant ID that the request was made under
    tid: int
    # Authenticated principal that the payment is being made under
    principal: uuid.UUID
    # IP address of the end-user that originally requested the form
    end_user_ip_address: IPAddress
    # Account that the payment is being made for
    account_id: uuid.UUID
    # When the form was issued, millisecond precision. Travels with the form so
    # the message can be rebuilt at verification time.
    form_creation_time: datetime
    operation: Operation

    def __post_init__(self) -> None:
        tid = _require("tid", self.tid)
        if isinstance(tid, bool) or not isinstance(tid, int):
            raise InvalidRequestError("Field 'tid' must be an integer")
        _require("operation", self.operation)
        if not isinstance(self.operation, OPERATION_TYPES):
            raise InvalidRequestError(f"Unsupported operation: {type(self.operation).__name__}")
        object.__setattr__(self, "principal", _as_uuid("principal", self.principal))
        object.__setattr__(
            self,
            "end_user_ip_address",
            _as_ip("end_user_ip_address", self.end_user_ip_address),
        )
        object.__setattr__(self, "account_id", _as_uuid("account_id", self.account_id))
        fct = _require("form_creation_time", self.form_creation_time)
        object.__setattr__(self, "form_creation_time", truncate_to_millis(fct))


def _canonical_value(value: Any) -> Any:
    if isinstance(value, bool):
        raise TypeError("Booleans have no canonical form")
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value.compressed
    if isinstance(value, datetime):
        return to_epoch_millis(value)
    raise TypeError(f"No canonical form for {type(value).__name__}")


def canonical_bytes(message: AuthorisationMessage) -> bytes:
    """
    Serialise a message to the exact bytes that are MAC'd.

    Sorted keys, no whitespace and ASCII-only output keep the result identical
    across platforms, locales and Python versions for equal field values.
    """
    op = message.operation
    op_body: dict[str, Any] = {"kind": op.kind}
    for f in fields(op):
        op_body[f.name] = _canonical_value(getattr(op, f.name))

    body: dict[str, Any] = {
        "v": MESSAGE_FORMAT_VERSION,
        "tid": message.tid,
        "principal": _canonical_value(message.principal),
        "end_user_ip_address": _canonical_value(message.end_user_ip_address),
        "account_id": _canonical_value(message.account_id),
        "form_creation_time": _canonical_value(message.form_creation_time),
        "operation": op_body,
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "ascii"
    )
