"""Pydantic request/result models for the gateway API."""

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress

# Default web form submission timeout, in seconds (15 minutes)
DEFAULT_WEB_FORM_TIMEOUT_SEC = 900
# Upper bound on the configurable timeout (one day)
MAX_WEB_FORM_TIMEOUT_SEC = 86400


class GatewayConfig(BaseModel):
    """Per-tenant gateway configuration, sent along with each request."""

    model_config = ConfigDict(extra="ignore")

    institution: int = Field(description="Institution ID used as the capture key")
    token_capture_url: str = Field(description="URL template for the self-hosted capture page")
    web_form_timeout_sec: int = Field(
        default=DEFAULT_WEB_FORM_TIMEOUT_SEC,
        gt=0,
        le=MAX_WEB_FORM_TIMEOUT_SEC,
        description="Web form data entry timeout, in seconds.",
    )


# ── Requests ──────────────────────────────────────────────────────────────────


class GatewayRequest(BaseModel):
    end_user_ip_address: IPvAnyAddress
    account_id: uuid.UUID
    config: dict[str, Any] = Field(default_factory=dict)


class TokeniseRequest(GatewayRequest):
    payment_method_id: uuid.UUID
    return_url: str
    prev_status: Optional[str] = None


class CaptureQueryRequest(GatewayRequest):
    payment_method_id: uuid.UUID
    url_query_string: str


class CppTransferRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_id: Optional[uuid.UUID] = None
    amount: Optional[int] = None


class CppQueryRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_id: Optional[uuid.UUID] = None


class CnpTransferRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    account_id: Optional[uuid.UUID] = None
    amount: Optional[int] = None
    token: Optional[str] = None


class DeleteTokenRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    token: Optional[str] = None


# ── Results ───────────────────────────────────────────────────────────────────


class WebFormStatus(str, Enum):
    SUCCESS = "SUCCESS"
    INVALID_REQUEST = "INVALID_REQUEST"
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"


class CaptureStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    TIMED_OUT = "TIMED_OUT"
    INVALID_REQUEST = "INVALID_REQUEST"


class PaymentStatus(str, Enum):
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"


class DeleteTokenStatus(str, Enum):
    OPERATION_NOT_SUPPORTED = "OPERATION_NOT_SUPPORTED"


class WebFormResult(BaseModel):
    status: WebFormStatus
    url: Optional[str] = None
    message: Optional[str] = None


class CaptureResult(BaseModel):
    status: CaptureStatus
    token: Optional[str] = None
    key: Optional[str] = None
    expiry_date: Optional[str] = None
    hint: Optional[str] = None
    message: Optional[str] = None


class TransferResult(BaseModel):
    status: PaymentStatus
    message: Optional[str] = None


class DeleteTokenResult(BaseModel):
    status: DeleteTokenStatus
    message: Optional[str] = None
