"""Redirect URL rendering and callback query-string parsing."""

import base64
from typing import Optional

import httpx

from audirectdebit.auth.webform_mac import MacTimestamp
from audirectdebit.errors import InvalidRequestError

# {gw} substitution code for this gateway
GW = "audirectdebit"


def interpolate(template: str, gw: str = GW) -> httpx.URL:
    """Substitute placeholders in a capture page URL template."""
    try:
        return httpx.URL(template.replace("{gw}", gw))
    except httpx.InvalidURL as exc:
        raise InvalidRequestError(f"Invalid token capture URL template: {exc}") from exc


def encode_base64_arg(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii")


def render_capture_url(
    template: str,
    mac: MacTimestamp,
    return_url: str,
    prev_status: Optional[str] = None,
) -> str:
    """
    Build the redirect URL for the self-hosted capture page.

    Query args ``hmac`` and ``fct`` carry the web form MAC; ``action`` is the
    base64-encoded return URL the page posts back to. Any query args already
    in the template are kept.
    """
    params: list[tuple[str, str]] = [("hmac", mac.hmac), ("fct", str(mac.fct))]
    if prev_status is not None:
        params.append(("prevStatus", prev_status))
    params.append(("action", encode_base64_arg(return_url)))
    return str(interpolate(template).copy_merge_params(params))


def redact(url: str) -> str:
    """URL with the query string removed, safe for logging."""
    return url.split("?", 1)[0]


def parse_query(query_string: str) -> httpx.QueryParams:
    return httpx.QueryParams(query_string.lstrip("?"))


def get_query_arg(params: httpx.QueryParams, name: str) -> str:
    """Required query arg value; missing or blank raises InvalidRequestError."""
    value = params.get(name)
    if value is None or not value.strip():
        raise InvalidRequestError(f"Missing query parameter '{name}'")
    return value


def get_long_query_arg(params: httpx.QueryParams, name: str) -> int:
    value = get_query_arg(params, name)
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidRequestError(f"Query parameter '{name}' must be an integer") from exc
