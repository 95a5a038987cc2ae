"""AU bank account details captured by the web form."""

import json
import re
from dataclasses import dataclass

import httpx

from audirectdebit.errors import InvalidRequestError

_BSB_RE = re.compile(r"^\d{6}$")
_ACCOUNT_RE = re.compile(r"^\d{6,10}$")
# Formatting characters people type into BSB / account fields
_SEPARATORS_RE = re.compile(r"[\s-]")

MIN_HINT_LENGTH = 12


@dataclass(frozen=True)
class BankAccountDetails:
    name: str
    # BSB followed by the account number, digits only
    account: str

    def to_token(self) -> str:
        """JSON token handed back to the payment platform for encryption."""
        return json.dumps({"name": self.name, "account": self.account})


def parse_bank_account(params: httpx.QueryParams) -> BankAccountDetails:
    """
    Read and validate ``name``, ``bsb`` and ``account`` from a capture callback.

    Raises:
        InvalidRequestError: If any field is missing or not a valid AU account.
    """
    name = (params.get("name") or "").strip()
    bsb = _SEPARATORS_RE.sub("", params.get("bsb") or "")
    account = _SEPARATORS_RE.sub("", params.get("account") or "")
    if not name:
        raise InvalidRequestError("Account name is required")
    if not _BSB_RE.match(bsb):
        raise InvalidRequestError("BSB must be 6 digits")
    if not _ACCOUNT_RE.match(account):
        raise InvalidRequestError("Account number must be 6 to 10 digits")
    return BankAccountDetails(name=name, account=bsb + account)


def to_hint(account: str) -> str:
    """First 3 and last 3 digits, with X filling in the rest."""
    n = len(account)
    if n < MIN_HINT_LENGTH:
        raise ValueError(f"AU account number should not be less than {MIN_HINT_LENGTH} digits.")
    return account[:3] + "X" * (n - 6) + account[-3:]
