"""Fixtures built on the shared test values in _fixtures."""

from pathlib import Path

import pytest
from _fixtures import FORM_CREATION_TIME, PRINCIPAL, SECRET, TID, FixedClock

from audirectdebit.auth.secret import SecretStore
from audirectdebit.auth.webform_mac import FormAuthenticator, RequestContext


@pytest.fixture()
def secret_file(tmp_path: Path) -> Path:
    p = tmp_path / "webformmac_secret"
    p.write_bytes(SECRET)
    return p


@pytest.fixture()
def store(secret_file: Path) -> SecretStore:
    return SecretStore(secret_file)


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(FORM_CREATION_TIME)


@pytest.fixture()
def authenticator(store: SecretStore, clock: FixedClock) -> FormAuthenticator:
    return FormAuthenticator(store, clock=clock)


@pytest.fixture()
def ctx() -> RequestContext:
    return RequestContext(tid=TID, principal=PRINCIPAL)
