# Ensure tests import the package from this checkout first.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from relay.credentials import CredentialStore  # noqa: E402

VALID_COOKIE = "sso=session-token; sso-rw=session-rw; cf_clearance=clearance-token"


@pytest.fixture
def valid_cookie():
    return VALID_COOKIE


@pytest.fixture
def store():
    """account1 configured, account2 present but unusable (no clearance cookie)."""
    return CredentialStore.load(
        {
            "account1": {"cookies": VALID_COOKIE, "user_agent": "RelayTest/1.0"},
            "account2": {"cookies": "sso=only-session"},
        }
    )
