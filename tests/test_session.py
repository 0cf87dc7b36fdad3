from __future__ import annotations

import pytest

from safe_bundle_runner.collaborators import AuthenticationFailed, Principal
from safe_bundle_runner.session import SessionContext, SessionResolver


class _FakeIdentity:
    def authenticate(self, credentials):
        raise AuthenticationFailed("not used")

    def verify(self, token: str) -> Principal:
        if token != "good":
            raise AuthenticationFailed("bad token")
        return Principal("42", "alice")


def test_without_provider_every_caller_is_anonymous() -> None:
    resolver = SessionResolver()

    session = resolver.resolve("Bearer whatever")

    assert resolver.requires_auth is False
    assert session == SessionContext.anonymous()
    assert session.tenant_id is None


def test_valid_token_resolves_principal_and_tenant() -> None:
    session = SessionResolver(_FakeIdentity()).resolve("Bearer good")

    assert session.principal == Principal("42", "alice")
    assert session.tenant_id == "42"


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer   "])
def test_missing_token_raises_lookup_error(header) -> None:
    with pytest.raises(LookupError):
        SessionResolver(_FakeIdentity()).resolve(header)


def test_rejected_token_propagates() -> None:
    with pytest.raises(AuthenticationFailed):
        SessionResolver(_FakeIdentity()).resolve("bearer nope")
