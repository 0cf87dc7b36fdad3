from __future__ import annotations

from dataclasses import dataclass

from .collaborators import AuthenticationFailed, IdentityProvider, Principal


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Per-request caller context passed explicitly to every operation.

    Example:
        ```python
        session = SessionContext(principal=Principal("42", "alice"), tenant_id="42")
        ```
    """

    principal: Principal | None = None
    tenant_id: str | None = None

    @classmethod
    def anonymous(cls) -> "SessionContext":
        """Return the context used when no identity provider is configured.

        Example:
            ```python
            session = SessionContext.anonymous()
            ```
        """
        return cls()

    @classmethod
    def for_principal(cls, principal: Principal) -> "SessionContext":
        """Return a context whose tenant is the principal itself.

        Example:
            ```python
            session = SessionContext.for_principal(Principal("42", "alice"))
            ```
        """
        return cls(principal=principal, tenant_id=principal.principal_id)


class SessionResolver:
    """Turn an Authorization header into a SessionContext.

    The identity provider is fixed at construction; with none, every caller
    is anonymous.

    Example:
        ```python
        resolver = SessionResolver(identity=my_provider)
        session = resolver.resolve("Bearer eyJhbGciOi...")
        ```
    """

    def __init__(self, identity: IdentityProvider | None = None) -> None:
        """Bind the resolver to an optional identity provider.

        Example:
            ```python
            resolver = SessionResolver()
            ```
        """
        self._identity = identity

    @property
    def requires_auth(self) -> bool:
        """Return True when callers must present a bearer token.

        Example:
            ```python
            resolver.requires_auth
            ```
        """
        return self._identity is not None

    def resolve(self, authorization: str | None) -> SessionContext:
        """Verify the bearer token, if required, and build the session.

        Raises LookupError when a token is required but missing, and
        AuthenticationFailed when the provider rejects it.

        Example:
            ```python
            session = resolver.resolve(request.headers.get("authorization"))
            ```
        """
        if self._identity is None:
            return SessionContext.anonymous()
        token = _bearer_token(authorization)
        if token is None:
            raise LookupError("Access token required")
        principal = self._identity.verify(token)
        if not isinstance(principal, Principal):
            raise AuthenticationFailed("Identity provider returned no principal")
        return SessionContext.for_principal(principal)


def _bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an `Authorization: Bearer <token>` header.

    Example:
        ```python
        _bearer_token("Bearer abc")  # "abc"
        ```
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
