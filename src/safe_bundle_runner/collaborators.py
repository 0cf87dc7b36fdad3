"""Contracts for the services this package talks to but does not implement.

Project persistence and identity live elsewhere; the HTTP layer only needs
these shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from .execution.types import DEFAULT_TITLE, ExecutionRequest


class AuthenticationFailed(Exception):
    """Credentials or token were rejected by the identity provider.

    Example:
        ```python
        raise AuthenticationFailed("token expired")
        ```
    """


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller as resolved by the identity provider.

    Example:
        ```python
        alice = Principal(principal_id="42", name="alice")
        ```
    """

    principal_id: str
    name: str


@dataclass(frozen=True, slots=True)
class FragmentBundle:
    """Stored project version: the four fragments plus ownership metadata.

    Example:
        ```python
        bundle = FragmentBundle(owner_id="42", title="Demo", server_script="<?php echo 1;")
        ```
    """

    owner_id: str
    title: str = DEFAULT_TITLE
    markup: str = ""
    style: str = ""
    client_script: str = ""
    server_script: str = ""

    def to_request(self) -> ExecutionRequest:
        """Build a fresh execution request from the stored fragments.

        Example:
            ```python
            request = bundle.to_request()
            ```
        """
        return ExecutionRequest(
            markup=self.markup,
            style=self.style,
            client_script=self.client_script,
            server_script=self.server_script,
            title=self.title,
        )


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    """Listing entry returned by `FragmentStore.list`.

    Example:
        ```python
        summary = ProjectSummary(project_id="7", title="Demo", updated_at="2024-01-01T00:00:00Z")
        ```
    """

    project_id: str
    title: str
    updated_at: str


class FragmentStore(Protocol):
    def create(self, bundle: FragmentBundle) -> str:
        """Persist a new bundle and return its id.

        Example:
            ```python
            project_id = store.create(bundle)
            ```
        """
        ...

    def read(self, project_id: str) -> FragmentBundle:
        """Return a stored bundle; raise KeyError when it does not exist.

        Example:
            ```python
            bundle = store.read("7")
            ```
        """
        ...

    def update(self, project_id: str, bundle: FragmentBundle) -> None:
        """Replace a stored bundle.

        Example:
            ```python
            store.update("7", bundle)
            ```
        """
        ...

    def list(self, owner_id: str) -> list[ProjectSummary]:
        """List the bundles owned by a principal.

        Example:
            ```python
            summaries = store.list("42")
            ```
        """
        ...

    def delete(self, project_id: str) -> None:
        """Delete a stored bundle.

        Example:
            ```python
            store.delete("7")
            ```
        """
        ...


class IdentityProvider(Protocol):
    def authenticate(self, credentials: Mapping[str, Any]) -> Principal:
        """Exchange credentials for a principal; raise AuthenticationFailed.

        Example:
            ```python
            principal = provider.authenticate({"username": "alice", "password": "..."})
            ```
        """
        ...

    def verify(self, token: str) -> Principal:
        """Resolve a bearer token to a principal; raise AuthenticationFailed.

        Example:
            ```python
            principal = provider.verify("eyJhbGciOi...")
            ```
        """
        ...
