from __future__ import annotations

from typing import AbstractSet

from .credentials import CredentialStore, Identity, Role
from .errors import Forbidden, Unauthenticated

TOKEN_HEADER = "x-api-token"

_MISSING_TOKEN_MESSAGE = "authentication required"
_INVALID_TOKEN_MESSAGE = "invalid token"


class Authenticator:
    def __init__(self, store: CredentialStore):
        self._store = store

    @staticmethod
    def _normalize(token: str | None) -> str | None:
        if token is None:
            return None
        token = token.strip()
        return token or None

    def identify(self, token: str | None) -> Identity | None:
        """Best-effort lookup that never raises; used to attribute audit records."""
        normalized = self._normalize(token)
        if normalized is None:
            return None
        return self._store.resolve(normalized)

    def authenticate(self, token: str | None) -> Identity:
        normalized = self._normalize(token)
        if normalized is None:
            raise Unauthenticated(_MISSING_TOKEN_MESSAGE)
        identity = self._store.resolve(normalized)
        if identity is None:
            raise Unauthenticated(_INVALID_TOKEN_MESSAGE)
        return identity


def authorize(identity: Identity, required_roles: AbstractSet[Role]) -> None:
    # No role hierarchy: admin does not implicitly satisfy {developer}.
    if not required_roles:
        return
    if identity.role in required_roles:
        return
    raise Forbidden()
