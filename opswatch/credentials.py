from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import TYPE_CHECKING, Iterable

from .errors import ConfigError

if TYPE_CHECKING:
    from .config.models import GatewayConfig

_LOGGER = logging.getLogger("opswatch.server")


class Role(str, Enum):
    ADMIN = "admin"
    DEVELOPER = "developer"
    READONLY = "readonly"


@dataclass(frozen=True)
class Identity:
    username: str
    role: Role


@dataclass(frozen=True)
class Credential:
    token: str
    identity: Identity


DEFAULT_CREDENTIALS: tuple[Credential, ...] = (
    Credential("admin-token-12345", Identity("admin", Role.ADMIN)),
    Credential("dev-token-67890", Identity("developer", Role.DEVELOPER)),
    Credential("readonly-token-11111", Identity("viewer", Role.READONLY)),
)


class CredentialStore:
    def resolve(self, token: str) -> Identity | None:
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


class StaticCredentialStore(CredentialStore):
    """Fixed token table loaded once at startup."""

    def __init__(self, credentials: Iterable[Credential]):
        table: dict[str, Identity] = {}
        for credential in credentials:
            if not credential.token:
                raise ConfigError(f"empty token for user {credential.identity.username!r}")
            if credential.token in table:
                raise ConfigError(f"duplicate token for user {credential.identity.username!r}")
            table[credential.token] = credential.identity
        self._table = table

    def resolve(self, token: str) -> Identity | None:
        return self._table.get(token)

    def __len__(self) -> int:
        return len(self._table)


def build_credential_store(config: GatewayConfig) -> CredentialStore:
    if config.credentials:
        return StaticCredentialStore(spec.to_credential() for spec in config.credentials)
    _LOGGER.warning(
        "No credentials configured; using the built-in default token table. "
        "Configure `credentials` before exposing this service."
    )
    return StaticCredentialStore(DEFAULT_CREDENTIALS)
