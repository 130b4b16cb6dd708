"""Secret and credential resolution.

Secrets are looked up by name for a declared *scope* (``rollout.pull``,
``provision.user``). The configuration lists, per secret, the scopes allowed to
read it; anything else is refused with :class:`ScopeViolation`. Each resolution
is audited without its value, and the value is registered with the structured
logger so it is redacted from every record written afterwards.

Values are held in memory only for the duration of a :meth:`SecretResolver.lease`.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .errors import ScopeViolation, SecretNotFound

if TYPE_CHECKING:
    from .logging import StructuredLogger

_LOG = logging.getLogger(__name__)

SECRET_ENV_PREFIX = "VPSCTL_SECRET_"
_SECRET_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class Secret:
    """A resolved secret whose value never appears in ``repr`` or ``str``."""

    __slots__ = ("name", "scope", "_value")

    def __init__(self, name: str, scope: str, value: str) -> None:
        """Wrap ``value`` for ``name`` resolved under ``scope``."""
        self.name = name
        self.scope = scope
        self._value: str | None = value

    def reveal(self) -> str:
        """Return the secret value; fails once the secret was discarded."""
        if self._value is None:
            raise RuntimeError(f"Secret '{self.name}' has already been discarded.")
        return self._value

    def discard(self) -> None:
        """Drop the value from memory."""
        self._value = None

    @property
    def discarded(self) -> bool:
        """Return ``True`` once :meth:`discard` ran."""
        return self._value is None

    def __repr__(self) -> str:
        """Describe the secret without its value."""
        return f"Secret(name={self.name!r}, scope={self.scope!r}, value='***')"

    __str__ = __repr__


class SecretStore(Protocol):
    """Backend able to return a secret value by name."""

    def get(self, name: str) -> str:
        """Return the value for ``name`` or raise :class:`SecretNotFound`."""
        ...


class EnvSecretStore:
    """Read secrets from ``VPSCTL_SECRET_<NAME>`` environment variables."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        """Use ``env`` (defaults to ``os.environ``) as the source."""
        self._env = os.environ if env is None else env

    @staticmethod
    def variable_for(name: str) -> str:
        """Return the environment variable that holds ``name``."""
        return SECRET_ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", name).upper()

    def get(self, name: str) -> str:
        """Return the value for ``name``."""
        value = self._env.get(self.variable_for(name))
        if value is None:
            raise SecretNotFound(f"Secret '{name}' not found in environment.", resource=name)
        return value


class DirectorySecretStore:
    """Read secrets from one file per secret (e.g. ``/run/secrets/<name>``)."""

    def __init__(self, directory: Path) -> None:
        """Serve secrets from files under ``directory``."""
        self.directory = Path(directory)

    def get(self, name: str) -> str:
        """Return the value for ``name`` without its trailing newline."""
        path = self.directory / name
        try:
            return path.read_text(encoding="utf-8").rstrip("\n")
        except FileNotFoundError:
            raise SecretNotFound(
                f"Secret '{name}' not found in {self.directory}.", resource=name
            ) from None
        except OSError as exc:
            raise SecretNotFound(f"Secret '{name}' is unreadable: {exc}", resource=name) from exc


class ChainSecretStore:
    """Try several stores in order."""

    def __init__(self, stores: Sequence[SecretStore]) -> None:
        """Consult ``stores`` in the given order."""
        self.stores = tuple(stores)

    def get(self, name: str) -> str:
        """Return the first value any store holds for ``name``."""
        for store in self.stores:
            try:
                return store.get(name)
            except SecretNotFound:
                continue
        raise SecretNotFound(f"Secret '{name}' not found in any store.", resource=name)


class SecretResolver:
    """Scope-checked, audited access to a :class:`SecretStore`."""

    def __init__(
        self,
        store: SecretStore,
        scopes: Mapping[str, Sequence[str]],
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Bind the store to the per-secret allowed scopes."""
        self.store = store
        self.scopes = {name: tuple(allowed) for name, allowed in scopes.items()}
        self.logger = logger

    def allowed(self, name: str, scope: str) -> bool:
        """Return ``True`` when ``scope`` may read ``name``."""
        return scope in self.scopes.get(name, ())

    def resolve(self, name: str, scope: str) -> Secret:
        """Return secret ``name`` for use within ``scope``."""
        if not _SECRET_NAME.match(name):
            raise SecretNotFound(f"Invalid secret name {name!r}.", resource=name)
        if not self.allowed(name, scope):
            self._audit("secret.denied", name, scope)
            raise ScopeViolation(
                f"Scope '{scope}' may not read secret '{name}'.", resource=name
            )
        value = self.store.get(name)
        if self.logger is not None:
            self.logger.register_secret(value)
        self._audit("secret.resolve", name, scope)
        _LOG.debug("Resolved secret %s for scope %s", name, scope)
        return Secret(name, scope, value)

    @contextmanager
    def lease(self, name: str, scope: str) -> Iterator[Secret]:
        """Resolve ``name`` for the block and discard the value afterwards."""
        secret = self.resolve(name, scope)
        try:
            yield secret
        finally:
            secret.discard()

    def _audit(self, event: str, name: str, scope: str) -> None:
        if self.logger is not None:
            self.logger.audit(event, secret=name, scope=scope)


def default_store(directory: Path, env: Mapping[str, str] | None = None) -> ChainSecretStore:
    """Return the environment-then-directory store chain."""
    return ChainSecretStore([EnvSecretStore(env), DirectorySecretStore(directory)])


__all__ = [
    "ChainSecretStore",
    "DirectorySecretStore",
    "EnvSecretStore",
    "SECRET_ENV_PREFIX",
    "Secret",
    "SecretResolver",
    "SecretStore",
    "default_store",
]
