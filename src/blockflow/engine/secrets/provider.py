"""Secret providers.

A provider is the only place secret values enter the engine. The CLI loads
them once per run and hands the resulting dict to ContextFactory; blocks and
templates read them back through ``context.secrets`` / ``{{secrets.KEY}}``.

Providers:
    - SecretProvider: Abstract base class defining the provider interface
    - EnvVarSecretProvider: BLOCKFLOW_SECRET_<KEY> environment variables
    - InMemorySecretProvider: Fixed mapping (tests, embedding applications)
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from .exceptions import SecretNotFoundError

DEFAULT_SECRET_PREFIX = "BLOCKFLOW_SECRET_"


class SecretProvider(ABC):
    """Abstract base class for secret providers.

    All methods are async so remote sources can implement the same interface.
    """

    @abstractmethod
    async def get_secret(self, key: str) -> str:
        """Retrieve a secret value by key.

        Raises:
            SecretNotFoundError: If the secret key does not exist
            SecretProviderError: If the provider encounters an error
        """

    @abstractmethod
    async def list_secret_keys(self) -> list[str]:
        """List all available secret keys."""

    async def load_all(self, keys: list[str] | None = None) -> dict[str, str]:
        """Fetch several secrets at once.

        Args:
            keys: Keys to fetch; None fetches every key the provider lists

        Raises:
            SecretNotFoundError: If an explicitly requested key is missing
        """
        wanted = keys if keys is not None else await self.list_secret_keys()
        return {key: await self.get_secret(key) for key in wanted}


class EnvVarSecretProvider(SecretProvider):
    """Secrets from ``BLOCKFLOW_SECRET_<KEY>`` environment variables.

    Keys keep the case used after the prefix, so ``BLOCKFLOW_SECRET_API_KEY``
    is available as ``{{secrets.API_KEY}}``.

    Attributes:
        prefix: Environment variable prefix
    """

    def __init__(
        self,
        prefix: str = DEFAULT_SECRET_PREFIX,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.prefix = prefix
        self._environ = environ

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    async def get_secret(self, key: str) -> str:
        env_var_name = f"{self.prefix}{key}"
        value = self.environ.get(env_var_name)
        if value is None:
            raise SecretNotFoundError(
                key=key,
                provider_hint=f"Set environment variable: {env_var_name}=<secret_value>",
            )
        return value

    async def list_secret_keys(self) -> list[str]:
        return sorted(
            name[len(self.prefix) :]
            for name in self.environ
            if name.startswith(self.prefix) and len(name) > len(self.prefix)
        )


class InMemorySecretProvider(SecretProvider):
    """Secrets from a fixed mapping."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    async def get_secret(self, key: str) -> str:
        try:
            return self._secrets[key]
        except KeyError:
            raise SecretNotFoundError(key=key) from None

    async def list_secret_keys(self) -> list[str]:
        return sorted(self._secrets)
