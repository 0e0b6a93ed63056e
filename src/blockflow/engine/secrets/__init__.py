"""Secret providers and errors.

Example:
    >>> provider = EnvVarSecretProvider(environ={"BLOCKFLOW_SECRET_API_KEY": "sk-123456"})
    >>> secrets = await provider.load_all()
    >>> context = ContextFactory().create("wf", secrets=secrets)
"""

from ..redaction import SecretRedactor
from .exceptions import SecretError, SecretNotFoundError, SecretProviderError
from .provider import (
    DEFAULT_SECRET_PREFIX,
    EnvVarSecretProvider,
    InMemorySecretProvider,
    SecretProvider,
)

__all__ = [
    # Exceptions
    "SecretError",
    "SecretNotFoundError",
    "SecretProviderError",
    # Providers
    "DEFAULT_SECRET_PREFIX",
    "SecretProvider",
    "EnvVarSecretProvider",
    "InMemorySecretProvider",
    # Redaction
    "SecretRedactor",
]
