"""Exceptions for secret lookup.

Exception Hierarchy:
    SecretError (base)
    ├── SecretNotFoundError (missing secret)
    └── SecretProviderError (provider-level failure)
"""


class SecretError(Exception):
    """Base exception for all secrets-related errors."""


class SecretNotFoundError(SecretError, KeyError):
    """A requested secret key is not available.

    Attributes:
        key: The secret key that was not found
        provider_hint: Optional hint about where to configure the secret
    """

    def __init__(self, key: str, provider_hint: str | None = None) -> None:
        self.key = key
        self.provider_hint = provider_hint

        message = f"Secret '{key}' not found"
        if provider_hint:
            message += f". {provider_hint}"

        super().__init__(message)

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class SecretProviderError(SecretError):
    """A provider failed to list or fetch secrets."""

    def __init__(self, provider_name: str, details: str) -> None:
        self.provider_name = provider_name
        self.details = details
        super().__init__(f"Secret provider '{provider_name}' error: {details}")
