"""Secret redaction for execution logs, timeline events and persisted records.

The redactor is built from the secrets of one ExecutionContext and replaces
every occurrence of a secret value, anywhere inside strings, dicts, lists
and nested structures, with REDACTION_MARKER.

Values shorter than ``min_length`` are not redacted: a one- or two-character
secret would match inside unrelated text and shred every log line. The
threshold comes from ``EngineConfig.redact_min_length``
(``BLOCKFLOW_REDACT_MIN_LENGTH``); set it to 1 to redact every non-empty
secret. Skipped secrets are reported by key, never by value.

Example:
    >>> redactor = SecretRedactor({"API_KEY": "sk-1234567890abcdef"})
    >>> redactor.redact({"auth": "Bearer sk-1234567890abcdef", "user": "admin"})
    {'auth': 'Bearer ***REDACTED***', 'user': 'admin'}
"""

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)


class SecretRedactor:
    """Redacts known secret values from data structures.

    Attributes:
        MIN_SECRET_LENGTH: Default for ``min_length``
        REDACTION_MARKER: Replacement string
    """

    MIN_SECRET_LENGTH = 4

    REDACTION_MARKER = "***REDACTED***"

    def __init__(
        self, secrets: dict[str, Any] | None = None, min_length: int = MIN_SECRET_LENGTH
    ) -> None:
        if min_length < 1:
            raise ValueError("min_length must be >= 1")
        self.min_length = min_length
        self._values: set[str] = set()
        self._pattern: re.Pattern[str] | None = None
        for key, value in (secrets or {}).items():
            self.add(value, key)

    def add(self, value: Any, key: str | None = None) -> None:
        """Register one more secret value."""
        if not isinstance(value, str) or not value:
            return
        if len(value) < self.min_length:
            logger.warning(
                f"Secret '{key or '?'}' is shorter than {self.min_length} characters "
                "and will not be redacted"
            )
            return
        self._values.add(value)
        # Longest first so overlapping secrets redact completely
        ordered = sorted(self._values, key=len, reverse=True)
        self._pattern = re.compile("|".join(re.escape(v) for v in ordered))

    @property
    def has_secrets(self) -> bool:
        return self._pattern is not None

    def redact(self, data: Any) -> Any:
        """Return a copy of ``data`` with secret values replaced. Structure is preserved."""
        if self._pattern is None:
            return data
        if isinstance(data, str):
            return self._pattern.sub(self.REDACTION_MARKER, data)
        if isinstance(data, dict):
            return {key: self.redact(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.redact(item) for item in data]
        if isinstance(data, tuple):
            return tuple(self.redact(item) for item in data)
        return data
