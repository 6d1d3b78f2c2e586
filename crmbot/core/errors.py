from __future__ import annotations

from typing import Any, Optional


class CrmBotError(Exception):
    """Base class for errors raised by the bot's services."""


class StorageError(CrmBotError):
    """The credential store could not be reached or its schema is missing.

    Not a "needs reconnect" condition: it may be transient infrastructure trouble.
    """


class DecryptionError(StorageError):
    """A stored secret could not be decrypted (corrupt row or changed master key)."""


class ProviderError(CrmBotError):
    """The identity provider rejected a token request or could not be reached."""

    def __init__(self, message: str, details: Optional[Any] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.status_code = status_code


class CrmError(CrmBotError):
    """A Zoho CRM API call returned a non-2xx response or failed in transit."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class SelfClientError(CrmBotError):
    """The pasted self-client JSON is malformed or lacks required fields."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.missing = missing or []
