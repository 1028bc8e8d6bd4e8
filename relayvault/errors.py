"""Error taxonomy for the secret store.

Every error carries a stable ``code`` so callers can map failures to
user-facing messages without string matching.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for all relayvault errors."""

    def __init__(self, message: str, code: str = "VAULT_ERROR"):
        super().__init__(message)
        self.code = code
        self.message = message


class ValidationError(VaultError):
    """Invalid address component or bundle shape. Raised before any network call."""

    def __init__(self, message: str):
        super().__init__(message, "VALIDATION_ERROR")


class ConfigError(VaultError):
    """Invalid key material or settings."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIG_ERROR")


class DecryptionError(VaultError):
    """A record could not be unwrapped.

    Deliberately does not say whether the record was addressed to someone
    else or is corrupted.
    """

    def __init__(self, message: str = "Record is not decryptable", event_id: Optional[str] = None):
        super().__init__(message, "DECRYPTION_ERROR")
        self.event_id = event_id


class RelayError(VaultError):
    """Relay communication failure."""

    def __init__(
        self,
        message: str,
        operation: str,
        original_error: Optional[BaseException] = None,
        code: str = "RELAY_ERROR",
    ):
        super().__init__(message, code)
        self.operation = operation
        self.original_error = original_error


class PermanentRelayError(RelayError):
    """Relay rejected the operation for good (bad signature, banned, ...). Never retried."""

    def __init__(self, message: str, operation: str = "publish", original_error: Optional[BaseException] = None):
        super().__init__(message, operation, original_error, code="RELAY_PERMANENT")


class TransientRelayError(RelayError):
    """Retry budget exhausted on a transient failure."""

    def __init__(self, message: str, operation: str = "query", original_error: Optional[BaseException] = None):
        super().__init__(message, operation, original_error, code="RELAY_TRANSIENT")


class SignerError(VaultError):
    """The delegated signer failed or was unreachable. Says nothing about the record."""

    def __init__(
        self,
        message: str,
        operation: str,
        original_error: Optional[BaseException] = None,
        code: str = "SIGNER_ERROR",
    ):
        super().__init__(message, code)
        self.operation = operation
        self.original_error = original_error


class SignerTimeoutError(SignerError):
    """The delegated signer did not answer within the caller's deadline."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Signer did not respond to {operation} within {timeout:g}s",
            operation,
            code="SIGNER_TIMEOUT",
        )
        self.timeout = timeout


class ChannelClosedError(VaultError):
    """The channel was torn down while an operation was pending."""

    def __init__(self, message: str = "Channel closed"):
        super().__init__(message, "CHANNEL_CLOSED")


def format_error(error: BaseException) -> str:
    """Render any error as a short user-facing string."""
    if isinstance(error, VaultError):
        return f"[{error.code}] {error.message}"
    return str(error) or error.__class__.__name__
