"""
Exception hierarchy for Ledger signing operations.

Every error raised by nearledger derives from LedgerWalletError so hosts can
catch the whole family, while the orchestrator uses the ``recoverable`` flag
to decide whether a failure is re-rendered inline with a retry button or
propagated to the caller.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class LedgerWalletError(Exception):
    """Base exception for all Ledger wallet errors.

    Attributes:
        message: Human-readable, actionable error description
        details: Additional context about the error
        recoverable: Whether the user can retry the step inline
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


class ConfigurationError(LedgerWalletError):
    """Raised when required configuration is missing or invalid."""
    pass


# ==================== Transport Errors ====================


class TransportUnavailableError(LedgerWalletError):
    """Raised when the host offers no compatible device API (no hidapi, no emulator)."""
    pass


class DeviceNotConnectedError(LedgerWalletError):
    """Raised when no device is open, or the device vanished mid-call."""

    def __init__(self, message: str = "Ledger device is not connected. Plug it in, unlock it and try again.", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class UserCancelledPromptError(LedgerWalletError):
    """Raised when the user dismisses a prompt or the device chooser."""

    def __init__(self, message: str = "User cancelled", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# ==================== Device Status Errors ====================


class DeviceStatusError(LedgerWalletError):
    """Raised when the device answers with a non-success status word.

    The raw status word is kept on ``sw`` for diagnostics; the message is
    always phrased as something the user can act on.
    """

    def __init__(self, message: str, sw: int, **kwargs: Any) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.sw = sw


class DeviceLockedError(DeviceStatusError):
    """Raised when the device is locked (PIN not entered)."""
    pass


class AppMissingError(DeviceStatusError):
    """Raised when the NEAR app is not installed on the device."""
    pass


class UserDeclinedOnDeviceError(DeviceStatusError):
    """Raised when the user rejects the request on the device."""
    pass


class ProtocolFramingError(LedgerWalletError):
    """Raised when a device response does not match the expected framing."""
    pass


class InvalidDerivationPathError(LedgerWalletError, ValueError):
    """Raised when a derivation path string cannot be encoded."""
    pass


# ==================== Account Errors ====================


class AccessKeyError(LedgerWalletError):
    """Base class for access key verification failures."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class AccessKeyNotFullAccessError(AccessKeyError):
    """Raised when the key exists but is scoped to function calls."""

    def __init__(self, account_id: str, **kwargs: Any) -> None:
        super().__init__(
            "The public key does not have FullAccess permission for this account. "
            "Try a different account id.",
            **kwargs,
        )
        self.account_id = account_id


class AccessKeyNotFoundError(AccessKeyError):
    """Raised when the account or the key on it does not exist."""

    def __init__(self, account_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"Access key not found for account {account_id}. Please make sure the account "
            "exists and has the Ledger public key registered.",
            **kwargs,
        )
        self.account_id = account_id


class NotSignedInError(LedgerWalletError):
    """Raised when an operation needs a stored account and there is none."""

    def __init__(self, message: str = "No account connected. Sign in with Ledger first.", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


# ==================== Transaction Errors ====================


class UnsupportedActionTypeError(LedgerWalletError, ValueError):
    """Raised when an action descriptor names an unknown action type."""

    def __init__(self, action_type: Any, **kwargs: Any) -> None:
        super().__init__(f"Unsupported action type: {action_type}", **kwargs)
        self.action_type = action_type


class NetworkRequestFailedError(LedgerWalletError):
    """Raised when an RPC request fails at the HTTP or JSON-RPC level.

    Attributes:
        cause: JSON-RPC error cause name when the node reported one
        data: JSON-RPC error data string when present
    """

    def __init__(
        self,
        message: str,
        cause: Optional[str] = None,
        data: Optional[Any] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.cause = cause
        self.data = data
