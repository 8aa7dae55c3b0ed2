"""Exception hierarchy for the dual-layer account synchroniser."""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base exception for all synchronisation errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SyncError):
    """Raised when input validation fails."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.field = field
        self.value = value


class NetworkError(SyncError):
    """Raised when network/connection issues occur.

    Safe to retry for reads and status probes. Writes must re-check state
    before being submitted again.
    """

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status_code = status_code


class DecodeError(SyncError):
    """Raised when account bytes do not match the declared schema."""

    def __init__(
        self,
        message: str,
        address: str | None = None,
        layer: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.address = address
        self.layer = layer


class AuthorizationError(SyncError):
    """Raised when a call is issued with the wrong signer or on the wrong layer."""

    def __init__(
        self,
        message: str,
        required_layer: str | None = None,
        required_signer: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.required_layer = required_layer
        self.required_signer = required_signer

    @property
    def guidance(self) -> str:
        parts = []
        if self.required_layer:
            parts.append(f"target the {self.required_layer} layer")
        if self.required_signer:
            parts.append(f"sign with the {self.required_signer}")
        return " and ".join(parts)

    def __str__(self) -> str:
        guidance = self.guidance
        if guidance:
            return f"{self.message} ({guidance})"
        return self.message


class StateTransitionError(SyncError):
    """Raised when a lifecycle call is not allowed from the current delegation state."""

    def __init__(
        self,
        message: str,
        current: str | None = None,
        requested: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.current = current
        self.requested = requested


class DelegationFailedError(SyncError):
    """Raised when a confirmed delegate call is not reflected by the ownership probe."""

    pass


class WriteInFlightError(SyncError):
    """Raised when a second write is issued for an address with one still outstanding."""

    def __init__(self, address: str):
        super().__init__(f"A write for {address} is already in flight")
        self.address = address


class TransactionError(SyncError):
    """Base class for failures of the transaction pipeline."""

    stage = "unknown"

    def __init__(
        self,
        message: str,
        action: str | None = None,
        layer: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.action = action
        self.layer = layer


class NotConnectedError(TransactionError):
    """No credential or endpoint is available for the call."""

    stage = "connect"


class BuildFailedError(TransactionError):
    """Call parameters were invalid or referenced a missing account."""

    stage = "build"


class SignFailedError(TransactionError):
    """The credential rejected the transaction or is unavailable."""

    stage = "sign"


class SubmitFailedError(TransactionError):
    """The endpoint or the remote program rejected the call."""

    stage = "submit"

    def __init__(
        self,
        message: str,
        action: str | None = None,
        layer: str | None = None,
        program_error_code: int | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, action=action, layer=layer, details=details)
        self.program_error_code = program_error_code


class ConfirmationTimeoutError(TransactionError):
    """The call was submitted but confirmation was not observed in time.

    The outcome is ambiguous: re-probe state before retrying.
    """

    stage = "confirm"

    def __init__(
        self,
        message: str,
        signature: str,
        action: str | None = None,
        layer: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, action=action, layer=layer, details=details)
        self.signature = signature
