"""Rollup Sync - dual-layer account synchronisation for the typing program.

This library keeps one player's typing session and personal record consistent
across a durable base layer and a fast rollup layer the session can be
delegated to, routes writes to the right layer and signer, and drives the
delegate, commit and undelegate lifecycle.
"""

from .addresses import (
    TrackedAddresses,
    derive_delegation_addresses,
    derive_record_address,
    derive_session_address,
)
from .client import TypingGameSync
from .config import RetryPolicy, SyncClientConfig
from .connections import ConnectionManager, SolanaEndpoint
from .delegation import DelegationStateMachine
from .exceptions import (
    AuthorizationError,
    BuildFailedError,
    ConfirmationTimeoutError,
    DecodeError,
    DelegationFailedError,
    NetworkError,
    NotConnectedError,
    SignFailedError,
    StateTransitionError,
    SubmitFailedError,
    SyncError,
    TransactionError,
    ValidationError,
    WriteInFlightError,
)
from .reconciler import SubscriptionReconciler
from .signer import (
    SessionCredential,
    SessionCredentialProvider,
    SignerChoice,
    SignerRouter,
    WalletCredential,
)
from .store import AccountStateStore
from .transactions import TransactionPipeline
from .types import (
    Attempt,
    Commitment,
    DelegationInfo,
    DelegationState,
    Layer,
    Receipt,
    RecordAccount,
    SessionAccount,
    SignerKind,
)

__version__ = "0.1.0"

__all__ = [
    # Facade and components
    "TypingGameSync",
    "ConnectionManager",
    "SolanaEndpoint",
    "AccountStateStore",
    "SubscriptionReconciler",
    "SignerRouter",
    "TransactionPipeline",
    "DelegationStateMachine",
    # Configuration
    "SyncClientConfig",
    "RetryPolicy",
    # Credentials
    "WalletCredential",
    "SessionCredential",
    "SessionCredentialProvider",
    "SignerChoice",
    # Types and enums
    "Layer",
    "DelegationState",
    "DelegationInfo",
    "SignerKind",
    "Commitment",
    "SessionAccount",
    "RecordAccount",
    "Attempt",
    "Receipt",
    "TrackedAddresses",
    # Exceptions
    "SyncError",
    "ValidationError",
    "NetworkError",
    "DecodeError",
    "AuthorizationError",
    "StateTransitionError",
    "DelegationFailedError",
    "WriteInFlightError",
    "TransactionError",
    "NotConnectedError",
    "BuildFailedError",
    "SignFailedError",
    "SubmitFailedError",
    "ConfirmationTimeoutError",
    # Address derivation
    "derive_session_address",
    "derive_record_address",
    "derive_delegation_addresses",
]
