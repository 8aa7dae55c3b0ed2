"""Type definitions and data models for the dual-layer synchroniser."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from solders.pubkey import Pubkey


class Layer(str, Enum):
    """Ledger layer an account view or a call belongs to."""

    BASE = "base"
    ROLLUP = "rollup"


class DelegationState(str, Enum):
    """Lifecycle state of a delegatable session address."""

    UNKNOWN = "unknown"
    UNDELEGATED = "undelegated"
    DELEGATING = "delegating"
    DELEGATED = "delegated"
    COMMITTING = "committing"
    UNDELEGATING = "undelegating"

    @property
    def in_flight(self) -> bool:
        return self in _IN_FLIGHT_STATES


_IN_FLIGHT_STATES = frozenset(
    {DelegationState.DELEGATING, DelegationState.COMMITTING, DelegationState.UNDELEGATING}
)


class SignerKind(str, Enum):
    """Which credential signed a call."""

    WALLET = "wallet"
    SESSION_CREDENTIAL = "session_credential"


class Commitment(str, Enum):
    """Confirmation levels, ordered from weakest to strongest."""

    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @property
    def rank(self) -> int:
        return _COMMITMENT_ORDER.index(self)

    def satisfies(self, desired: Commitment) -> bool:
        return self.rank >= desired.rank


_COMMITMENT_ORDER = (Commitment.PROCESSED, Commitment.CONFIRMED, Commitment.FINALIZED)


@dataclass(frozen=True)
class SessionAccount:
    """Decoded typing session as observed on one layer."""

    owner: Pubkey
    words_typed: int
    correct_words: int
    errors: int
    wpm: int
    accuracy: int
    is_active: bool
    started_at: int
    ended_at: int | None = None

    @property
    def has_ended(self) -> bool:
        return not self.is_active and self.ended_at is not None


@dataclass(frozen=True)
class Attempt:
    """Immutable snapshot of one completed session."""

    attempt_number: int
    words_typed: int
    correct_words: int
    errors: int
    wpm: int
    accuracy: int
    duration: int
    timestamp: int


@dataclass(frozen=True)
class RecordAccount:
    """Decoded lifetime record of a player."""

    owner: Pubkey
    attempt_count: int
    total_words_typed: int
    total_correct_words: int
    best_wpm: int
    best_accuracy: int
    attempts: tuple[Attempt, ...] = ()

    @property
    def latest_attempt(self) -> Attempt | None:
        return self.attempts[-1] if self.attempts else None


Account = SessionAccount | RecordAccount


@dataclass(frozen=True)
class RawAccount:
    """Undecoded account as returned by an endpoint."""

    address: Pubkey
    owner: Pubkey
    data: bytes
    lamports: int = 0


@dataclass(frozen=True)
class AccountUpdate:
    """Push notification for a subscribed address."""

    layer: Layer
    address: Pubkey
    account: RawAccount


@dataclass(frozen=True)
class SignatureStatus:
    """Point-in-time status of a submitted call."""

    confirmation: Commitment | None
    error_code: int | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.error_code is not None


@dataclass(frozen=True)
class DelegationInfo:
    """Result of an ownership probe at the base layer."""

    address: Pubkey
    exists: bool
    owner: Pubkey | None = None
    is_delegated: bool = False

    @property
    def state(self) -> DelegationState:
        return DelegationState.DELEGATED if self.is_delegated else DelegationState.UNDELEGATED


@dataclass(frozen=True)
class Receipt:
    """Confirmation receipt for one remote call."""

    signature: str
    action: str
    layer: Layer
    signer_kind: SignerKind
    signer: Pubkey
    confirmation: Commitment
    context: dict = field(default_factory=dict)
    commitment_signature: str | None = None
