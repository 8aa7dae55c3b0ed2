"""Deterministic address derivation for per-player accounts."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from solders.pubkey import Pubkey

from .constants import (
    BUFFER_SEED,
    DELEGATION_METADATA_SEED,
    DELEGATION_PROGRAM_ID,
    DELEGATION_RECORD_SEED,
    RECORD_SEED,
    TYPING_PROGRAM_ID,
)
from .exceptions import ValidationError

PUBKEY_LENGTH = 32


def parse_owner(owner: Pubkey | str | bytes) -> Pubkey:
    """Normalise an owner identity into a ``Pubkey``."""

    if isinstance(owner, Pubkey):
        return owner

    if isinstance(owner, bytes | bytearray) and len(owner) != PUBKEY_LENGTH:
        raise ValidationError(
            f"Owner identity must be {PUBKEY_LENGTH} bytes", field="owner", value=owner
        )

    try:
        if isinstance(owner, bytes | bytearray):
            return Pubkey.from_bytes(bytes(owner))
        if isinstance(owner, str):
            return Pubkey.from_string(owner.strip())
    except ValueError as exc:
        raise ValidationError(
            "Malformed owner identity", field="owner", value=owner, details={"error": str(exc)}
        ) from exc

    raise ValidationError("Unsupported owner identity type", field="owner", value=owner)


@lru_cache(maxsize=256)
def derive(program_id: Pubkey, *seeds: bytes) -> Pubkey:
    """Derive the canonical program address for ``seeds`` under ``program_id``."""

    address, _bump = Pubkey.find_program_address(list(seeds), program_id)
    return address


def derive_session_address(owner: Pubkey | str, program_id: Pubkey = TYPING_PROGRAM_ID) -> Pubkey:
    return derive(program_id, bytes(parse_owner(owner)))


def derive_record_address(owner: Pubkey | str, program_id: Pubkey = TYPING_PROGRAM_ID) -> Pubkey:
    return derive(program_id, RECORD_SEED, bytes(parse_owner(owner)))


@dataclass(frozen=True)
class DelegationAddresses:
    """Helper accounts the delegation program requires for a delegate call."""

    buffer: Pubkey
    delegation_record: Pubkey
    delegation_metadata: Pubkey


def derive_delegation_addresses(
    delegated: Pubkey,
    program_id: Pubkey = TYPING_PROGRAM_ID,
    delegation_program_id: Pubkey = DELEGATION_PROGRAM_ID,
) -> DelegationAddresses:
    account = bytes(delegated)
    return DelegationAddresses(
        buffer=derive(program_id, BUFFER_SEED, account),
        delegation_record=derive(delegation_program_id, DELEGATION_RECORD_SEED, account),
        delegation_metadata=derive(delegation_program_id, DELEGATION_METADATA_SEED, account),
    )


@dataclass(frozen=True)
class TrackedAddresses:
    """The pair of addresses tracked for one owner."""

    owner: Pubkey
    session: Pubkey
    record: Pubkey

    @classmethod
    def for_owner(
        cls, owner: Pubkey | str, program_id: Pubkey = TYPING_PROGRAM_ID
    ) -> TrackedAddresses:
        owner_key = parse_owner(owner)
        return cls(
            owner=owner_key,
            session=derive_session_address(owner_key, program_id),
            record=derive_record_address(owner_key, program_id),
        )
