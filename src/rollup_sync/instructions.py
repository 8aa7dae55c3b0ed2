"""Instruction builders for the typing program's remote calls.

Each builder returns a :class:`RemoteCall` carrying the exact account list the
program schema demands, the accounts that must already exist, and the
accounts whose views go stale once the call lands.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .addresses import TrackedAddresses, derive_delegation_addresses
from .codec import TYPE_WORD_ARGS
from .constants import (
    DELEGATION_PROGRAM_ID,
    MAGIC_CONTEXT_ID,
    MAGIC_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TYPING_PROGRAM_ID,
    InstructionTag,
)
from .types import Layer


@dataclass(frozen=True)
class RemoteCall:
    """A single remote program call ready for the transaction pipeline."""

    action: str
    instructions: tuple[Instruction, ...]
    requires: tuple[Pubkey, ...] = ()
    affects: tuple[tuple[Layer, Pubkey], ...] = ()
    context: dict = field(default_factory=dict)


def _meta(pubkey: Pubkey, *, signer: bool = False, writable: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=writable)


class InstructionBuilder:
    """Build calls against the typing program for one tracked owner."""

    def __init__(
        self,
        addresses: TrackedAddresses,
        *,
        program_id: Pubkey = TYPING_PROGRAM_ID,
        delegation_program_id: Pubkey = DELEGATION_PROGRAM_ID,
        validator: Pubkey | None = None,
    ) -> None:
        self._addresses = addresses
        self._program_id = program_id
        self._delegation_program_id = delegation_program_id
        self._validator = validator

    @property
    def addresses(self) -> TrackedAddresses:
        return self._addresses

    @property
    def program_id(self) -> Pubkey:
        return self._program_id

    def _instruction(
        self, tag: InstructionTag, accounts: list[AccountMeta], args: bytes = b""
    ) -> Instruction:
        return Instruction(self._program_id, tag.value + args, accounts)

    # ------------------------------------------------------------------
    # Base layer calls
    # ------------------------------------------------------------------
    def initialize_session(self) -> RemoteCall:
        session = self._addresses.session
        instruction = self._instruction(
            InstructionTag.INITIALIZE,
            [
                _meta(session, writable=True),
                _meta(self._addresses.owner, signer=True, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )
        return RemoteCall(
            action="initialize_session",
            instructions=(instruction,),
            affects=((Layer.BASE, session),),
        )

    def initialize_record(self) -> RemoteCall:
        record = self._addresses.record
        instruction = self._instruction(
            InstructionTag.INIT_PERSONAL_RECORD,
            [
                _meta(record, writable=True),
                _meta(self._addresses.owner, signer=True, writable=True),
                _meta(SYSTEM_PROGRAM_ID),
            ],
        )
        return RemoteCall(
            action="initialize_record",
            instructions=(instruction,),
            affects=((Layer.BASE, record),),
        )

    def save_to_record(self) -> RemoteCall:
        session = self._addresses.session
        record = self._addresses.record
        instruction = self._instruction(
            InstructionTag.SAVE_TO_RECORD,
            [
                _meta(session, writable=True),
                _meta(record, writable=True),
                _meta(self._addresses.owner, signer=True, writable=True),
            ],
        )
        return RemoteCall(
            action="save_to_record",
            instructions=(instruction,),
            requires=(session, record),
            affects=((Layer.BASE, record),),
        )

    def delegate(self) -> RemoteCall:
        session = self._addresses.session
        helpers = derive_delegation_addresses(
            session, self._program_id, self._delegation_program_id
        )
        accounts = [
            _meta(self._addresses.owner, signer=True),
            _meta(helpers.buffer, writable=True),
            _meta(helpers.delegation_record, writable=True),
            _meta(helpers.delegation_metadata, writable=True),
            _meta(session, writable=True),
            _meta(self._program_id),
            _meta(self._delegation_program_id),
            _meta(SYSTEM_PROGRAM_ID),
        ]
        if self._validator is not None:
            accounts.append(_meta(self._validator))
        instruction = self._instruction(InstructionTag.DELEGATE, accounts)
        return RemoteCall(
            action="delegate",
            instructions=(instruction,),
            requires=(session,),
            affects=((Layer.BASE, session),),
            context={"validator": str(self._validator) if self._validator else None},
        )

    # ------------------------------------------------------------------
    # Gameplay calls (either layer)
    # ------------------------------------------------------------------
    def record_word(
        self, is_correct: bool, signer: Pubkey, session_token: Pubkey | None, layer: Layer
    ) -> RemoteCall:
        session = self._addresses.session
        instruction = self._instruction(
            InstructionTag.TYPE_WORD,
            self._update_accounts(signer, session_token),
            TYPE_WORD_ARGS.build({"is_correct": is_correct}),
        )
        return RemoteCall(
            action=f"record_word({is_correct})",
            instructions=(instruction,),
            requires=(session,),
            affects=((layer, session),),
            context={"is_correct": is_correct},
        )

    def end_session(self, signer: Pubkey, session_token: Pubkey | None, layer: Layer) -> RemoteCall:
        session = self._addresses.session
        instruction = self._instruction(
            InstructionTag.END_SESSION, self._update_accounts(signer, session_token)
        )
        return RemoteCall(
            action="end_session",
            instructions=(instruction,),
            requires=(session,),
            affects=((layer, session),),
        )

    def _update_accounts(self, signer: Pubkey, session_token: Pubkey | None) -> list[AccountMeta]:
        # Anchor encodes an omitted optional account as the program id.
        token = session_token if session_token is not None else self._program_id
        return [
            _meta(self._addresses.session, writable=True),
            _meta(signer, signer=True, writable=True),
            _meta(token),
        ]

    # ------------------------------------------------------------------
    # Rollup layer lifecycle calls
    # ------------------------------------------------------------------
    def commit(self) -> RemoteCall:
        return self._magic_call(InstructionTag.COMMIT, "commit")

    def undelegate(self) -> RemoteCall:
        return self._magic_call(InstructionTag.UNDELEGATE, "undelegate")

    def _magic_call(self, tag: InstructionTag, action: str) -> RemoteCall:
        session = self._addresses.session
        instruction = self._instruction(
            tag,
            [
                _meta(self._addresses.owner, signer=True, writable=True),
                _meta(session, writable=True),
                _meta(MAGIC_PROGRAM_ID),
                _meta(MAGIC_CONTEXT_ID, writable=True),
            ],
        )
        return RemoteCall(
            action=action,
            instructions=(instruction,),
            affects=((Layer.BASE, session),),
        )
