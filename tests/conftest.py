"""Shared fixtures: the typing program simulated in memory on two ledger layers."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
import pytest_asyncio
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from rollup_sync import SyncClientConfig, TypingGameSync
from rollup_sync.codec import (
    TYPE_WORD_ARGS,
    decode_record,
    decode_session,
    encode_record,
    encode_session,
)
from rollup_sync.config import NO_RETRY, RetryPolicy
from rollup_sync.connections import UpdateCallback, dispatch_update
from rollup_sync.constants import (
    DELEGATION_PROGRAM_ID,
    MAX_ATTEMPTS,
    TYPING_PROGRAM_ID,
    InstructionTag,
    ProgramError,
)
from rollup_sync.exceptions import NetworkError
from rollup_sync.types import (
    AccountUpdate,
    Attempt,
    Commitment,
    Layer,
    RawAccount,
    RecordAccount,
    SessionAccount,
    SignatureStatus,
)

ACCOUNT_NOT_INITIALIZED = 3012
ACCOUNT_OWNED_BY_WRONG_PROGRAM = 3007


class ProgramFailure(Exception):
    def __init__(self, code: int) -> None:
        super().__init__(f"custom program error {int(code)}")
        self.code = int(code)


class FakeEndpoint:
    """One layer of the fake ledger, shaped like a real endpoint."""

    def __init__(self, ledger: FakeLedger, layer: Layer) -> None:
        self.ledger = ledger
        self.layer = layer
        self.url = f"memory://{layer.value}"
        self.opened = False
        self.read_failures = 0
        self.subscribers: dict[Pubkey, list[asyncio.Queue]] = {}
        self.started: list[Pubkey] = []

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.opened = False

    async def get_account(self, address: Pubkey) -> RawAccount | None:
        await asyncio.sleep(0)
        if self.read_failures:
            self.read_failures -= 1
            raise NetworkError("simulated read failure", endpoint=self.url)
        return self.ledger.accounts[self.layer].get(address)

    async def latest_blockhash(self) -> Hash:
        await asyncio.sleep(0)
        return Hash(bytes(Pubkey.new_unique()))

    async def send_raw(self, payload: bytes, *, skip_preflight: bool) -> str:
        await asyncio.sleep(0)
        return self.ledger.process(self.layer, Transaction.from_bytes(payload))

    async def signature_status(self, signature: str) -> SignatureStatus | None:
        await asyncio.sleep(0)
        return self.ledger.statuses.get(signature)

    async def transaction_logs(self, signature: str) -> list[str]:
        await asyncio.sleep(0)
        return list(self.ledger.logs.get(signature, []))

    def start_subscription(self, address: Pubkey, callback: UpdateCallback) -> asyncio.Task:
        self.started.append(address)
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers.setdefault(address, []).append(queue)
        task = asyncio.create_task(self._pump(queue, callback))
        # Runs even when the task is cancelled before its first step.
        task.add_done_callback(lambda _task: self._release(address, queue))
        return task

    async def _pump(self, queue: asyncio.Queue, callback: UpdateCallback) -> None:
        while True:
            update = await queue.get()
            try:
                await dispatch_update(callback, update)
            finally:
                queue.task_done()

    def _release(self, address: Pubkey, queue: asyncio.Queue) -> None:
        self.subscribers[address].remove(queue)
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()

    def publish(self, raw: RawAccount) -> None:
        for queue in self.subscribers.get(raw.address, []):
            queue.put_nowait(AccountUpdate(layer=self.layer, address=raw.address, account=raw))

    def subscription_count(self, address: Pubkey) -> int:
        return len(self.subscribers.get(address, []))


class FakeLedger:
    """Executes typing program instructions against in-memory base and rollup accounts."""

    def __init__(
        self,
        program_id: Pubkey = TYPING_PROGRAM_ID,
        delegation_program_id: Pubkey = DELEGATION_PROGRAM_ID,
    ) -> None:
        self.program_id = program_id
        self.delegation_program_id = delegation_program_id
        self.accounts: dict[Layer, dict[Pubkey, RawAccount]] = {layer: {} for layer in Layer}
        self.endpoints = {layer: FakeEndpoint(self, layer) for layer in Layer}
        self.statuses: dict[str, SignatureStatus] = {}
        self.logs: dict[str, list[str]] = {}
        self.session_tokens: dict[Pubkey, tuple[Pubkey, Pubkey]] = {}
        self.history: list[tuple[Layer, InstructionTag]] = []
        self.clock = 1_700_000_000
        self._withheld: dict[InstructionTag, bool] = {}
        self._noop: set[InstructionTag] = set()
        self._failures: dict[InstructionTag, int] = {}

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------
    def withhold(self, tag: InstructionTag, *, apply: bool) -> None:
        """Never report a status for ``tag``; optionally still apply it."""
        self._withheld[tag] = apply

    def ignore(self, tag: InstructionTag) -> None:
        """Confirm ``tag`` without applying it."""
        self._noop.add(tag)

    def fail_next(self, tag: InstructionTag, code: int) -> None:
        self._failures[tag] = code

    def register_session_token(self, token: Pubkey, authority: Pubkey, signer: Pubkey) -> None:
        self.session_tokens[token] = (authority, signer)

    def set_owner(self, layer: Layer, address: Pubkey, owner: Pubkey, *, publish: bool) -> None:
        raw = replace(self.accounts[layer][address], owner=owner)
        self.accounts[layer][address] = raw
        if publish:
            self.endpoints[layer].publish(raw)

    def put_raw(self, layer: Layer, address: Pubkey, data: bytes, *, publish: bool) -> None:
        raw = RawAccount(address=address, owner=self.program_id, data=data, lamports=1)
        self.accounts[layer][address] = raw
        if publish:
            self.endpoints[layer].publish(raw)

    def push_raw(self, layer: Layer, address: Pubkey, data: bytes) -> None:
        """Deliver a push notification without changing the stored account."""
        raw = RawAccount(address=address, owner=self.program_id, data=data, lamports=1)
        self.endpoints[layer].publish(raw)

    def session(self, layer: Layer, address: Pubkey) -> SessionAccount | None:
        raw = self.accounts[layer].get(address)
        return decode_session(raw.data) if raw is not None else None

    def owner_of(self, layer: Layer, address: Pubkey) -> Pubkey | None:
        raw = self.accounts[layer].get(address)
        return raw.owner if raw is not None else None

    async def settle(self) -> None:
        """Wait until every queued push notification has been handled."""
        for _ in range(3):
            await asyncio.sleep(0)
            for endpoint in self.endpoints.values():
                for queues in list(endpoint.subscribers.values()):
                    for queue in list(queues):
                        await queue.join()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def process(self, layer: Layer, transaction: Transaction) -> str:
        signature = str(transaction.signatures[0])
        message = transaction.message
        keys = list(message.account_keys)
        signers = set(keys[: message.header.num_required_signatures])
        self.clock += 1

        instruction = message.instructions[0]
        data = bytes(instruction.data)
        tag = InstructionTag(data[:8])
        accounts = [keys[index] for index in bytes(instruction.accounts)]
        self.history.append((layer, tag))

        if tag in self._withheld:
            if self._withheld[tag]:
                self._run(layer, tag, accounts, data[8:], signers, signature)
            return signature

        try:
            if tag in self._failures:
                raise ProgramFailure(self._failures.pop(tag))
            if tag not in self._noop:
                self._run(layer, tag, accounts, data[8:], signers, signature)
        except ProgramFailure as failure:
            self.statuses[signature] = SignatureStatus(
                confirmation=Commitment.CONFIRMED,
                error_code=failure.code,
                error=f"InstructionError(0, Custom({failure.code}))",
            )
        else:
            self.statuses[signature] = SignatureStatus(confirmation=Commitment.CONFIRMED)
        return signature

    def _run(
        self,
        layer: Layer,
        tag: InstructionTag,
        accounts: list[Pubkey],
        args: bytes,
        signers: set[Pubkey],
        signature: str,
    ) -> None:
        handlers = {
            InstructionTag.INITIALIZE: self._initialize,
            InstructionTag.INIT_PERSONAL_RECORD: self._init_record,
            InstructionTag.TYPE_WORD: self._type_word,
            InstructionTag.END_SESSION: self._end_session,
            InstructionTag.SAVE_TO_RECORD: self._save_to_record,
            InstructionTag.DELEGATE: self._delegate,
            InstructionTag.COMMIT: self._commit,
            InstructionTag.UNDELEGATE: self._undelegate,
        }
        handlers[tag](layer, accounts, args, signers, signature)

    def _write(self, layer: Layer, address: Pubkey, data: bytes, owner: Pubkey) -> None:
        raw = RawAccount(address=address, owner=owner, data=data, lamports=1)
        self.accounts[layer][address] = raw
        self.endpoints[layer].publish(raw)

    def _program_session(self, layer: Layer, address: Pubkey) -> SessionAccount:
        raw = self.accounts[layer].get(address)
        if raw is None:
            raise ProgramFailure(ACCOUNT_NOT_INITIALIZED)
        if raw.owner != self.program_id:
            raise ProgramFailure(ACCOUNT_OWNED_BY_WRONG_PROGRAM)
        return decode_session(raw.data)

    def _authorize(self, session: SessionAccount, signer: Pubkey, token: Pubkey) -> None:
        if signer == session.owner:
            return
        if token != self.program_id and self.session_tokens.get(token) == (session.owner, signer):
            return
        raise ProgramFailure(ProgramError.INVALID_AUTH)

    def _initialize(self, layer, accounts, args, signers, signature) -> None:
        # init_if_needed: an existing session is reset in place.
        session, player = accounts[0], accounts[1]
        existing = self.accounts[layer].get(session)
        if existing is not None and existing.owner != self.program_id:
            raise ProgramFailure(ACCOUNT_OWNED_BY_WRONG_PROGRAM)
        account = SessionAccount(
            owner=player,
            words_typed=0,
            correct_words=0,
            errors=0,
            wpm=0,
            accuracy=0,
            is_active=True,
            started_at=self.clock,
        )
        self._write(layer, session, encode_session(account), self.program_id)

    def _init_record(self, layer, accounts, args, signers, signature) -> None:
        record, player = accounts[0], accounts[1]
        existing = self.accounts[layer].get(record)
        if existing is not None and existing.owner != self.program_id:
            raise ProgramFailure(ACCOUNT_OWNED_BY_WRONG_PROGRAM)
        # Re-initialising zeroes the counters but leaves saved attempts in place.
        attempts = decode_record(existing.data).attempts if existing is not None else ()
        account = RecordAccount(
            owner=player,
            attempt_count=0,
            total_words_typed=0,
            total_correct_words=0,
            best_wpm=0,
            best_accuracy=0,
            attempts=attempts,
        )
        self._write(layer, record, encode_record(account), self.program_id)

    def _type_word(self, layer, accounts, args, signers, signature) -> None:
        address, signer, token = accounts
        session = self._program_session(layer, address)
        self._authorize(session, signer, token)
        if not session.is_active:
            raise ProgramFailure(ProgramError.SESSION_NOT_ACTIVE)

        is_correct = TYPE_WORD_ARGS.parse(args).is_correct
        words = session.words_typed + 1
        correct = session.correct_words + (1 if is_correct else 0)
        updated = replace(
            session,
            words_typed=words,
            correct_words=correct,
            errors=session.errors + (0 if is_correct else 1),
            accuracy=int(correct / words * 100),
        )
        self._write(layer, address, encode_session(updated), self.program_id)

    def _end_session(self, layer, accounts, args, signers, signature) -> None:
        address, signer, token = accounts
        session = self._program_session(layer, address)
        self._authorize(session, signer, token)
        if not session.is_active:
            raise ProgramFailure(ProgramError.SESSION_NOT_ACTIVE)

        duration = self.clock - session.started_at
        updated = replace(
            session,
            is_active=False,
            ended_at=self.clock,
            wpm=int(session.correct_words / (duration / 60)) if duration > 0 else 0,
        )
        self._write(layer, address, encode_session(updated), self.program_id)

    def _save_to_record(self, layer, accounts, args, signers, signature) -> None:
        address, record_address, player = accounts
        session = self._program_session(layer, address)
        if player != session.owner:
            raise ProgramFailure(ProgramError.INVALID_AUTH)
        if session.is_active:
            raise ProgramFailure(ProgramError.SESSION_STILL_ACTIVE)
        raw = self.accounts[layer].get(record_address)
        if raw is None:
            raise ProgramFailure(ACCOUNT_NOT_INITIALIZED)
        record = decode_record(raw.data)
        if record.attempt_count >= MAX_ATTEMPTS:
            raise ProgramFailure(ProgramError.MAX_ATTEMPTS_REACHED)

        ended_at = session.ended_at or 0
        attempt = Attempt(
            attempt_number=record.attempt_count + 1,
            words_typed=session.words_typed,
            correct_words=session.correct_words,
            errors=session.errors,
            wpm=session.wpm,
            accuracy=session.accuracy,
            duration=ended_at - session.started_at,
            timestamp=ended_at,
        )
        updated = replace(
            record,
            attempt_count=record.attempt_count + 1,
            total_words_typed=record.total_words_typed + session.words_typed,
            total_correct_words=record.total_correct_words + session.correct_words,
            best_wpm=max(record.best_wpm, session.wpm),
            best_accuracy=max(record.best_accuracy, session.accuracy),
            attempts=record.attempts + (attempt,),
        )
        self._write(layer, record_address, encode_record(updated), self.program_id)

    def _delegate(self, layer, accounts, args, signers, signature) -> None:
        payer, address = accounts[0], accounts[4]
        if layer is not Layer.BASE or payer not in signers:
            raise ProgramFailure(ProgramError.INVALID_AUTH)
        self._program_session(layer, address)
        raw = self.accounts[Layer.BASE][address]
        self._write(Layer.BASE, address, raw.data, self.delegation_program_id)
        self._write(Layer.ROLLUP, address, raw.data, self.program_id)

    def _commit(self, layer, accounts, args, signers, signature) -> None:
        address = accounts[1]
        raw = self.accounts[Layer.ROLLUP].get(address)
        if layer is not Layer.ROLLUP or raw is None:
            raise ProgramFailure(ACCOUNT_NOT_INITIALIZED)
        self._write(Layer.BASE, address, raw.data, self.delegation_program_id)

        scheduled = str(Keypair().sign_message(b"scheduled-commit"))
        settled = str(Keypair().sign_message(b"base-commit"))
        self.logs[signature] = [
            "Program log: Instruction: Commit",
            f"Program log: ScheduledCommitSent signature: {scheduled}",
        ]
        self.logs[scheduled] = [f"Program log: ScheduledCommitSent signature[0]: {settled}"]

    def _undelegate(self, layer, accounts, args, signers, signature) -> None:
        address = accounts[1]
        raw = self.accounts[Layer.ROLLUP].get(address)
        if layer is not Layer.ROLLUP or raw is None:
            raise ProgramFailure(ACCOUNT_NOT_INITIALIZED)
        del self.accounts[Layer.ROLLUP][address]
        self._write(Layer.BASE, address, raw.data, self.program_id)


@pytest.fixture
def wallet() -> Keypair:
    return Keypair.from_seed(bytes(range(32)))


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def config() -> SyncClientConfig:
    return SyncClientConfig(
        base_rpc_url="http://base.test",
        rollup_rpc_url="http://rollup.test",
        confirm_timeout=0.05,
        confirm_poll_interval=0.005,
        propagation_delay=0.0,
        read_retry=NO_RETRY,
        resubscribe_retry=RetryPolicy(initial_delay=0.0, max_delay=0.0),
    )


@pytest_asyncio.fixture
async def game(wallet: Keypair, ledger: FakeLedger, config: SyncClientConfig):
    sync = TypingGameSync(wallet, config, endpoints=ledger.endpoints)
    await sync.connect()
    yield sync
    await sync.disconnect()
