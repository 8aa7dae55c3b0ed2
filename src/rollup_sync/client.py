"""Typing game synchroniser: one owner's accounts across the base and rollup layers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import TypeVar

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .addresses import TrackedAddresses
from .config import SyncClientConfig
from .connections import ConnectionManager, LedgerEndpoint
from .delegation import DelegationStateMachine
from .exceptions import (
    AuthorizationError,
    NetworkError,
    StateTransitionError,
    SyncError,
    WriteInFlightError,
)
from .instructions import InstructionBuilder, RemoteCall
from .reconciler import SubscriptionReconciler
from .signer import (
    SessionCredential,
    SessionCredentialProvider,
    SessionIssuer,
    SignerChoice,
    SignerRouter,
    WalletCredential,
)
from .store import AccountStateStore
from .transactions import TransactionPipeline
from .types import DelegationInfo, DelegationState, Layer, Receipt, RecordAccount, SessionAccount

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TypingGameSync:
    """Drive the typing program for one wallet across both ledger layers.

    Gameplay writes are routed by delegation state: to the rollup while the
    session is delegated and to the base layer otherwise. The store, the
    delegation state and the last error are readable at any time.
    """

    def __init__(
        self,
        wallet: str | bytes | Keypair | WalletCredential,
        config: SyncClientConfig | None = None,
        *,
        sessions: SessionCredentialProvider | None = None,
        endpoints: Mapping[Layer, LedgerEndpoint] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = (config or SyncClientConfig()).with_defaulted_urls()
        self._wallet = (
            wallet if isinstance(wallet, WalletCredential) else WalletCredential.from_secret(wallet)
        )
        self._addresses = TrackedAddresses.for_owner(self._wallet.pubkey, self._config.program_id)
        self._sessions = sessions or SessionCredentialProvider()

        self._connections = ConnectionManager(self._config, endpoints)
        self._store = AccountStateStore()
        self._router = SignerRouter(self._current_wallet, self._sessions)
        self._builder = InstructionBuilder(
            self._addresses,
            program_id=self._config.program_id,
            delegation_program_id=self._config.delegation_program_id,
            validator=self._config.rollup_validator,
        )
        self._pipeline = TransactionPipeline(self._connections, self._config)
        self._delegation = DelegationStateMachine(
            self._config,
            self._connections,
            self._store,
            self._pipeline,
            self._router,
            self._builder,
            sleep=sleep,
        )
        self._store.bind_delegation(self._delegation.state)
        self._reconciler = SubscriptionReconciler(
            self._connections, self._store, self._delegation, self._addresses
        )
        self._pipeline.bind_reread(self._reconciler.reread)
        self._delegation.bind_reread(self._reconciler.reread)

        self._write_locks: dict[Pubkey, asyncio.Lock] = {}
        self._last_error: SyncError | None = None
        self._connected = False

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        try:
            await self._connections.connect()
            self._connected = True
            await self._reconciler.start()
        except SyncError as exc:
            self._last_error = exc
            await self.disconnect()
            raise
        except Exception as exc:  # pragma: no cover - defensive
            await self.disconnect()
            error = NetworkError(
                "Failed to initialise ledger connections",
                endpoint=self._config.base_rpc_url,
                details={"error": str(exc)},
            )
            self._last_error = error
            raise error from exc
        logger.info("Tracking session %s for %s", self._addresses.session, self._addresses.owner)

    async def disconnect(self) -> None:
        await self._reconciler.stop()
        await self._pipeline.wait_for_rereads()
        await self._connections.disconnect()
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected and self._connections.is_connected()

    def _current_wallet(self) -> WalletCredential | None:
        return self._wallet if self._connected else None

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------
    @property
    def addresses(self) -> TrackedAddresses:
        return self._addresses

    @property
    def connections(self) -> ConnectionManager:
        return self._connections

    @property
    def store(self) -> AccountStateStore:
        return self._store

    @property
    def delegation_state(self) -> DelegationState:
        return self._delegation.state()

    @property
    def session(self) -> SessionAccount | None:
        """Effective session view for the current delegation state."""
        account = self._store.effective(self._addresses.session)
        return account if isinstance(account, SessionAccount) else None

    @property
    def base_session(self) -> SessionAccount | None:
        account = self._store.get(self._addresses.session, Layer.BASE)
        return account if isinstance(account, SessionAccount) else None

    @property
    def rollup_session(self) -> SessionAccount | None:
        account = self._store.get(self._addresses.session, Layer.ROLLUP)
        return account if isinstance(account, SessionAccount) else None

    @property
    def record(self) -> RecordAccount | None:
        account = self._store.get(self._addresses.record, Layer.BASE)
        return account if isinstance(account, RecordAccount) else None

    @property
    def last_error(self) -> SyncError | None:
        return self._last_error

    def clear_error(self) -> None:
        self._last_error = None

    @property
    def sessions(self) -> SessionCredentialProvider:
        return self._sessions

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def refresh(self) -> None:
        await self._track("refresh", self._reconciler.refresh(), attempt=False)

    async def probe(self) -> DelegationInfo:
        return await self._track("probe", self._delegation.probe(), attempt=False)

    # ------------------------------------------------------------------
    # Base layer calls
    # ------------------------------------------------------------------
    async def initialize_session(self) -> Receipt:
        self._require_base("initialize_session")
        receipt = await self._write(
            self._addresses.session,
            Layer.BASE,
            lambda _signer: self._builder.initialize_session(),
        )
        await self._track("probe", self._delegation.probe(), attempt=False)
        return receipt

    async def initialize_record(self) -> Receipt:
        return await self._write(
            self._addresses.record,
            Layer.BASE,
            lambda _signer: self._builder.initialize_record(),
        )

    async def save_to_record(self) -> Receipt:
        self._require_base("save_to_record")
        return await self._write(
            self._addresses.record,
            Layer.BASE,
            lambda _signer: self._builder.save_to_record(),
        )

    # ------------------------------------------------------------------
    # Gameplay calls routed by delegation state
    # ------------------------------------------------------------------
    async def record_word(self, is_correct: bool) -> Receipt:
        layer = await self._gameplay_layer("record_word")
        receipt = await self._write(
            self._addresses.session,
            layer,
            lambda signer: self._builder.record_word(
                is_correct, signer.pubkey, signer.session_token, layer
            ),
            allow_session=True,
        )
        if layer is Layer.ROLLUP:
            await self._confirm_still_delegated(receipt.action)
        return receipt

    async def end_session(self) -> Receipt:
        layer = await self._gameplay_layer("end_session")
        receipt = await self._write(
            self._addresses.session,
            layer,
            lambda signer: self._builder.end_session(signer.pubkey, signer.session_token, layer),
            allow_session=True,
        )
        if layer is Layer.ROLLUP:
            await self._confirm_still_delegated(receipt.action)
        return receipt

    # ------------------------------------------------------------------
    # Delegation lifecycle
    # ------------------------------------------------------------------
    async def delegate(self) -> Receipt:
        async with self._exclusive(self._addresses.session):
            return await self._track("delegate", self._delegation.delegate())

    async def commit(self) -> Receipt:
        async with self._exclusive(self._addresses.session):
            return await self._track("commit", self._delegation.commit())

    async def undelegate(self) -> Receipt:
        async with self._exclusive(self._addresses.session):
            return await self._track("undelegate", self._delegation.undelegate())

    # ------------------------------------------------------------------
    # Session credentials
    # ------------------------------------------------------------------
    async def create_session_credential(self, issuer: SessionIssuer) -> SessionCredential:
        """Issue a session credential; the issuer signs once with the wallet."""
        wallet = self._router.wallet()
        return await self._track("create_session_credential", self._sessions.create(wallet, issuer))

    def revoke_session_credential(self) -> None:
        self._sessions.revoke()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _gameplay_layer(self, action: str) -> Layer:
        state = self._delegation.state()
        if state is DelegationState.UNKNOWN:
            await self._track("probe", self._delegation.probe(), attempt=False)
            state = self._delegation.state()

        if state in (DelegationState.DELEGATED, DelegationState.COMMITTING):
            return Layer.ROLLUP
        if state is DelegationState.UNDELEGATED:
            return Layer.BASE

        error = StateTransitionError(
            f"Cannot {action} while the session is {state.value}",
            current=state.value,
            requested=action,
        )
        self._last_error = error
        raise error

    def _require_base(self, action: str) -> None:
        state = self._delegation.state()
        if state in (DelegationState.UNKNOWN, DelegationState.UNDELEGATED):
            return
        error = AuthorizationError(
            f"Cannot {action} while the session is {state.value}; undelegate first",
            required_layer=Layer.BASE.value,
            required_signer="wallet",
        )
        self._last_error = error
        raise error

    async def _confirm_still_delegated(self, action: str) -> None:
        try:
            info = await self._delegation.probe()
        except SyncError as exc:
            logger.warning("Post-%s status probe failed: %s", action, exc)
            return
        if not info.is_delegated:
            error = AuthorizationError(
                f"{action} landed on the rollup but the session is no longer delegated",
                required_layer=Layer.BASE.value,
                details={"owner": str(info.owner) if info.owner else None},
            )
            self._last_error = error
            raise error

    async def _write(
        self,
        address: Pubkey,
        layer: Layer,
        build: Callable[[SignerChoice], RemoteCall],
        *,
        allow_session: bool = False,
    ) -> Receipt:
        async with self._exclusive(address):
            return await self._track("write", self._execute(layer, build, allow_session))

    async def _execute(
        self,
        layer: Layer,
        build: Callable[[SignerChoice], RemoteCall],
        allow_session: bool,
    ) -> Receipt:
        signer = self._router.resolve(layer, allow_session=allow_session)
        call = build(signer)
        return await self._pipeline.execute(layer, call, signer)

    @asynccontextmanager
    async def _exclusive(self, address: Pubkey):
        lock = self._write_locks.setdefault(address, asyncio.Lock())
        if lock.locked():
            error = WriteInFlightError(str(address))
            self._last_error = error
            raise error
        async with lock:
            yield

    async def _track(self, action: str, operation: Awaitable[T], *, attempt: bool = True) -> T:
        """Await ``operation``, recording a failure as ``last_error``.

        Only attempts (writes and lifecycle calls) clear a previous error; reads leave it.
        """
        if attempt:
            self._last_error = None
        try:
            return await operation
        except SyncError as exc:
            self._last_error = exc
            logger.error("Failed to %s: %s", action, exc)
            raise
