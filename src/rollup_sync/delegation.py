"""Delegation lifecycle controller for a session address.

States: unknown, undelegated, delegating, delegated, committing and
undelegating. This module is the only writer of the delegation state. Status
probes read ownership at the base layer; while a lifecycle call is in flight
the call owns the state and concurrent probes only report what they saw.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from solders.pubkey import Pubkey

from .codec import decode_session
from .config import SyncClientConfig
from .connections import ConnectionManager
from .exceptions import (
    ConfirmationTimeoutError,
    DelegationFailedError,
    StateTransitionError,
    SyncError,
)
from .instructions import InstructionBuilder
from .signer import SignerRouter
from .store import AccountStateStore
from .transactions import RereadHook, TransactionPipeline, find_commitment_signature
from .types import DelegationInfo, DelegationState, Layer, Receipt
from .utils import short_address

logger = logging.getLogger(__name__)

TransitionHook = Callable[[Pubkey, DelegationState, DelegationState], Awaitable[None] | None]
Sleep = Callable[[float], Awaitable[None]]


class DelegationStateMachine:
    """Sequence delegate, commit and undelegate calls and the transitions they trigger."""

    def __init__(
        self,
        config: SyncClientConfig,
        connections: ConnectionManager,
        store: AccountStateStore,
        pipeline: TransactionPipeline,
        router: SignerRouter,
        builder: InstructionBuilder,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._connections = connections
        self._store = store
        self._pipeline = pipeline
        self._router = router
        self._builder = builder
        self._sleep = sleep
        self._states: dict[Pubkey, DelegationState] = {}
        self._hooks: list[TransitionHook] = []
        self._reread: RereadHook | None = None

    @property
    def session_address(self) -> Pubkey:
        return self._builder.addresses.session

    def state(self, address: Pubkey | None = None) -> DelegationState:
        if address is None:
            address = self.session_address
        return self._states.get(address, DelegationState.UNKNOWN)

    def add_transition_hook(self, hook: TransitionHook) -> None:
        self._hooks.append(hook)

    def bind_reread(self, reread: RereadHook) -> None:
        self._reread = reread

    # ------------------------------------------------------------------
    # Status probe
    # ------------------------------------------------------------------
    async def probe(self, address: Pubkey | None = None) -> DelegationInfo:
        """Read ownership at the base layer and record the resulting state.

        Idempotent; safe to run concurrently with itself (last write wins).
        """

        if address is None:
            address = self.session_address
        info = await self._read_ownership(address)
        await self._apply(info, force=False)
        return info

    async def _read_ownership(self, address: Pubkey) -> DelegationInfo:
        raw = await self._connections.get_account(Layer.BASE, address)
        if raw is None:
            logger.info("Session account %s does not exist yet", short_address(address))
            return DelegationInfo(address=address, exists=False)
        delegated = raw.owner == self._config.delegation_program_id
        return DelegationInfo(address=address, exists=True, owner=raw.owner, is_delegated=delegated)

    async def _apply(self, info: DelegationInfo, *, force: bool) -> None:
        current = self.state(info.address)
        if current.in_flight and not force:
            logger.debug(
                "Probe saw %s for %s while %s; leaving state to the in-flight call",
                info.state.value,
                short_address(info.address),
                current.value,
            )
            return

        await self._transition(info.address, info.state)
        if info.is_delegated:
            await self._fetch_rollup_view(info.address)

    async def _fetch_rollup_view(self, address: Pubkey) -> None:
        try:
            session = await self._connections.fetch(Layer.ROLLUP, address, decode_session)
        except SyncError as exc:
            logger.warning(
                "Couldn't fetch rollup session state for %s: %s", short_address(address), exc
            )
            return
        if session is not None:
            self._store.set(address, Layer.ROLLUP, session)

    async def _settle_ambiguous(self, address: Pubkey, fallback: DelegationState) -> None:
        """Re-probe after an ambiguous outcome; fall back when the probe itself fails."""

        try:
            info = await self._read_ownership(address)
        except SyncError as exc:
            logger.warning("Re-probe of %s failed: %s", short_address(address), exc)
            await self._transition(address, fallback)
            return
        await self._apply(info, force=True)

    # ------------------------------------------------------------------
    # Lifecycle calls
    # ------------------------------------------------------------------
    async def delegate(self) -> Receipt:
        address = self.session_address
        self._require(address, "delegate", DelegationState.UNKNOWN, DelegationState.UNDELEGATED)

        await self._transition(address, DelegationState.DELEGATING)
        try:
            receipt = await self._pipeline.execute(
                Layer.BASE,
                self._builder.delegate(),
                self._router.resolve(Layer.BASE, allow_session=False),
            )
        except ConfirmationTimeoutError:
            await self._settle_ambiguous(address, DelegationState.UNKNOWN)
            raise
        except SyncError:
            await self._transition(address, DelegationState.UNDELEGATED)
            raise

        logger.info("Waiting %.1fs for delegation to propagate", self._config.propagation_delay)
        await self._sleep(self._config.propagation_delay)

        try:
            info = await self._read_ownership(address)
        except SyncError:
            await self._transition(address, DelegationState.UNKNOWN)
            raise

        if not info.is_delegated:
            await self._transition(address, DelegationState.UNDELEGATED)
            raise DelegationFailedError(
                "Delegate call confirmed but the session is not owned by the delegation program",
                details={"signature": receipt.signature, "owner": str(info.owner)},
            )

        await self._apply(info, force=True)
        logger.info("Session %s delegated to the rollup", short_address(address))
        return receipt

    async def commit(self) -> Receipt:
        address = self.session_address
        self._require(address, "commit", DelegationState.DELEGATED)

        await self._transition(address, DelegationState.COMMITTING)
        try:
            receipt = await self._pipeline.execute(
                Layer.ROLLUP,
                self._builder.commit(),
                self._router.resolve(Layer.ROLLUP, allow_session=False),
            )
        finally:
            await self._transition(address, DelegationState.DELEGATED)

        commitment_signature = await find_commitment_signature(self._connections, receipt.signature)
        if commitment_signature is not None:
            logger.info("Commit landed on the base layer as %s", commitment_signature)
            receipt = replace(receipt, commitment_signature=commitment_signature)
        return receipt

    async def undelegate(self) -> Receipt:
        address = self.session_address
        self._require(address, "undelegate", DelegationState.DELEGATED)

        await self._transition(address, DelegationState.UNDELEGATING)
        try:
            receipt = await self._pipeline.execute(
                Layer.ROLLUP,
                self._builder.undelegate(),
                self._router.resolve(Layer.ROLLUP, allow_session=False),
            )
        except ConfirmationTimeoutError:
            await self._settle_ambiguous(address, DelegationState.UNKNOWN)
            raise
        except SyncError:
            await self._transition(address, DelegationState.DELEGATED)
            await self._settle_ambiguous(address, DelegationState.DELEGATED)
            raise

        logger.info("Waiting %.1fs for undelegation to propagate", self._config.propagation_delay)
        await self._sleep(self._config.propagation_delay)

        await self._transition(address, DelegationState.UNDELEGATED)
        if self._reread is not None:
            try:
                await self._reread([(Layer.BASE, address)])
            except Exception as exc:
                logger.warning("Base re-read after undelegate failed: %s", exc)
        logger.info("Session %s back on the base layer", short_address(address))
        return receipt

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, address: Pubkey, action: str, *allowed: DelegationState) -> None:
        current = self.state(address)
        if current not in allowed:
            raise StateTransitionError(
                f"Cannot {action} while the session is {current.value}",
                current=current.value,
                requested=action,
            )

    async def _transition(self, address: Pubkey, new: DelegationState) -> None:
        old = self.state(address)
        if old is new:
            return
        self._states[address] = new
        logger.info(
            "Delegation state for %s: %s -> %s", short_address(address), old.value, new.value
        )
        if new is DelegationState.UNDELEGATED:
            self._store.clear(address, Layer.ROLLUP)

        for hook in list(self._hooks):
            try:
                result = hook(address, old, new)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Delegation transition hook failed")
