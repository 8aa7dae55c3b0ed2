"""Keep the account store in step with push subscriptions on both layers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from solders.pubkey import Pubkey

from .addresses import TrackedAddresses
from .codec import Decoder, decode_record, decode_session
from .connections import ConnectionManager
from .delegation import DelegationStateMachine
from .exceptions import DecodeError, SyncError
from .store import AccountStateStore
from .types import AccountUpdate, DelegationState, Layer
from .utils import short_address

logger = logging.getLogger(__name__)


class SubscriptionReconciler:
    """Maintain base and rollup subscriptions and reconcile updates into the store.

    The base layer is subscribed for both tracked accounts for as long as the
    reconciler runs. The rollup layer is subscribed for the session account
    only while its delegation state is ``DELEGATED``; the subscription follows
    state transitions, not callers.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        store: AccountStateStore,
        delegation: DelegationStateMachine,
        addresses: TrackedAddresses,
    ) -> None:
        self._connections = connections
        self._store = store
        self._delegation = delegation
        self._addresses = addresses
        self._decoders: dict[Pubkey, Decoder] = {
            addresses.session: decode_session,
            addresses.record: decode_record,
        }
        self._running = False
        delegation.add_transition_hook(self._on_transition)

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Subscribe on the base layer, then read through current state."""

        self._running = True
        for address in (self._addresses.session, self._addresses.record):
            await self._connections.subscribe(
                Layer.BASE, address, self._on_base_update, on_restart=self.refresh
            )
        await self.refresh()
        # The probe inside refresh may already have started the rollup side.
        rollup = self._connections.subscription(Layer.ROLLUP, self._addresses.session)
        if self._delegation.state() is DelegationState.DELEGATED and rollup is None:
            await self._start_rollup()

    async def stop(self) -> None:
        self._running = False
        for layer, address in (
            (Layer.ROLLUP, self._addresses.session),
            (Layer.BASE, self._addresses.session),
            (Layer.BASE, self._addresses.record),
        ):
            handle = self._connections.subscription(layer, address)
            if handle is not None:
                await self._connections.unsubscribe(handle)

    async def refresh(self) -> None:
        """Fetch both tracked accounts from the base layer and probe delegation.

        A missing account is stored as absent; a decode failure propagates.
        """

        for address, decoder in self._decoders.items():
            decoded = await self._connections.fetch(Layer.BASE, address, decoder)
            if decoded is None:
                logger.info(
                    "%s not found on base layer (normal for new players)", short_address(address)
                )
            self._store.set(address, Layer.BASE, decoded)
        await self._delegation.probe()

    async def reread(self, targets: Sequence[tuple[Layer, Pubkey]]) -> None:
        """Best-effort re-read of accounts touched by a confirmed call."""

        for layer, address in targets:
            decoder = self._decoders.get(address)
            if decoder is None:
                continue
            if layer is Layer.ROLLUP and self._delegation.state() is not DelegationState.DELEGATED:
                continue
            try:
                decoded = await self._connections.fetch(layer, address, decoder)
            except SyncError as exc:
                logger.warning(
                    "Re-read of %s on %s failed: %s", short_address(address), layer.value, exc
                )
                continue
            self._store.set(address, layer, decoded)

    # ------------------------------------------------------------------
    # Push handlers
    # ------------------------------------------------------------------
    async def _on_base_update(self, update: AccountUpdate) -> None:
        decoded = self._decode(update)
        if decoded is None:
            return
        self._store.set(update.address, Layer.BASE, decoded)
        logger.debug("Base layer account %s updated via push", short_address(update.address))

        if update.address == self._addresses.session:
            # Ownership can change in the same slot as the data.
            try:
                await self._delegation.probe()
            except SyncError as exc:
                logger.warning("Status probe after base update failed: %s", exc)

    async def _on_rollup_update(self, update: AccountUpdate) -> None:
        if self._delegation.state(update.address) is not DelegationState.DELEGATED:
            logger.debug("Dropping stale rollup update for %s", short_address(update.address))
            return
        decoded = self._decode(update)
        if decoded is None:
            return
        self._store.set(update.address, Layer.ROLLUP, decoded)
        logger.debug("Rollup account %s updated via push", short_address(update.address))

    def _decode(self, update: AccountUpdate) -> Any | None:
        decoder = self._decoders.get(update.address)
        if decoder is None:
            return None
        try:
            return decoder(update.account.data)
        except DecodeError as exc:
            logger.warning(
                "Failed to decode %s update for %s: %s",
                update.layer.value,
                short_address(update.address),
                exc,
            )
            return None

    # ------------------------------------------------------------------
    # Delegation transitions
    # ------------------------------------------------------------------
    async def _on_transition(
        self, address: Pubkey, old: DelegationState, new: DelegationState
    ) -> None:
        if not self._running or address != self._addresses.session:
            return
        if new is DelegationState.DELEGATED:
            await self._start_rollup()
        elif old is DelegationState.DELEGATED:
            await self._stop_rollup()

    async def _start_rollup(self) -> None:
        await self._connections.subscribe(
            Layer.ROLLUP,
            self._addresses.session,
            self._on_rollup_update,
            on_restart=self._read_rollup,
        )
        await self._read_rollup()

    async def _read_rollup(self) -> None:
        session = self._addresses.session
        try:
            decoded = await self._connections.fetch(Layer.ROLLUP, session, decode_session)
        except SyncError as exc:
            logger.warning("Rollup read-through for %s failed: %s", short_address(session), exc)
            return
        if decoded is not None and self._delegation.state() is DelegationState.DELEGATED:
            self._store.set(session, Layer.ROLLUP, decoded)

    async def _stop_rollup(self) -> None:
        handle = self._connections.subscription(Layer.ROLLUP, self._addresses.session)
        if handle is not None:
            await self._connections.unsubscribe(handle)
